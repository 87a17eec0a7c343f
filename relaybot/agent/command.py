"""Direct agent command: run one turn against a session outside any chat channel."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from relaybot.agent.context import MessageContext
from relaybot.agent.engine import AgentEngine, AgentRunRequest, AgentRunResult, ReplyPayload
from relaybot.agent.levels import normalize_think_level, normalize_verbose_level
from relaybot.agent.models import (
    build_allowed_model_set,
    effective_model,
    resolve_configured_model_ref,
    resolve_context_tokens,
    stored_override_is_valid,
)
from relaybot.channels.base import BaseChannel, deliver_payloads
from relaybot.config.schema import Config
from relaybot.errors import CommandError, DeliveryError, UpstreamFailure
from relaybot.session.keys import Fresh, evaluate_session, resolve_session, resolve_session_key
from relaybot.session.store import SessionRecord, SessionStore, resolve_store_path
from relaybot.utils.helpers import normalize_e164, now_ms

NO_REPLY_TEXT = "No reply from agent."


@dataclass
class AgentCommandOptions:
    message: str
    to: str | None = None
    session_id: str | None = None
    thinking: str | None = None
    thinking_once: str | None = None
    verbose: str | None = None
    timeout: str | int | None = None
    json: bool = False
    deliver: bool = False
    channel: str | None = None
    best_effort_deliver: bool = False
    abort_event: asyncio.Event | None = None


@dataclass
class AgentCommandResult:
    session_id: str
    session_key: str | None
    is_new_session: bool
    result: AgentRunResult
    output: list[str] = field(default_factory=list)
    delivery_errors: list[str] = field(default_factory=list)
    delivered: int = 0


def _parse_timeout(raw: str | int | None, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise CommandError("--timeout must be a positive integer (seconds)") from None
    if value <= 0:
        raise CommandError("--timeout must be a positive integer (seconds)")
    return value


def _allow_from_e164(config: Config) -> list[str]:
    return [n for n in (normalize_e164(v) for v in config.routing.allow_from if v != "*") if len(n) > 1]


async def _run_engine(
    engine: AgentEngine,
    request: AgentRunRequest,
    timeout_s: int,
    abort_event: asyncio.Event | None,
) -> AgentRunResult:
    run_task = asyncio.create_task(engine.run(request))
    waiters: set[asyncio.Future[Any]] = {run_task}
    abort_task = asyncio.create_task(abort_event.wait()) if abort_event is not None else None
    if abort_task is not None:
        waiters.add(abort_task)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        run_task.cancel()
        raise
    finally:
        if abort_task is not None:
            abort_task.cancel()

    if run_task in done:
        return run_task.result()
    run_task.cancel()
    await asyncio.gather(run_task, return_exceptions=True)
    if abort_event is not None and abort_event.is_set():
        return AgentRunResult(payloads=[], aborted=True)
    raise UpstreamFailure(f"Agent run timed out after {timeout_s}s")


def render_payload_lines(payloads: list[ReplyPayload]) -> list[str]:
    """Plain-text rendering: each payload's text followed by MEDIA:<url> lines."""
    rendered = []
    for payload in payloads:
        lines: list[str] = []
        if payload.text:
            lines.append(payload.text.rstrip())
        lines.extend(f"MEDIA:{url}" for url in payload.media)
        rendered.append("\n".join(lines))
    return rendered


async def run_agent_command(
    opts: AgentCommandOptions,
    config: Config,
    engine: AgentEngine,
    *,
    store: SessionStore | None = None,
    channels: dict[str, BaseChannel] | None = None,
    skills_loader: Callable[[Path], Any] | None = None,
) -> AgentCommandResult:
    """
    Run one agent turn for the session chosen by --to or --session-id.

    Raises CommandError for invalid options, DeliveryError when delivery
    fails without best effort, and lets engine failures propagate.
    """
    body = (opts.message or "").strip()
    if not body:
        raise CommandError("Message (--message) is required")
    if not opts.to and not opts.session_id:
        raise CommandError("Pass --to <E.164> or --session-id to choose a session")

    agent_cfg = config.agent
    think_override = normalize_think_level(opts.thinking)
    think_once = normalize_think_level(opts.thinking_once)
    if opts.thinking and not think_override:
        raise CommandError("Invalid thinking level. Use one of: off, minimal, low, medium, high.")
    if opts.thinking_once and not think_once:
        raise CommandError("Invalid one-shot thinking level. Use one of: off, minimal, low, medium, high.")
    verbose_override = normalize_verbose_level(opts.verbose)
    if opts.verbose and not verbose_override:
        raise CommandError('Invalid verbose level. Use "on" or "off".')
    timeout_s = _parse_timeout(opts.timeout, agent_cfg.timeout_seconds)

    store = store or SessionStore(resolve_store_path(config.session.store))
    key = None
    if opts.to and opts.to.strip():
        key = resolve_session_key(config.session.scope, MessageContext(sender=opts.to), config.session.main_key)
    resolution = await resolve_session(
        store,
        key,
        now_ms=now_ms(),
        idle_minutes=config.session.idle_minutes,
        explicit_session_id=opts.session_id,
    )
    key = resolution.key
    session_id = resolution.session_id
    fresh = isinstance(resolution.freshness, Fresh)
    is_new = not fresh and not (opts.session_id or "").strip()
    record: SessionRecord | None = resolution.base if not is_new else None

    # Stored levels only apply while the session is still fresh.
    persisted_think = normalize_think_level(record.thinking_level) if fresh and record else None
    persisted_verbose = normalize_verbose_level(record.verbose_level) if fresh and record else None
    think_level = think_once or think_override or persisted_think or agent_cfg.thinking_default
    verbose_level = verbose_override or persisted_verbose or agent_cfg.verbose_default

    needs_snapshot = is_new or not (record and record.skills_snapshot)
    skills_snapshot = record.skills_snapshot if record else None
    if needs_snapshot and skills_loader:
        skills_snapshot = skills_loader(config.workspace_path)

    if key:
        def _open(current: SessionRecord | None) -> SessionRecord:
            nonlocal session_id, is_new
            stamp = now_ms()
            fresh_now = current is not None and isinstance(
                evaluate_session(current, stamp, config.session.idle_minutes), Fresh
            )
            if is_new and fresh_now:
                # A concurrent turn opened this session after it was resolved.
                session_id = current.session_id
                is_new = False
            if current is None or is_new:
                entry = SessionRecord(session_id=session_id, updated_at=stamp)
                if current is not None:
                    entry.group_activation = current.group_activation
                    entry.last_channel = current.last_channel
                    entry.last_to = current.last_to
            else:
                entry = current
            entry.session_id = session_id
            entry.updated_at = stamp
            if needs_snapshot and skills_snapshot:
                entry.skills_snapshot = skills_snapshot
            if think_override:
                entry.thinking_level = None if think_override == "off" else think_override
            if verbose_override:
                entry.verbose_level = None if verbose_override == "off" else verbose_override
            return entry

        record = await store.update(key, _open)

    default_model = resolve_configured_model_ref(agent_cfg)
    allowed = build_allowed_model_set(agent_cfg.allowed_models, agent_cfg.model_catalog, default_model.provider)
    if key and record and not stored_override_is_valid(record, allowed, default_model.provider):
        logger.warning(f"Clearing disallowed model override {record.model_override} for {key}")
        record = await store.patch(key, session_id, provider_override=None, model_override=None)
    model = effective_model(record, allowed, default_model)

    request = AgentRunRequest(
        session_id=session_id,
        session_key=key,
        prompt=body,
        provider=model.provider,
        model=model.model,
        timeout_ms=timeout_s * 1000,
        think_level=think_level,
        verbose_level=verbose_level,
        skills_snapshot=skills_snapshot,
        workspace=str(config.workspace_path),
    )
    logger.info(f"Agent command turn for {key or session_id} ({model.key}), new={is_new}")
    result = await _run_engine(engine, request, timeout_s, opts.abort_event)

    if key:
        meta = result.agent_meta
        model_used = (meta.model if meta else None) or model.model
        changes: dict[str, Any] = {
            "model": model_used,
            "context_tokens": resolve_context_tokens(agent_cfg, model_used),
            "aborted_last_run": result.aborted,
        }
        usage = meta.usage if meta else None
        if usage:
            changes.update(
                input_tokens=usage.input or 0,
                output_tokens=usage.output or 0,
                total_tokens=usage.total_tokens(),
            )
        await store.patch(key, session_id, **changes)

    outcome = AgentCommandResult(session_id=session_id, session_key=key, is_new_session=is_new, result=result)
    await _emit_and_deliver(opts, config, outcome, channels or {})
    return outcome


async def _emit_and_deliver(
    opts: AgentCommandOptions,
    config: Config,
    outcome: AgentCommandResult,
    channels: dict[str, BaseChannel],
) -> None:
    payloads = list(outcome.result.payloads or [])
    provider = (opts.channel or "whatsapp").lower()
    allow_from = _allow_from_e164(config)
    whatsapp_target = normalize_e164(opts.to) if opts.to else (allow_from[0] if allow_from else None)
    telegram_target = (opts.to or "").strip() or None
    target = {"whatsapp": whatsapp_target, "telegram": telegram_target}.get(provider)

    def _fail(message: str, cause: Exception | None = None) -> None:
        if not opts.best_effort_deliver:
            raise DeliveryError(message) from cause
        line = f"Delivery failed ({provider}{f' to {target}' if target else ''}): {message}"
        logger.error(line)
        outcome.delivery_errors.append(line)

    deliver = opts.deliver
    if deliver:
        if provider == "whatsapp" and not whatsapp_target:
            _fail("Delivering to WhatsApp requires --to <E.164> or routing.allowFrom[0]")
        elif provider == "telegram" and not telegram_target:
            _fail("Delivering to Telegram requires --to <chatId>")
        elif provider == "webchat":
            _fail(
                "Delivering to WebChat is not supported via `relaybot agent`; "
                "use WhatsApp/Telegram or run without --deliver."
            )
        elif provider not in ("whatsapp", "telegram", "webchat"):
            _fail(f"Unknown provider: {provider}")

    if opts.json:
        outcome.output.append(json.dumps(outcome.result.to_json(), indent=2, ensure_ascii=False))
        if not deliver:
            return

    if not payloads:
        outcome.output.append(NO_REPLY_TEXT)
        return

    if not opts.json:
        outcome.output.extend(render_payload_lines(payloads))

    if not deliver or not target or provider not in ("whatsapp", "telegram"):
        return
    channel = channels.get(provider)
    if channel is None:
        _fail(f"{provider} channel is not available")
        return
    for payload in payloads:
        try:
            outcome.delivered += await deliver_payloads(channel, target, [payload])
        except Exception as e:
            _fail(str(e), e)
