"""Isolated agent turns fired by cron jobs."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from relaybot.agent.engine import AgentEngine, AgentRunRequest, ReplyPayload
from relaybot.agent.levels import normalize_think_level, normalize_verbose_level
from relaybot.agent.models import resolve_configured_model_ref, resolve_context_tokens
from relaybot.channels.base import BaseChannel, deliver_payloads
from relaybot.config.schema import Config
from relaybot.cron.types import AgentTurnPayload, CronJob, CronRunResult
from relaybot.session.keys import Fresh, evaluate_session, new_session_id
from relaybot.session.store import SessionRecord, SessionStore, resolve_store_path
from relaybot.utils.helpers import normalize_e164, now_ms, truncate

SUMMARY_LIMIT = 2000


def _pick_summary(text: str | None) -> str | None:
    clean = (text or "").strip()
    if not clean:
        return None
    return truncate(clean, SUMMARY_LIMIT)


def summarize_payloads(payloads: list[ReplyPayload]) -> str | None:
    """The last payload text that is not blank, truncated for the job log."""
    for payload in reversed(payloads):
        summary = _pick_summary(payload.text)
        if summary:
            return summary
    return None


def resolve_delivery_target(
    config: Config,
    main: SessionRecord | None,
    requested_channel: str | None = "last",
    to: str | None = None,
) -> tuple[str, str | None]:
    """
    Pick (channel, recipient) for a cron reply.

    "last" follows the main session's last channel (never webchat), falling
    back to whatsapp. WhatsApp recipients are forced onto routing.allowFrom
    when an allow-list is configured.
    """
    explicit_to = to.strip() if to and to.strip() else None
    last_channel = main.last_channel if main and main.last_channel and main.last_channel != "webchat" else None
    last_to = (main.last_to or "").strip() if main else ""

    if requested_channel in ("whatsapp", "telegram"):
        channel = requested_channel
    else:
        channel = last_channel or "whatsapp"
    target = explicit_to or last_to or None

    if channel != "whatsapp":
        return channel, target

    raw_allow = config.routing.allow_from
    if "*" in raw_allow:
        return channel, target
    allow_from = [n for n in (normalize_e164(v) for v in raw_allow) if len(n) > 1]
    if not allow_from:
        return channel, target
    if not target:
        return channel, allow_from[0]
    normalized = normalize_e164(target)
    return channel, normalized if normalized in allow_from else allow_from[0]


async def run_cron_agent_turn(
    config: Config,
    engine: AgentEngine,
    job: CronJob,
    message: str,
    session_key: str,
    *,
    store: SessionStore | None = None,
    channels: dict[str, BaseChannel] | None = None,
    skills_loader: Callable[[Path], Any] | None = None,
    turn_lock: asyncio.Lock | None = None,
    lane: str = "cron",
) -> CronRunResult:
    """Run one cron-triggered turn in its own session and optionally deliver the reply."""
    agent_cfg = config.agent
    store = store or SessionStore(resolve_store_path(config.session.store))
    payload = job.payload if isinstance(job.payload, AgentTurnPayload) else AgentTurnPayload()
    model = resolve_configured_model_ref(agent_cfg)

    records = await store.load()
    think_level = normalize_think_level(payload.thinking) or normalize_think_level(agent_cfg.thinking_default)
    timeout_s = max(int(payload.timeout_seconds or agent_cfg.timeout_seconds), 1)

    main_key = (config.session.main_key or "main").strip() or "main"
    channel_name, target = resolve_delivery_target(config, records.get(main_key), payload.channel, payload.to)

    candidate_id = new_session_id()

    def _open(current: SessionRecord | None) -> SessionRecord:
        stamp = now_ms()
        # Judged on the record read under the key lock; a fresh one from a concurrent turn is continued.
        if current is not None and isinstance(evaluate_session(current, stamp, config.session.idle_minutes), Fresh):
            entry = current
            is_first_turn = not entry.system_sent
        else:
            entry = SessionRecord(session_id=candidate_id, updated_at=stamp, system_sent=False)
            if current is not None:
                entry.thinking_level = current.thinking_level
                entry.verbose_level = current.verbose_level
                entry.model = current.model
                entry.context_tokens = current.context_tokens
                entry.last_channel = current.last_channel
                entry.last_to = current.last_to
            is_first_turn = True
        entry.updated_at = stamp
        if not entry.skills_snapshot and skills_loader:
            entry.skills_snapshot = skills_loader(config.workspace_path) or None
        # Marked before the run, as for interactive turns.
        if is_first_turn:
            entry.system_sent = True
        return entry

    record = await store.update(session_key, _open)
    session_id = record.session_id
    skills_snapshot = record.skills_snapshot
    verbose_level = normalize_verbose_level(record.verbose_level) or agent_cfg.verbose_default

    prompt = f"[cron:{job.id} {job.name}] {message}".strip()
    request = AgentRunRequest(
        session_id=session_id,
        session_key=session_key,
        prompt=prompt,
        provider=model.provider,
        model=model.model,
        timeout_ms=timeout_s * 1000,
        think_level=think_level,
        verbose_level=verbose_level,
        skills_snapshot=skills_snapshot,
        workspace=str(config.workspace_path),
        lane=lane,
    )

    logger.info(f"Cron job {job.id} ({job.name}) running in {session_key}")
    try:
        async with turn_lock if turn_lock is not None else contextlib.nullcontext():
            result = await asyncio.wait_for(engine.run(request), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.error(f"Cron job {job.id} timed out after {timeout_s}s")
        return CronRunResult(status="error", error=f"Agent run timed out after {timeout_s}s")
    except Exception as e:
        logger.error(f"Cron job {job.id} failed: {e}")
        return CronRunResult(status="error", error=str(e))

    payloads = list(result.payloads or [])
    meta = result.agent_meta
    model_used = (meta.model if meta else None) or model.model
    changes: dict[str, Any] = {
        "model": model_used,
        "context_tokens": resolve_context_tokens(agent_cfg, model_used),
    }
    usage = meta.usage if meta else None
    if usage:
        changes.update(
            input_tokens=usage.input or 0,
            output_tokens=usage.output or 0,
            total_tokens=usage.total_tokens(),
        )
    await store.patch(session_key, session_id, **changes)

    summary = summarize_payloads(payloads) or _pick_summary(payloads[0].text if payloads else None)
    if not payload.deliver or channel_name not in ("whatsapp", "telegram"):
        return CronRunResult(status="ok", summary=summary)

    label, recipient_kind = ("WhatsApp", "recipient") if channel_name == "whatsapp" else ("Telegram", "chatId")
    if not target:
        if not payload.best_effort_deliver:
            return CronRunResult(
                status="error",
                summary=summary,
                error=f"Cron delivery to {label} requires a {recipient_kind}.",
            )
        return CronRunResult(status="skipped", summary=f"Delivery skipped (no {label} {recipient_kind}).")

    recipient = normalize_e164(target) if channel_name == "whatsapp" else target
    channel = (channels or {}).get(channel_name)
    try:
        if channel is None:
            raise RuntimeError(f"{channel_name} channel is not available")
        await deliver_payloads(channel, recipient, payloads)
    except Exception as e:
        logger.error(f"Cron delivery to {channel_name} failed: {e}")
        if not payload.best_effort_deliver:
            return CronRunResult(status="error", summary=summary, error=str(e))
    return CronRunResult(status="ok", summary=summary)
