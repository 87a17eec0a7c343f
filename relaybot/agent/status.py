"""Status rendering for /status replies and the status CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from relaybot.agent.models import (
    DEFAULT_MODEL,
    lookup_context_tokens,
    resolve_configured_model_ref,
    resolve_context_tokens,
)
from relaybot.config.schema import AgentConfig
from relaybot.session.keys import GLOBAL_KEY, UNKNOWN_KEY, classify_key
from relaybot.session.store import SessionRecord
from relaybot.utils.helpers import now_ms


def format_age(ms: int | None) -> str:
    if not ms or ms < 0:
        return "unknown"
    minutes = round(ms / 60_000)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = round(minutes / 60)
    if hours < 48:
        return f"{hours}h ago"
    return f"{round(hours / 24)}d ago"


def format_k_tokens(value: int) -> str:
    digits = 0 if value >= 10_000 else 1
    return f"{value / 1000:.{digits}f}k"


def format_tokens(total: int | None, context_tokens: int | None) -> str:
    ctx_label = format_k_tokens(context_tokens) if context_tokens else "?"
    if total is None:
        return f"unknown/{ctx_label}"
    pct = f" ({min(999, round(total / context_tokens * 100))}%)" if context_tokens else ""
    return f"{format_k_tokens(total)}/{ctx_label}{pct}"


def abbreviate_path(path: str | Path | None) -> str | None:
    if not path:
        return None
    text = str(path)
    home = str(Path.home())
    if text.startswith(home):
        return "~" + text[len(home):]
    return text


def build_status_message(
    agent: AgentConfig,
    *,
    record: SessionRecord | None = None,
    session_key: str | None = None,
    session_scope: str | None = None,
    store_path: str | Path | None = None,
    workspace: str | Path | None = None,
    provider: str | None = None,
    model: str | None = None,
    context_tokens: int | None = None,
    resolved_think: str | None = None,
    resolved_verbose: str | None = None,
    provider_summary: list[str] | None = None,
    now: int | None = None,
) -> str:
    """Render the multi-line /status reply for one session."""
    now = now if now is not None else now_ms()
    configured = resolve_configured_model_ref(agent)
    model_name = (record.model if record else None) or model or configured.model or DEFAULT_MODEL
    provider_name = provider or configured.provider
    ctx_tokens = (
        (record.context_tokens if record else None)
        or context_tokens
        or resolve_context_tokens(agent, model_name)
    )

    total_tokens: int | None = None
    if record:
        total_tokens = record.total_tokens
        if total_tokens is None:
            total_tokens = (record.input_tokens or 0) + (record.output_tokens or 0)

    think = resolved_think or agent.thinking_default or "off"
    verbose = resolved_verbose or agent.verbose_default or "off"

    lines = ["⚙️ Status"]
    if provider_summary:
        lines.append("Channels: " + " • ".join(provider_summary))
    lines.append(f"Agent: {provider_name}/{model_name}")
    if workspace:
        lines.append(f"Workspace: {abbreviate_path(workspace)}")

    context_line = f"Context: {format_tokens(total_tokens, ctx_tokens)}"
    if record and record.aborted_last_run:
        context_line += " • last run aborted"
    lines.append(context_line)

    session_parts = [
        f"Session: {session_key or 'unknown'}",
        f"scope {session_scope or 'per-sender'}",
        f"updated {format_age(now - record.updated_at)}" if record and record.updated_at else "no activity",
    ]
    if store_path:
        session_parts.append(f"store {abbreviate_path(store_path)}")
    lines.append(" • ".join(session_parts))

    if session_key and session_key.startswith("group:"):
        activation = (record.group_activation if record else None) or "mention"
        lines.append(f"Group activation: {activation}")

    lines.append(
        f"Options: thinking={think} | verbose={verbose} "
        "(set with /think <level>, /verbose on|off, /model <id>)"
    )
    lines.append("Shortcuts: /new reset | /restart restart")
    return "\n".join(lines)


@dataclass
class SessionStatus:
    key: str
    kind: str
    session_id: str | None
    updated_at: int | None
    age: int | None
    model: str | None
    context_tokens: int | None
    total_tokens: int
    remaining_tokens: int | None
    percent_used: int | None
    input_tokens: int | None = None
    output_tokens: int | None = None
    flags: list[str] = field(default_factory=list)


def _build_flags(record: SessionRecord) -> list[str]:
    flags: list[str] = []
    if record.thinking_level:
        flags.append(f"think:{record.thinking_level}")
    if record.verbose_level:
        flags.append(f"verbose:{record.verbose_level}")
    if record.model_override:
        provider = record.provider_override or ""
        flags.append(f"model:{provider + '/' if provider else ''}{record.model_override}")
    if record.system_sent:
        flags.append("system")
    if record.aborted_last_run:
        flags.append("aborted")
    if record.session_id:
        flags.append(f"id:{record.session_id}")
    return flags


def summarize_sessions(
    records: dict[str, SessionRecord],
    agent: AgentConfig,
    *,
    limit: int = 5,
    now: int | None = None,
) -> dict[str, Any]:
    """Summarize the store for the status command: count, defaults, most recent sessions."""
    now = now if now is not None else now_ms()
    default_model = resolve_configured_model_ref(agent).model
    default_context = resolve_context_tokens(agent, default_model)

    sessions: list[SessionStatus] = []
    for key, record in records.items():
        if key in (GLOBAL_KEY, UNKNOWN_KEY):
            continue
        model = record.model or default_model
        context = (
            record.context_tokens
            or lookup_context_tokens(model, agent.model_catalog)
            or default_context
        )
        total = record.total_tokens
        if total is None:
            total = (record.input_tokens or 0) + (record.output_tokens or 0)
        sessions.append(SessionStatus(
            key=key,
            kind=classify_key(key),
            session_id=record.session_id,
            updated_at=record.updated_at,
            age=now - record.updated_at if record.updated_at else None,
            model=model,
            context_tokens=context,
            total_tokens=total,
            remaining_tokens=max(0, context - total) if context else None,
            percent_used=min(999, round(total / context * 100)) if context else None,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            flags=_build_flags(record),
        ))

    sessions.sort(key=lambda s: s.updated_at or 0, reverse=True)
    return {
        "count": len(sessions),
        "defaults": {"model": default_model, "contextTokens": default_context},
        "recent": sessions[:limit],
    }


def format_context_usage(status: SessionStatus) -> str:
    used = status.total_tokens or 0
    if not status.context_tokens:
        return f"tokens: {format_k_tokens(used)} used (ctx unknown)"
    left = status.remaining_tokens if status.remaining_tokens is not None else max(0, status.context_tokens - used)
    pct = f"{status.percent_used}%" if status.percent_used is not None else "?%"
    return (
        f"tokens: {format_k_tokens(used)} used, {format_k_tokens(left)} left "
        f"of {format_k_tokens(status.context_tokens)} ({pct})"
    )
