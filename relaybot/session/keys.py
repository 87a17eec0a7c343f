"""Session key derivation and the idle-window freshness policy."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Union

from relaybot.session.store import SessionRecord, SessionStore
from relaybot.utils.helpers import normalize_address

if TYPE_CHECKING:
    from relaybot.agent.context import MessageContext

SessionScope = Literal["per-sender", "per-group", "global"]

GLOBAL_KEY = "global"
UNKNOWN_KEY = "unknown"
DEFAULT_MAIN_KEY = "main"
DEFAULT_IDLE_MINUTES = 60
DEFAULT_RESET_TRIGGERS = ("/new", "/reset")


def _group_key(ctx: MessageContext) -> str:
    raw = (ctx.group_id or ctx.sender or "").strip()
    if raw.startswith("group:"):
        raw = raw[len("group:"):]
    if not raw:
        return UNKNOWN_KEY
    return f"group:{raw}"


def resolve_session_key(
    scope: SessionScope,
    ctx: MessageContext,
    main_key: str = DEFAULT_MAIN_KEY,
) -> str:
    """
    Derive the store key for a conversation.

    The same identity under the same scope always maps to the same key.
    Direct chats collapse into main_key under the per-group scope; group
    chats get their own group:<id> key under both non-global scopes.
    """
    if scope == "global":
        return GLOBAL_KEY
    if ctx.is_group:
        return _group_key(ctx)
    if scope == "per-group":
        return (main_key or DEFAULT_MAIN_KEY).strip() or DEFAULT_MAIN_KEY
    sender = normalize_address(ctx.sender)
    return sender or UNKNOWN_KEY


def classify_key(key: str) -> Literal["direct", "group", "global", "unknown"]:
    if key == GLOBAL_KEY:
        return "global"
    if key.startswith("group:"):
        return "group"
    if key == UNKNOWN_KEY:
        return "unknown"
    return "direct"


@dataclass(frozen=True)
class Absent:
    """No record stored under the key."""


@dataclass(frozen=True)
class Stale:
    """A record exists but its idle window has elapsed."""

    last: SessionRecord


@dataclass(frozen=True)
class Fresh:
    """A record exists and may be continued."""

    record: SessionRecord


Freshness = Union[Absent, Stale, Fresh]


def idle_window_ms(idle_minutes: int | None) -> int:
    """Idle window in milliseconds; never shorter than one minute."""
    minutes = DEFAULT_IDLE_MINUTES if idle_minutes is None else idle_minutes
    return max(int(minutes), 1) * 60_000


def evaluate_session(
    record: SessionRecord | None,
    now_ms: int,
    idle_minutes: int | None = DEFAULT_IDLE_MINUTES,
) -> Freshness:
    """Classify record: fresh while now - updated_at stays within the idle window."""
    if record is None:
        return Absent()
    if now_ms - record.updated_at <= idle_window_ms(idle_minutes):
        return Fresh(record)
    return Stale(record)


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class SessionResolution:
    """Which session a turn continues (or starts) and what it was based on."""

    key: str | None
    session_id: str
    is_new: bool
    base: SessionRecord | None
    freshness: Freshness


async def resolve_session(
    store: SessionStore,
    key: str | None,
    *,
    now_ms: int,
    idle_minutes: int | None = DEFAULT_IDLE_MINUTES,
    explicit_session_id: str | None = None,
    force_new: bool = False,
) -> SessionResolution:
    """
    Pick the session for a turn.

    A fresh record under key is continued. An explicit session id is used
    verbatim and never marks the turn new; when the record under key carries
    a different id, the record holding that id is looked up across all keys
    and becomes the base without its freshness being re-checked. force_new
    (a reset trigger) always starts a new session.
    """
    records = await store.load()
    record = records.get(key) if key else None
    explicit = (explicit_session_id or "").strip() or None

    if explicit and (record is None or record.session_id != explicit):
        for other_key, other in records.items():
            if other.session_id == explicit:
                key = key or other_key
                record = other
                break

    freshness = evaluate_session(record, now_ms, idle_minutes)
    if force_new:
        return SessionResolution(key, new_session_id(), True, None, freshness)
    if explicit:
        return SessionResolution(key, explicit, False, record, freshness)
    if isinstance(freshness, Fresh):
        return SessionResolution(key, freshness.record.session_id, False, freshness.record, freshness)
    return SessionResolution(key, new_session_id(), True, None, freshness)
