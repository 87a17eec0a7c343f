"""Session store: the persisted mapping from session key to session record."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from relaybot.utils.helpers import now_ms

DEFAULT_STORE_PATH = Path.home() / ".relaybot" / "sessions" / "sessions.json"


class SessionRecord(BaseModel):
    """
    Persisted state for one session key.

    Serialized with camelCase keys; unset optional fields are omitted and
    unknown keys written by other versions are kept.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    session_id: str
    updated_at: int
    system_sent: bool | None = None
    aborted_last_run: bool | None = None
    thinking_level: str | None = None
    verbose_level: str | None = None
    model_override: str | None = None
    provider_override: str | None = None
    group_activation: Literal["mention", "always"] | None = None
    group_activation_needs_system_intro: bool | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    context_tokens: int | None = None
    model: str | None = None
    skills_snapshot: Any = None
    last_channel: str | None = None
    last_to: str | None = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def resolve_store_path(store: str | None = None) -> Path:
    """Resolve the configured store location, defaulting to ~/.relaybot/sessions."""
    if store and store.strip():
        return Path(store.strip()).expanduser()
    return DEFAULT_STORE_PATH


def _read_document(path: Path) -> dict[str, SessionRecord]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Session store {path} unreadable, treating as empty: {e}")
        return {}
    if not isinstance(raw, dict):
        return {}

    records: dict[str, SessionRecord] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            continue
        try:
            records[key] = SessionRecord.model_validate(value)
        except ValueError as e:
            logger.warning(f"Dropping malformed session record {key!r}: {e}")
    return records


def _write_document(path: Path, records: dict[str, SessionRecord]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {key: record.to_json() for key, record in records.items()}
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)


class SessionStore:
    """
    Async accessor for the session store document.

    Every mutation is a read-modify-write of the whole document: the record
    is re-read immediately before the change is applied, so concurrent writers
    only ever overwrite the fields they actually changed. Mutations for one
    key are serialized by a per-key lock; the document rewrite itself is
    serialized by a short store-wide I/O lock.
    """

    def __init__(self, path: Path):
        self.path = path
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._io_lock = asyncio.Lock()

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def load(self) -> dict[str, SessionRecord]:
        """Read the whole store."""
        return await asyncio.to_thread(_read_document, self.path)

    async def get(self, key: str) -> SessionRecord | None:
        records = await self.load()
        return records.get(key)

    async def find_by_session_id(self, session_id: str) -> tuple[str, SessionRecord] | None:
        """Find the key whose record carries session_id."""
        records = await self.load()
        for key, record in records.items():
            if record.session_id == session_id:
                return key, record
        return None

    async def update(
        self,
        key: str,
        mutate: Callable[[SessionRecord | None], SessionRecord | None],
    ) -> SessionRecord | None:
        """
        Apply mutate to the current record for key and persist the result.

        mutate receives a private copy of the freshly read record (or None) and
        returns the record to store; returning None leaves the store untouched.
        """
        async with self.lock_for(key):
            async with self._io_lock:
                records = await asyncio.to_thread(_read_document, self.path)
                current = records.get(key)
                updated = mutate(current.model_copy(deep=True) if current else None)
                if updated is None:
                    return current
                records[key] = updated
                await asyncio.to_thread(_write_document, self.path, records)
                return updated

    async def patch(
        self,
        key: str,
        session_id: str,
        *,
        touch: bool = True,
        **changes: Any,
    ) -> SessionRecord:
        """
        Set only the given fields on the record for key, creating it when absent.

        A change value of None clears that field. updated_at is bumped unless
        touch is False.
        """

        async with self.lock_for(key):
            async with self._io_lock:
                records = await asyncio.to_thread(_read_document, self.path)
                record = records.get(key) or SessionRecord(session_id=session_id, updated_at=now_ms())
                for field, value in changes.items():
                    setattr(record, field, value)
                if touch:
                    record.updated_at = now_ms()
                records[key] = record
                await asyncio.to_thread(_write_document, self.path, records)
                return record
