"""Queue of short system notices injected into the next main-session prompt."""

import re
import threading
from collections import deque

_LAST_INPUT_RE = re.compile(r" · last input [^·]+", re.IGNORECASE)


class SystemEventQueue:
    """Bounded FIFO of event lines; the oldest are dropped when full."""

    def __init__(self, max_events: int = 20):
        self._events: deque[str] = deque(maxlen=max(1, max_events))
        self._lock = threading.Lock()

    def enqueue(self, text: str) -> None:
        cleaned = (text or "").strip()
        if not cleaned:
            return
        with self._lock:
            # Consecutive duplicates carry no new information.
            if self._events and self._events[-1] == cleaned:
                return
            self._events.append(cleaned)

    def drain(self) -> list[str]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
            return events


def compact_system_event(line: str) -> str | None:
    """Drop heartbeat/periodic noise and shorten node presence lines."""
    trimmed = line.strip()
    if not trimmed:
        return None
    lower = trimmed.lower()
    if "reason periodic" in lower or "heartbeat" in lower:
        return None
    if trimmed.startswith("Node:"):
        return _LAST_INPUT_RE.sub("", trimmed).strip()
    return trimmed


def format_system_block(lines: list[str]) -> str:
    return "\n".join(f"System: {line}" for line in lines)
