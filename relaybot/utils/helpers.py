"""Utility functions for relaybot."""

import re
import time

_PHONE_RE = re.compile(r"^\+?[\d\s().-]{5,}$")


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_e164(raw: str) -> str:
    """Normalize a phone-like address to +<digits>, dropping a whatsapp: prefix."""
    cleaned = (raw or "").strip()
    if cleaned.lower().startswith("whatsapp:"):
        cleaned = cleaned[len("whatsapp:"):]
    digits = re.sub(r"[^\d+]", "", cleaned)
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    return f"+{digits}"


def normalize_address(raw: str | None) -> str:
    """Normalize a sender/recipient address: E.164 for phone numbers, trimmed otherwise."""
    cleaned = (raw or "").strip()
    if not cleaned:
        return ""
    bare = cleaned[len("whatsapp:"):] if cleaned.lower().startswith("whatsapp:") else cleaned
    if _PHONE_RE.match(bare):
        return normalize_e164(bare)
    return bare


def truncate(text: str, limit: int, suffix: str = "…") -> str:
    """Truncate text to limit characters, appending suffix when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix


def chunk_text(text: str, limit: int) -> list[str]:
    """Split text into chunks within limit, preferring paragraph then line breaks."""
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        split_at = remaining.rfind("\n\n", 0, limit)
        if split_at <= 0:
            split_at = remaining.rfind("\n", 0, limit)
        if split_at <= 0:
            split_at = remaining.rfind(" ", 0, limit)
        if split_at <= 0:
            split_at = limit
        chunks.append(remaining[:split_at].rstrip())
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks
