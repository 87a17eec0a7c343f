"""
Inline directive parsing.

Directives are slash tokens embedded in a message that change session
settings instead of being forwarded to the agent. Every extractor removes
all occurrences of its directive kind, so parsing the cleaned text again
finds nothing.
"""

import re
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from relaybot.agent.levels import (
    ThinkLevel,
    VerboseLevel,
    normalize_think_level,
    normalize_verbose_level,
)

GroupActivation = Literal["mention", "always"]

ABORT_TRIGGERS = frozenset({"stop", "esc", "abort", "wait", "exit", "cancel"})
CURRENT_MESSAGE_MARKER = "[Current message - respond to this]"

# Alternatives are listed longest first; the lookahead keeps /t from matching /tomorrow.
_THINK_RE = re.compile(
    r"(?:^|(?<=\s))/(?:thinking|think|t)(?=$|\s|:)[ \t]*:?[ \t]*([A-Za-z-]+)?",
    re.IGNORECASE,
)
_VERBOSE_RE = re.compile(
    r"(?:^|(?<=\s))/(?:verbose|v)(?=$|\s|:)[ \t]*:?[ \t]*([A-Za-z0-9-]+)?",
    re.IGNORECASE,
)
_MODEL_RE = re.compile(
    r"(?:^|(?<=\s))/model(?=$|\s|:)[ \t]*:?[ \t]*([A-Za-z0-9_.:@-]+(?:/[A-Za-z0-9_.:@-]+)?)?",
    re.IGNORECASE,
)
_ACTIVATION_RE = re.compile(r"^/activation\b(?:\s+([A-Za-z]+))?", re.IGNORECASE)
_BOT_SUFFIX_RE = re.compile(r"(?:^|(?<=\s))(/[A-Za-z][A-Za-z0-9_]*)@[A-Za-z0-9_]+\b")
_BRACKET_LABEL_RE = re.compile(r"\[[^\]]+\]\s*")
_SENDER_PREFIX_RE = re.compile(r"^[ \t]*[A-Za-z0-9+()\-_. ]+:\s*", re.MULTILINE)
_NUMERIC_MENTION_RE = re.compile(r"@[0-9+]{5,}")
_WS_RE = re.compile(r"\s+")
_INLINE_WS_RE = re.compile(r"[ \t]{2,}")


@dataclass(frozen=True)
class ThinkDirective:
    cleaned: str
    level: ThinkLevel | None = None
    raw: str | None = None
    has_directive: bool = False

    @property
    def is_invalid(self) -> bool:
        return self.has_directive and self.raw is not None and self.level is None


@dataclass(frozen=True)
class VerboseDirective:
    cleaned: str
    level: VerboseLevel | None = None
    raw: str | None = None
    has_directive: bool = False

    @property
    def is_invalid(self) -> bool:
        return self.has_directive and self.raw is not None and self.level is None


@dataclass(frozen=True)
class ModelDirective:
    cleaned: str
    raw: str | None = None
    has_directive: bool = False


@dataclass(frozen=True)
class ActivationCommand:
    has_command: bool = False
    mode: GroupActivation | None = None


@dataclass(frozen=True)
class ResetMatch:
    matched: bool = False
    remainder: str = ""


def _tidy(text: str) -> str:
    return _INLINE_WS_RE.sub(" ", text).strip()


def _extract(pattern: re.Pattern[str], body: str | None) -> tuple[str, str | None, bool]:
    if not body:
        return "", None, False
    match = pattern.search(body)
    if not match:
        return body.strip(), None, False
    cleaned = _tidy(pattern.sub(" ", body))
    return cleaned, match.group(1), True


def extract_think_directive(body: str | None) -> ThinkDirective:
    """Pull a /think (/thinking, /t) directive out of body."""
    cleaned, raw, found = _extract(_THINK_RE, body)
    return ThinkDirective(cleaned, normalize_think_level(raw), raw, found)


def extract_verbose_directive(body: str | None) -> VerboseDirective:
    """Pull a /verbose (/v) directive out of body."""
    cleaned, raw, found = _extract(_VERBOSE_RE, body)
    return VerboseDirective(cleaned, normalize_verbose_level(raw), raw, found)


def extract_model_directive(body: str | None) -> ModelDirective:
    """Pull a /model directive (optionally with provider/model) out of body."""
    cleaned, raw, found = _extract(_MODEL_RE, body)
    return ModelDirective(cleaned, raw.strip() if raw else None, found)


def normalize_command_mentions(text: str) -> str:
    """Rewrite Telegram style /cmd@botname tokens to plain /cmd."""
    return _BOT_SUFFIX_RE.sub(r"\1", text or "")


def strip_structural_prefixes(text: str) -> str:
    """
    Remove wrapper noise added by upstream formatting.

    Keeps only what follows the current-message marker, then drops bracketed
    labels such as timestamps and leading "Name:" sender prefixes.
    """
    if CURRENT_MESSAGE_MARKER in text:
        text = text[text.index(CURRENT_MESSAGE_MARKER) + len(CURRENT_MESSAGE_MARKER):]
    text = _BRACKET_LABEL_RE.sub("", text)
    text = _SENDER_PREFIX_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip()


def strip_mentions(
    text: str,
    *,
    mention_patterns: list[str] | None = None,
    self_address: str | None = None,
) -> str:
    """Remove mention tokens aimed at the bot from a group message."""
    result = text
    for pattern in mention_patterns or []:
        try:
            result = re.sub(pattern, " ", result, flags=re.IGNORECASE)
        except re.error as e:
            logger.debug(f"Skipping invalid mention pattern {pattern!r}: {e}")
    own = (self_address or "").strip()
    if own.lower().startswith("whatsapp:"):
        own = own[len("whatsapp:"):]
    if own:
        result = re.sub(re.escape(f"@{own}"), " ", result, flags=re.IGNORECASE)
        result = re.sub(re.escape(own), " ", result, flags=re.IGNORECASE)
    result = _NUMERIC_MENTION_RE.sub(" ", result)
    return _WS_RE.sub(" ", result).strip()


def is_abort_trigger(text: str | None) -> bool:
    if not text:
        return False
    return text.strip().lower() in ABORT_TRIGGERS


def normalize_group_activation(raw: str | None) -> GroupActivation | None:
    value = (raw or "").strip().lower()
    if value == "mention":
        return "mention"
    if value == "always":
        return "always"
    return None


def parse_activation_command(text: str | None) -> ActivationCommand:
    """Recognize /activation [mention|always]; an unknown mode leaves mode unset."""
    trimmed = (text or "").strip()
    if not trimmed:
        return ActivationCommand()
    match = _ACTIVATION_RE.match(trimmed)
    if not match:
        return ActivationCommand()
    return ActivationCommand(True, normalize_group_activation(match.group(1)))


def _is_command(text: str, name: str) -> bool:
    return text == f"/{name}" or text == name or text.startswith(f"/{name} ")


def is_status_command(text: str) -> bool:
    return _is_command(text, "status")


def is_restart_command(text: str) -> bool:
    return _is_command(text, "restart")


def match_reset_trigger(candidates: list[str], triggers: list[str]) -> ResetMatch:
    """
    Check candidate bodies for a reset trigger.

    A full match resets with an empty body; "trigger <text>" resets and
    keeps <text> (from the matching candidate, original casing) as the first
    message of the new session.
    """
    for trigger in triggers:
        wanted = (trigger or "").strip().lower()
        if not wanted:
            continue
        for candidate in candidates:
            if candidate.strip().lower() == wanted:
                return ResetMatch(True, "")
        for candidate in candidates:
            stripped = candidate.strip()
            if stripped.lower().startswith(f"{wanted} "):
                return ResetMatch(True, stripped[len(wanted):].lstrip())
    return ResetMatch()
