"""Thinking and verbose level vocabularies."""

from typing import Literal

ThinkLevel = Literal["off", "minimal", "low", "medium", "high"]
VerboseLevel = Literal["off", "on"]

THINK_LEVELS: tuple[ThinkLevel, ...] = ("off", "minimal", "low", "medium", "high")
VERBOSE_LEVELS: tuple[VerboseLevel, ...] = ("off", "on")

_THINK_ALIASES: dict[str, ThinkLevel] = {
    "off": "off",
    "none": "off",
    "min": "minimal",
    "minimal": "minimal",
    "think": "minimal",
    "low": "low",
    "thinkhard": "low",
    "think-hard": "low",
    "think_hard": "low",
    "med": "medium",
    "mid": "medium",
    "medium": "medium",
    "harder": "medium",
    "thinkharder": "medium",
    "think-harder": "medium",
    "high": "high",
    "max": "high",
    "highest": "high",
    "ultra": "high",
    "ultrathink": "high",
    "thinkhardest": "high",
}

_VERBOSE_ALIASES: dict[str, VerboseLevel] = {
    "off": "off",
    "false": "off",
    "no": "off",
    "0": "off",
    "on": "on",
    "full": "on",
    "true": "on",
    "yes": "on",
    "1": "on",
}


def normalize_think_level(raw: str | None) -> ThinkLevel | None:
    """Map a user-supplied thinking level (or alias) to its canonical name."""
    if not raw:
        return None
    return _THINK_ALIASES.get(raw.strip().lower())


def normalize_verbose_level(raw: str | None) -> VerboseLevel | None:
    """Map a user-supplied verbose level (or alias) to its canonical name."""
    if not raw:
        return None
    return _VERBOSE_ALIASES.get(raw.strip().lower())
