"""Cron job types."""

from dataclasses import dataclass, field
from typing import Literal


@dataclass
class AgentTurnPayload:
    """What to do when a job fires: run an isolated agent turn."""

    kind: Literal["agentTurn"] = "agentTurn"
    message: str = ""
    thinking: str | None = None
    timeout_seconds: int | None = None
    deliver: bool = False
    channel: Literal["last", "whatsapp", "telegram"] = "last"
    to: str | None = None
    best_effort_deliver: bool = False


@dataclass
class SystemEventPayload:
    """What to do when a job fires: enqueue a system notice for the main session."""

    kind: Literal["systemEvent"] = "systemEvent"
    text: str = ""


@dataclass
class CronJob:
    """A scheduled job."""

    id: str
    name: str
    payload: AgentTurnPayload | SystemEventPayload = field(default_factory=AgentTurnPayload)
    enabled: bool = True


@dataclass
class CronRunResult:
    """Outcome of one isolated cron turn."""

    status: Literal["ok", "error", "skipped"]
    summary: str | None = None
    error: str | None = None
