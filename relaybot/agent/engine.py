"""Agent engine contract: the external runtime that actually answers prompts."""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from relaybot.errors import ConfigError

if TYPE_CHECKING:
    from relaybot.agent.context import MessageContext
    from relaybot.config.schema import Config


@dataclass
class ReplyPayload:
    """One part of a reply: text, media, or both."""

    text: str | None = None
    media_url: str | None = None
    media_urls: list[str] | None = None

    @property
    def media(self) -> list[str]:
        if self.media_urls:
            return list(self.media_urls)
        return [self.media_url] if self.media_url else []

    def to_json(self) -> dict[str, Any]:
        media = self.media
        return {
            "text": self.text or "",
            "mediaUrl": self.media_url,
            "mediaUrls": media or None,
        }


@dataclass
class Usage:
    input: int | None = None
    output: int | None = None
    cache_read: int | None = None
    cache_write: int | None = None
    total: int | None = None

    def prompt_tokens(self) -> int:
        return (self.input or 0) + (self.cache_read or 0) + (self.cache_write or 0)

    def total_tokens(self) -> int:
        """Prompt-side tokens when known, else the reported total, else input."""
        prompt = self.prompt_tokens()
        if prompt > 0:
            return prompt
        if self.total is not None:
            return self.total
        return self.input or 0


@dataclass
class AgentMeta:
    model: str | None = None
    usage: Usage | None = None


@dataclass
class AgentRunResult:
    payloads: list[ReplyPayload] = field(default_factory=list)
    aborted: bool = False
    agent_meta: AgentMeta | None = None

    def to_json(self) -> dict[str, Any]:
        meta: dict[str, Any] = {"aborted": self.aborted}
        if self.agent_meta:
            usage = self.agent_meta.usage
            meta["agentMeta"] = {
                "model": self.agent_meta.model,
                "usage": None if usage is None else {
                    "input": usage.input,
                    "output": usage.output,
                    "cacheRead": usage.cache_read,
                    "cacheWrite": usage.cache_write,
                    "total": usage.total,
                },
            }
        return {"payloads": [p.to_json() for p in self.payloads], "meta": meta}


PayloadCallback = Callable[[ReplyPayload], Awaitable[None]]


@dataclass
class AgentRunRequest:
    """Everything the engine needs for one turn."""

    session_id: str
    prompt: str
    provider: str
    model: str
    timeout_ms: int
    session_key: str | None = None
    think_level: str | None = None
    verbose_level: str | None = None
    extra_system_prompt: str | None = None
    skills_snapshot: Any = None
    workspace: str | None = None
    owner_numbers: list[str] | None = None
    lane: str | None = None
    on_partial_reply: PayloadCallback | None = None
    on_tool_result: PayloadCallback | None = None
    should_emit_tool_result: Callable[[], Awaitable[bool]] | None = None


class AgentEngine(ABC):
    """
    Abstract agent runtime.

    Implementations run one prompt for one session and may raise
    UpstreamFailure; this layer never retries.
    """

    @abstractmethod
    async def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run a single turn."""
        pass

    def queue_message(self, session_id: str, text: str) -> bool:
        """
        Offer text to a turn already running for session_id.

        Returns True when the running turn accepted it as pending input.
        """
        return False


class Transcriber(Protocol):
    async def transcribe(self, ctx: MessageContext) -> str | None:
        """Return the transcript for ctx's audio attachment, or None."""
        ...


def load_engine(config: Config) -> AgentEngine:
    """
    Instantiate the engine named by agent.engine ("package.module:attribute").

    The attribute may be an AgentEngine instance, or a class/factory called
    with the config.
    """
    target = (config.agent.engine or "").strip()
    if not target or ":" not in target:
        raise ConfigError(
            "No agent engine configured. Set agent.engine to \"package.module:attribute\" "
            "in ~/.relaybot/config.json"
        )
    module_name, _, attr = target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import agent engine module {module_name!r}: {e}") from e
    obj = getattr(module, attr, None)
    if obj is None:
        raise ConfigError(f"Agent engine {target!r} not found")
    if isinstance(obj, AgentEngine):
        return obj
    engine = obj(config)
    if not isinstance(engine, AgentEngine):
        raise ConfigError(f"Agent engine {target!r} did not produce an AgentEngine")
    return engine
