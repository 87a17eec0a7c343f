"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ModelCatalogEntry(Base):
    """One selectable provider/model pair."""

    provider: str
    id: str
    name: str | None = None
    context_window: int | None = None


class AgentConfig(Base):
    """Agent runtime defaults."""

    provider: str | None = None
    model: str | None = None
    workspace: str = "~/.relaybot/workspace"
    allowed_models: list[str] = Field(default_factory=list)
    model_catalog: list[ModelCatalogEntry] = Field(default_factory=list)
    thinking_default: Literal["off", "minimal", "low", "medium", "high"] | None = None
    verbose_default: Literal["off", "on"] | None = None
    timeout_seconds: int = 600
    context_tokens: int | None = None
    typing_interval_seconds: float = 6
    engine: str | None = None  # "package.module:attribute"


class SessionConfig(Base):
    """Session scoping and freshness."""

    scope: Literal["per-sender", "per-group", "global"] = "per-sender"
    main_key: str = "main"
    idle_minutes: int = 60
    reset_triggers: list[str] = Field(default_factory=lambda: ["/new", "/reset"])
    store: str | None = None


class GroupChatConfig(Base):
    """Group chat behaviour."""

    require_mention: bool | None = None
    mention_patterns: list[str] = Field(default_factory=list)


class RoutingConfig(Base):
    """Inbound routing rules."""

    allow_from: list[str] = Field(default_factory=list)
    transcribe_audio: bool = False
    group_chat: GroupChatConfig = Field(default_factory=GroupChatConfig)


class GatewayConfig(Base):
    """Gateway loop settings."""

    max_concurrency: int = 4


class TelegramConfig(Base):
    """Telegram channel configuration."""

    enabled: bool = False
    token: str = ""
    proxy: str | None = None
    allow_from: list[str] = Field(default_factory=list)


class ChannelsConfig(Base):
    """Configuration for chat channels."""

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


class Config(Base):
    """Root configuration for relaybot."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agent.workspace).expanduser()
