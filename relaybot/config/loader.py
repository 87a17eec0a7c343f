"""Configuration loading utilities."""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from relaybot.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".relaybot" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True, exclude_none=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _migrate_config(data: dict[str, Any]) -> dict[str, Any]:
    """Migrate old config formats to current."""
    inbound = data.pop("inbound", None)
    if not isinstance(inbound, dict):
        return data

    # Move inbound.session -> session (existing top-level keys win)
    legacy_session = inbound.get("session")
    if isinstance(legacy_session, dict):
        session = data.setdefault("session", {})
        for key, value in legacy_session.items():
            session.setdefault(key, value)

    # Move inbound.allowFrom -> routing.allowFrom
    legacy_allow = inbound.get("allowFrom")
    if isinstance(legacy_allow, list):
        routing = data.setdefault("routing", {})
        routing.setdefault("allowFrom", legacy_allow)

    return data
