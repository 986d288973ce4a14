"""Roomchat application configuration.

Loads settings from a single YAML file:
  * roomchat.settings.yaml: server, room and logging settings

The file location can be overridden with the ROOMCHAT_SETTINGS environment
variable. PORT in the environment overrides server.port.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomchat.settings.yaml")
SETTINGS_ENV_VAR = "ROOMCHAT_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = Field(3000, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class RoomSettings(BaseModel):
    """Limits and defaults applied by the messaging engine.

    Over-long or empty input is clamped to these values, never rejected.
    """
    default_room:           str       = "General"
    preset_rooms:           List[str] = Field(
        default_factory=lambda: ["General", "Sports", "Tech", "Random"]
    )
    default_username:       str       = "Anonymous"
    max_username_length:    int       = 32
    max_message_length:     int       = 1000
    history_limit:          int       = 200
    history_replay:         int       = 50
    leave_previous_on_join: bool      = False

    @field_validator(
        "max_username_length", "max_message_length", "history_limit", "history_replay"
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("default_room", "default_username")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @model_validator(mode="after")
    def _replay_within_limit(self) -> "RoomSettings":
        if self.history_replay > self.history_limit:
            raise ValueError(
                f"history_replay ({self.history_replay}) cannot exceed "
                f"history_limit ({self.history_limit})"
            )
        return self


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    rooms:   RoomSettings    = Field(default_factory=RoomSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load settings into a fresh *AppConfig* object.

    Resolution order for the file: explicit ``settings_path``, then the
    ROOMCHAT_SETTINGS environment variable, then ./roomchat.settings.yaml.
    """
    if settings_path is None:
        settings_path = os.environ.get(SETTINGS_ENV_VAR) or SETTINGS_FILE
    settings_data = _load_yaml(Path(settings_path))

    # PORT env var wins over the file, matching common PaaS conventions
    env_port = os.environ.get("PORT")
    if env_port:
        try:
            port = int(env_port)
        except ValueError:
            raise ValueError(
                f"PORT environment variable must be an integer, got {env_port!r}"
            ) from None
        settings_data["server"] = {**(settings_data.get("server") or {}), "port": port}

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, history_limit=%s, history_replay=%s)",
        config.server.host,
        config.server.port,
        config.rooms.history_limit,
        config.rooms.history_replay,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (for testing)."""
    global _config
    _config = None
