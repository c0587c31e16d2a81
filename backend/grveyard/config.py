"""grveyard application configuration.

Loads settings from a single YAML file:
  * grveyard.settings.yaml: non-secret configuration

The file path can be overridden with the ``GRVEYARD_SETTINGS`` environment
variable or by passing ``settings_path`` to :func:`load_config`.  A missing
file is not an error: every section falls back to its defaults.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("grveyard.settings.yaml")
SETTINGS_ENV_VAR = "GRVEYARD_SETTINGS"

IN_MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingConfig(BaseModel):
    level: str = "info"


class DatabaseConfig(BaseModel):
    """DuckDB location. ``:memory:`` keeps everything in-process."""
    path: str = "grveyard.duckdb"


class ChatConfig(BaseModel):
    """Tunables for the real-time messaging subsystem."""
    outbound_queue_size:         int   = Field(default=32, gt=0)
    max_content_length:          int   = Field(default=10000, gt=0)
    persistence_timeout_seconds: float = Field(default=5.0, gt=0)
    presence_timeout_seconds:    float = Field(default=3.0, gt=0)
    read_timeout_seconds:        float = Field(default=60.0, gt=0)
    ping_interval_seconds:       float = Field(default=30.0, gt=0)
    write_timeout_seconds:       float = Field(default=10.0, gt=0)
    # Protocol-level ping/pong is done by uvicorn; JSON heartbeats are opt-in
    app_heartbeat:               bool  = False
    max_inflight_events:         int   = Field(default=64, gt=0)
    default_history_limit:       int   = Field(default=50, gt=0, le=100)
    max_history_limit:           int   = Field(default=100, gt=0, le=100)

    @property
    def ping_timeout_seconds(self) -> float:
        """How long uvicorn waits for a pong before dropping the connection."""
        return self.read_timeout_seconds - self.ping_interval_seconds

    @model_validator(mode="after")
    def _check_liveness(self) -> "ChatConfig":
        # A ping has to go out before the peer's read deadline expires.
        if self.ping_interval_seconds >= self.read_timeout_seconds:
            raise ValueError(
                "ping_interval_seconds must be lower than read_timeout_seconds"
            )
        if self.default_history_limit > self.max_history_limit:
            raise ValueError(
                "default_history_limit cannot exceed max_history_limit"
            )
        return self


class AppConfig(BaseModel):
    server:   ServerConfig   = Field(default_factory=ServerConfig)
    logging:  LoggingConfig  = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    chat:     ChatConfig     = Field(default_factory=ChatConfig)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(raw_path: str, settings_path: Path) -> str:
    """Resolve a relative database path against the settings file directory."""
    if raw_path == IN_MEMORY_DB:
        return raw_path
    path = Path(raw_path)
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load settings into a single *AppConfig* object."""
    if settings_path is None:
        settings_path = os.environ.get(SETTINGS_ENV_VAR) or SETTINGS_FILE
    settings_path = Path(settings_path)

    data = _load_yaml(settings_path)
    config = AppConfig(**data)

    if "database" in data and "path" in (data.get("database") or {}):
        config.database.path = _resolve_db_path(config.database.path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, outbound_queue_size=%d)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.chat.outbound_queue_size,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Set (or clear) the process-wide configuration."""
    global _config
    _config = config
