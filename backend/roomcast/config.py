"""Roomcast application configuration.

Loads settings from a single YAML file:
  * roomcast.settings.yaml  (path overridable with ROOMCAST_SETTINGS)

Every product-tuned constant of the chat core lives here rather than in code:
typing liveness window, SSE keep-alive interval, unread cache windows and
page sizes.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomcast.settings.yaml")
SETTINGS_ENV_VAR = "ROOMCAST_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve_path(value: str, base_dir: Path) -> str:
    """Resolve a relative path against the settings file directory."""
    if value == ":memory:":
        return value
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    # Base used to build public blob URLs; empty means "use the request URL".
    public_base_url: str       = ""


class DatabaseSettings(BaseModel):
    path: str = "roomcast.duckdb"


class ChatSettings(BaseModel):
    """Chat delivery tuning."""
    typing_ttl_seconds:               float = 5.0
    typing_cleanup_interval_seconds:  float = 60.0
    ping_interval_seconds:            float = 30.0
    unread_room_cache_seconds:        int   = 10
    unread_summary_cache_seconds:     int   = 15
    unread_summary_limit:             int   = 50
    default_page_size:                int   = 50
    max_page_size:                    int   = 100
    replay_limit:                     int   = 100
    subscriber_queue_size:            int   = 1000

    @field_validator(
        "typing_ttl_seconds",
        "typing_cleanup_interval_seconds",
        "ping_interval_seconds",
    )
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value

    @field_validator("unread_summary_limit", "default_page_size", "max_page_size", "replay_limit")
    @classmethod
    def _positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("limit must be at least 1")
        return value


DEFAULT_ALLOWED_MIME_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/webm",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
]


class UploadSettings(BaseModel):
    upload_dir:         str       = "uploads"
    max_file_size_mb:   int       = 50
    allowed_mime_types: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class AuthSettings(BaseModel):
    session_ttl_hours: int = 24 * 7
    cookie_name:       str = "roomcast_session"


class LoggingSettings(BaseModel):
    level:       str                                   = "info"
    environment: Literal["development", "production"]  = "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    uploads:  UploadSettings   = Field(default_factory=UploadSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings into an *AppConfig*.

    Relative ``database.path`` and ``uploads.upload_dir`` values resolve
    against the directory holding the settings file.
    """
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    config = AppConfig(**_load_yaml(settings_path))

    base_dir = settings_path.resolve().parent
    config.database.path = _resolve_path(config.database.path, base_dir)
    config.uploads.upload_dir = _resolve_path(config.uploads.upload_dir, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, environment=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.logging.environment,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the process-wide config (``None`` forces a reload)."""
    global _config
    _config = config
