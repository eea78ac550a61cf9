"""Uploader service configuration.

Loads settings from two YAML files:
  * uploader.settings.yaml  — non-secret configuration
  * uploader.secrets.yaml   — the shared upload/delete secret (never committed)

The settings file location comes from ``load_config(settings_path=...)``,
the ``UPLOADER_SETTINGS`` environment variable, or the working directory.
The secrets file is looked up next to the settings file.
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

SETTINGS_FILE = Path("uploader.settings.yaml")
SECRETS_FILE_NAME = "uploader.secrets.yaml"
SETTINGS_ENV_VAR = "UPLOADER_SETTINGS"

DEFAULT_AUTH_TOKEN = "change_me_strong_token"
DEFAULT_ALLOWED_MIME = ["image/*", "video/*", "audio/*", "application/pdf"]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve_path(value: str, base_dir: Path) -> str:
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class Secrets(BaseModel):
    auth_token: str = DEFAULT_AUTH_TOKEN


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str           = "0.0.0.0"
    port:            int           = 3000
    base_url:        Optional[str] = None
    allowed_origins: List[str]     = Field(default_factory=lambda: ["*"])

    @model_validator(mode="after")
    def _default_base_url(self) -> "ServerSettings":
        if not self.base_url:
            self.base_url = f"http://localhost:{self.port}"
        self.base_url = self.base_url.rstrip("/")
        return self


class StorageSettings(BaseModel):
    """Where blobs and the metadata index live, and how big a blob may be."""
    upload_dir:       str   = "uploads"
    db_path:          str   = "db/files.duckdb"
    max_file_size_mb: float = Field(default=200, gt=0)

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)


class RetentionSettings(BaseModel):
    days:                     float         = Field(default=7, gt=0)
    max_seconds:              Optional[int] = Field(default=None, gt=0)
    cleanup_interval_minutes: float         = Field(default=60, gt=0)

    @property
    def default_seconds(self) -> int:
        return int(self.days * 86400)

    @property
    def cleanup_interval_seconds(self) -> float:
        return self.cleanup_interval_minutes * 60


class MimeSettings(BaseModel):
    allowed: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME))

    @field_validator("allowed", mode="before")
    @classmethod
    def _split_comma_string(cls, value: Any) -> Any:
        # Accept the "image/*,video/*" form as well as a YAML list.
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class RateLimitSettings(BaseModel):
    requests:       int = Field(default=30, gt=0)
    window_seconds: int = Field(default=60, gt=0)


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:     ServerSettings    = Field(default_factory=ServerSettings)
    storage:    StorageSettings   = Field(default_factory=StorageSettings)
    retention:  RetentionSettings = Field(default_factory=RetentionSettings)
    mime:       MimeSettings      = Field(default_factory=MimeSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    logging:    LoggingSettings   = Field(default_factory=LoggingSettings)
    secrets:    Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    Relative ``storage.upload_dir`` and ``storage.db_path`` values resolve
    against the directory holding the settings file.
    """
    if settings_path is None:
        settings_path = os.environ.get(SETTINGS_ENV_VAR) or SETTINGS_FILE
    settings_path = Path(settings_path)
    base_dir = settings_path.resolve().parent

    settings_data = _load_yaml(settings_path)
    secrets_data = _load_yaml(base_dir / SECRETS_FILE_NAME)

    # Secrets may also be inlined in the settings file for local setups.
    merged_secrets = dict(settings_data.get("secrets") or {})
    merged_secrets.update(secrets_data)
    settings_data["secrets"] = merged_secrets

    config = AppConfig(**settings_data)
    config.storage.upload_dir = _resolve_path(config.storage.upload_dir, base_dir)
    config.storage.db_path = _resolve_path(config.storage.db_path, base_dir)

    if config.secrets.auth_token == DEFAULT_AUTH_TOKEN:
        logger.warning("Using the default auth token; set auth_token in %s", SECRETS_FILE_NAME)

    logger.info(
        "Settings loaded (base_url=%s, upload_dir=%s, max_file_size_mb=%s, retention.days=%s)",
        config.server.base_url,
        config.storage.upload_dir,
        config.storage.max_file_size_mb,
        config.retention.days,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (for testing)."""
    global _config
    _config = None
