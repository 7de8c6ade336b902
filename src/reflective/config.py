"""
Reflective Configuration

This module manages configuration via environment variables and the
~/.reflective/.env file.

Configuration is loaded from:
1. Environment variables (prefixed with REFLECTIVE_)
2. ~/.reflective/.env file

Key settings:
- REFLECTIVE_SERVER_URL: Journal server URL (default: http://127.0.0.1:8000)
- REFLECTIVE_DATABASE_URL: Local SQLite database path
- REFLECTIVE_SERVER_ONLY_MODE: Keep the local cache in memory only
- REFLECTIVE_SKIP_API: Never talk to the server (offline development)
"""

import logging
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".reflective"
ENV_FILE = CONFIG_DIR / ".env"
ENV_PREFIX = "REFLECTIVE_"


class Settings(BaseSettings):
    """Reflective configuration settings."""

    app_name: str = "Reflective"

    # Database
    database_url: str = f"sqlite:///{CONFIG_DIR}/reflective.db"

    # Journal server
    server_url: str = "http://127.0.0.1:8000"

    # Storage and network modes
    server_only_mode: bool = False
    skip_api: bool = False

    # Background sync
    sync_interval_seconds: float = 300.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("server_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("sync_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("sync_interval_seconds must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def api_base_url(self) -> str:
        """Base URL every API path is appended to."""
        return f"{self.server_url}/api"

    @property
    def durable(self) -> bool:
        """True when cache mutations are committed to the SQLite file."""
        return not self.server_only_mode

    def get_db_path(self) -> Path | None:
        """Get the SQLite database file path (None for in-memory databases)."""
        if self.database_url.startswith("sqlite:///"):
            raw = self.database_url.replace("sqlite:///", "", 1)
            if raw in ("", ":memory:"):
                return None
            return Path(raw).expanduser()
        return None


def update_env_file(values: dict[str, str], env_path: Path = ENV_FILE) -> Path:
    """Write KEY=value lines to the env file, preserving unrelated lines."""
    lines = []
    if env_path.exists():
        with open(env_path, "r") as f:
            lines = f.readlines()

    keys = {f"{ENV_PREFIX}{key.upper()}" for key in values}
    lines = [l for l in lines if l.split("=", 1)[0].strip() not in keys]

    for key, value in values.items():
        lines.append(f"{ENV_PREFIX}{key.upper()}={value}\n")

    env_path.parent.mkdir(parents=True, exist_ok=True)
    with open(env_path, "w") as f:
        f.writelines(lines)
    logger.debug(f"Updated {', '.join(sorted(keys))} in {env_path}")
    return env_path
