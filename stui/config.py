"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

from platformdirs import user_cache_dir
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_database_url() -> str:
    """SQLite cache file under the user's cache directory."""
    cache_dir = Path(user_cache_dir("stui"))
    return f"sqlite+aiosqlite:///{cache_dir / 'cache.db'}"


class Settings(BaseSettings):
    """stui client settings."""

    model_config = SettingsConfigDict(
        env_prefix="STUI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Daemon
    base_url: str = "http://127.0.0.1:8384"
    api_key: str = ""
    request_timeout: float = Field(default=30.0, gt=0)

    # Cache database
    database_url: str = Field(default_factory=default_database_url)

    # Scheduler
    max_concurrent_requests: int = Field(default=10, ge=1)
    drain_interval: float = Field(default=0.01, gt=0)
    max_admissions_per_tick: int = Field(default=5, ge=1)

    # Event listener
    event_poll_timeout: int = Field(default=60, ge=1)
    event_retry_delay: float = Field(default=5.0, ge=0)
    event_reset_threshold: int = Field(default=1000, ge=0)

    # Directory aggregation
    directory_update_interval: float = Field(default=2.0, ge=0)

    debug: bool = False

    def validate_runtime(self) -> None:
        """Reject settings the client cannot start with."""
        violations: list[str] = []
        parsed = urlparse(self.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            violations.append("BASE_URL must include scheme and host (e.g. http://127.0.0.1:8384)")
        if not self.api_key:
            violations.append("API_KEY must be set (see the daemon's GUI settings)")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid configuration: {joined}")
