"""Configuration management for chainpulse.

Settings come from (highest priority first) constructor arguments,
``CHAINPULSE_*`` environment variables, a ``.env`` file, and finally
``~/.chainpulse/config.json`` when loaded through ``Settings.load()``.

Created: 2026-10-19
"""

import json
import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Get the config directory, creating if needed."""
    config_dir = Path.home() / ".chainpulse"
    config_dir.mkdir(exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.json"


class Settings(BaseSettings):
    """Engine settings with env and file support."""

    model_config = SettingsConfigDict(env_prefix="CHAINPULSE_", env_file=".env", extra="ignore")

    # Real-time window
    realtime_window_seconds: int = Field(
        default=3600, gt=0, description="Trailing window for real-time analytics"
    )
    realtime_max_events: int = Field(
        default=10_000, gt=0, description="Hard cap on events held in the window"
    )
    recent_events_limit: int = Field(
        default=20, ge=0, description="Number of recent events in a real-time view"
    )
    top_pages_limit: int = Field(default=10, ge=0, description="Top current pages reported")
    tick_interval_seconds: float = Field(
        default=5.0, gt=0, description="Interval for periodic real-time recomputation"
    )

    # Snapshots
    snapshot_top_n: int = Field(
        default=10, ge=0, description="Entries kept in snapshot top-contracts/top-events"
    )

    # Duplicate suppression
    dedup_enabled: bool = Field(
        default=True, description="Ignore redelivered events with an already-seen event id"
    )
    dedup_ttl_seconds: int = Field(
        default=86_400, gt=0, description="How long an event id is remembered"
    )
    dedup_max_entries: int = Field(
        default=100_000, gt=0, description="Upper bound on remembered event ids"
    )

    # Aggregation services
    operation_timeout_seconds: float | None = Field(
        default=None, gt=0, description="Default timeout for get-or-create/update (None = none)"
    )
    max_update_retries: int = Field(
        default=5, ge=1, description="Compare-and-write attempts before giving up"
    )

    # Persistence
    store_backend: str = Field(
        default="memory", description="Entity store: 'memory' or 'file'"
    )
    store_path: Path | None = Field(
        default=None, description="Directory for the file store (default ~/.chainpulse/store)"
    )

    @property
    def realtime_window(self) -> timedelta:
        return timedelta(seconds=self.realtime_window_seconds)

    @property
    def dedup_ttl(self) -> timedelta:
        return timedelta(seconds=self.dedup_ttl_seconds)

    def resolved_store_path(self) -> Path:
        return self.store_path or get_config_dir() / "store"

    def save(self) -> None:
        """Save settings to the config file."""
        config_path = get_config_path()
        data = self.model_dump(mode="json")
        config_path.write_text(json.dumps(data, indent=2))

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from config file, falling back to env/defaults."""
        config_path = get_config_path()
        if config_path.exists():
            try:
                data = json.loads(config_path.read_text())
                return cls(**data)
            except (json.JSONDecodeError, ValueError):
                logger.warning("Ignoring unreadable config at %s", config_path, exc_info=True)
        return cls()


@lru_cache
def get_settings(force_reload: bool = False) -> Settings:
    """Get cached settings instance."""
    if force_reload:
        get_settings.cache_clear()
    return Settings.load()
