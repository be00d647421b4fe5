"""
Runtime configuration for the kanban-sync service.

Settings are read from environment variables so the same values apply to the
API server, the CLI, and the background lock sweep. CLI options override the
environment by building a Settings instance with explicit keyword arguments.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = "kanban_sync.db"
DEFAULT_LOCK_TTL_SECONDS = 300
DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS = 60
DEFAULT_RECENT_LOG_LIMIT = 20


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """
    Service settings.

    Attributes:
        database_path: SQLite database file shared by every worker process
        lock_ttl_seconds: Age after which an edit lock is reclaimed by the sweep
        lock_sweep_interval_seconds: Period of the background lock sweep
        recent_log_limit: Page size of the recent activity feed
        cors_origins: Allowed CORS origins for browser clients
        log_level: Root logging level name
        host: Bind address for ``kanban-sync serve``
        port: Bind port for ``kanban-sync serve``
    """
    database_path: str = DEFAULT_DATABASE_PATH
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    lock_sweep_interval_seconds: int = DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS
    recent_log_limit: int = DEFAULT_RECENT_LOG_LIMIT
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    def __post_init__(self):
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be positive")
        if self.recent_log_limit <= 0:
            raise ValueError("recent_log_limit must be positive")
        # Sweep interval stays at or below half the lock TTL
        max_interval = max(1, self.lock_ttl_seconds // 2)
        if self.lock_sweep_interval_seconds <= 0 or self.lock_sweep_interval_seconds > max_interval:
            logger.warning(
                f"Lock sweep interval {self.lock_sweep_interval_seconds}s is not below half the "
                f"lock TTL ({self.lock_ttl_seconds}s); using {max_interval}s"
            )
            self.lock_sweep_interval_seconds = max_interval

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            **overrides: Explicit values (e.g. from CLI options); None values are ignored

        Returns:
            Settings instance
        """
        values = {
            "database_path": os.getenv("DATABASE_PATH", DEFAULT_DATABASE_PATH),
            "lock_ttl_seconds": _env_int("LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL_SECONDS),
            "lock_sweep_interval_seconds": _env_int(
                "LOCK_SWEEP_INTERVAL_SECONDS", DEFAULT_LOCK_SWEEP_INTERVAL_SECONDS
            ),
            "recent_log_limit": _env_int("RECENT_LOG_LIMIT", DEFAULT_RECENT_LOG_LIMIT),
            "cors_origins": _env_list("CORS_ORIGINS", ["*"]),
            "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
            "host": os.getenv("HOST", "0.0.0.0"),
            "port": _env_int("PORT", 8000),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
