"""
Scheduler configuration.

Settings come from environment variables (a .env file is loaded by the
entry points). Invalid values are logged and replaced by the default.

Environment Variables:
- SCHEDULER_DB_PATH: Job store database (default: data/scheduler.sqlite)
- ITEMS_DB_PATH: Dilemma/vote database (default: data/dilemma.sqlite)
- SCHEDULER_TIMEZONE: Local timezone for the daily reconcile (default: Europe/Paris)
- SCHEDULER_WORKERS / SCHEDULER_BATCH_SIZE / SCHEDULER_POLL_INTERVAL
- SCHEDULER_HANDLER_TIMEOUT / SCHEDULER_SHUTDOWN_GRACE
- SCHEDULER_MAX_ATTEMPTS / SCHEDULER_RETRY_BASE_DELAY /
  SCHEDULER_RETRY_MAX_DELAY / SCHEDULER_RETRY_JITTER
- SCHEDULER_COMPLETED_RETENTION_DAYS / SCHEDULER_FAILED_RETENTION_DAYS
- SCHEDULER_AUTOSTART: Start workers with the API (default: false)
- STATS_CACHE_TTL: Seconds pre-computed statistics stay cached (default: 3600)
- CACHE_BACKEND: memory | redis (default: memory)
- REDIS_URL: Redis connection URL
- LOG_LEVEL / LOG_DIR
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)


# =============================================================================
# Environment Helpers
# =============================================================================

def _get_env_str(key: str, default: str) -> str:
    val = os.getenv(key)
    if val is None or not val.strip():
        return default
    return val.strip()


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    elif val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int, minimum: int = 0) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            parsed = int(val)
        except ValueError:
            logger.warning(f"Invalid integer for {key}: {val}, using default: {default}")
            return default
        if parsed < minimum:
            logger.warning(f"{key} must be >= {minimum}, got {parsed}, using default: {default}")
            return default
        return parsed
    return default


def _get_env_float(key: str, default: float, minimum: float = 0.0) -> float:
    """Get float value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            parsed = float(val)
        except ValueError:
            logger.warning(f"Invalid number for {key}: {val}, using default: {default}")
            return default
        if parsed < minimum:
            logger.warning(f"{key} must be >= {minimum}, got {parsed}, using default: {default}")
            return default
        return parsed
    return default


def _get_env_timezone(key: str, default: str) -> str:
    val = _get_env_str(key, default)
    try:
        ZoneInfo(val)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone for {key}: {val}, using default: {default}")
        return default
    return val


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class SchedulerSettings:
    """Everything needed to build and run the scheduler."""

    db_path: str = "data/scheduler.sqlite"
    items_db_path: str = "data/dilemma.sqlite"
    timezone: str = "Europe/Paris"
    worker_count: int = 2
    batch_size: int = 5
    poll_interval: float = 1.0
    handler_timeout: float = 30.0
    shutdown_grace: float = 30.0
    max_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0
    retry_jitter: float = 0.0
    completed_retention_days: int = 7
    failed_retention_days: int = 30
    autostart: bool = False
    stats_ttl_seconds: int = 3600
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"
    log_dir: str = "logs"

    @property
    def completed_retention(self) -> timedelta:
        return timedelta(days=self.completed_retention_days)

    @property
    def failed_retention(self) -> timedelta:
        return timedelta(days=self.failed_retention_days)

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        """Read settings from the environment, falling back to defaults."""
        defaults = cls()

        cache_backend = _get_env_str("CACHE_BACKEND", defaults.cache_backend).lower()
        if cache_backend not in ("memory", "redis"):
            logger.warning(
                f"Invalid CACHE_BACKEND: {cache_backend}, using default: {defaults.cache_backend}"
            )
            cache_backend = defaults.cache_backend

        return cls(
            db_path=_get_env_str("SCHEDULER_DB_PATH", defaults.db_path),
            items_db_path=_get_env_str("ITEMS_DB_PATH", defaults.items_db_path),
            timezone=_get_env_timezone("SCHEDULER_TIMEZONE", defaults.timezone),
            worker_count=_get_env_int("SCHEDULER_WORKERS", defaults.worker_count, minimum=1),
            batch_size=_get_env_int("SCHEDULER_BATCH_SIZE", defaults.batch_size, minimum=1),
            poll_interval=_get_env_float(
                "SCHEDULER_POLL_INTERVAL", defaults.poll_interval, minimum=0.01
            ),
            handler_timeout=_get_env_float(
                "SCHEDULER_HANDLER_TIMEOUT", defaults.handler_timeout, minimum=0.01
            ),
            shutdown_grace=_get_env_float("SCHEDULER_SHUTDOWN_GRACE", defaults.shutdown_grace),
            max_attempts=_get_env_int("SCHEDULER_MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
            retry_base_delay=_get_env_float(
                "SCHEDULER_RETRY_BASE_DELAY", defaults.retry_base_delay, minimum=0.001
            ),
            retry_max_delay=_get_env_float(
                "SCHEDULER_RETRY_MAX_DELAY", defaults.retry_max_delay, minimum=0.001
            ),
            retry_jitter=_get_env_float("SCHEDULER_RETRY_JITTER", defaults.retry_jitter),
            completed_retention_days=_get_env_int(
                "SCHEDULER_COMPLETED_RETENTION_DAYS", defaults.completed_retention_days
            ),
            failed_retention_days=_get_env_int(
                "SCHEDULER_FAILED_RETENTION_DAYS", defaults.failed_retention_days
            ),
            autostart=_get_env_bool("SCHEDULER_AUTOSTART", defaults.autostart),
            stats_ttl_seconds=_get_env_int(
                "STATS_CACHE_TTL", defaults.stats_ttl_seconds, minimum=1
            ),
            cache_backend=cache_backend,
            redis_url=_get_env_str("REDIS_URL", defaults.redis_url),
            log_level=_get_env_str("LOG_LEVEL", defaults.log_level).upper(),
            log_dir=_get_env_str("LOG_DIR", defaults.log_dir),
        )
