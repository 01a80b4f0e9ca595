"""
Infrastructure module - configuration, logging, cache and repository adapters.
"""

from .cache import MemoryCache, RedisCache, build_cache
from .config import SchedulerSettings
from .logging_config import setup_logging

__all__ = [
    "MemoryCache",
    "RedisCache",
    "build_cache",
    "SchedulerSettings",
    "setup_logging",
]
