"""
Scheduler state management for API integration.

Provides singleton access to the SchedulerService instance.
Initialized during FastAPI lifespan; started only when SCHEDULER_AUTOSTART
is set or on an explicit POST /scheduler/start.

Usage:
    from ._scheduler_state import get_scheduler_service, init_scheduler_service

    # In lifespan:
    init_scheduler_service(settings)

    # In routers:
    service = get_scheduler_service()
"""

from typing import Optional

from ..infra.cache import build_cache
from ..infra.config import SchedulerSettings
from ..infra.repository import SqliteItemRepository
from ..scheduler.service import SchedulerService


# Global scheduler service instance
_scheduler_service: Optional[SchedulerService] = None


def init_scheduler_service(settings: SchedulerSettings) -> SchedulerService:
    """
    Initialize the scheduler service singleton.

    Called during FastAPI lifespan startup. Does NOT start the workers.

    Args:
        settings: Scheduler settings

    Returns:
        Initialized SchedulerService
    """
    global _scheduler_service

    if _scheduler_service is not None:
        return _scheduler_service

    _scheduler_service = SchedulerService.create(
        settings=settings,
        cache=build_cache(settings.cache_backend, settings.redis_url),
        repository=SqliteItemRepository(settings.items_db_path),
    )

    return _scheduler_service


def set_scheduler_service(service: Optional[SchedulerService]) -> None:
    """Replace the singleton (tests and embedding applications)."""
    global _scheduler_service
    _scheduler_service = service


def get_scheduler_service() -> SchedulerService:
    """
    Get the scheduler service singleton.

    Raises:
        RuntimeError: If scheduler service not initialized
    """
    if _scheduler_service is None:
        raise RuntimeError(
            "Scheduler service not initialized. "
            "Ensure init_scheduler_service() is called during startup."
        )

    return _scheduler_service


def shutdown_scheduler_service() -> None:
    """
    Shutdown the scheduler service.

    Called during FastAPI lifespan shutdown. Stops the workers gracefully
    if running and releases the job store.
    """
    global _scheduler_service

    if _scheduler_service is not None:
        _scheduler_service.close()
        _scheduler_service = None
