"""
Delayed job scheduler core module.

Publishes each dilemma at its publish time and reveals its results at its
reveal time, with retries, crash recovery and a daily reconcile sweep.
"""

from .clock import Clock, SystemClock
from .entities import (
    JobType,
    JobState,
    ItemPayload,
    ReconcilePayload,
    Job,
    ScheduledItem,
    UpcomingJob,
    QueueStats,
    job_id_for,
)
from .errors import (
    SchedulerError,
    InvalidOperationError,
    JobNotFoundError,
    ConcurrencyViolationError,
    StoreUnavailableError,
    HandlerTimeoutError,
    MissingHandlerError,
)
from .persistence import PersistenceAdapter
from .queue_manager import QueueManager
from .retry_policy import RetryPolicy, RetryDecision
from .executor import Executor, ExecutionResult, JobHandler
from .dispatcher import Dispatcher, DispatcherState, Worker
from .planner import ItemPlanner
from .recovery import RecoveryManager
from .handlers import PublishHandler, RevealHandler, DailyReconcileHandler
from .ports import CacheKeys
from .service import SchedulerService

__all__ = [
    # Time
    "Clock",
    "SystemClock",
    # Entities
    "JobType",
    "JobState",
    "ItemPayload",
    "ReconcilePayload",
    "Job",
    "ScheduledItem",
    "UpcomingJob",
    "QueueStats",
    "job_id_for",
    # Errors
    "SchedulerError",
    "InvalidOperationError",
    "JobNotFoundError",
    "ConcurrencyViolationError",
    "StoreUnavailableError",
    "HandlerTimeoutError",
    "MissingHandlerError",
    # Components
    "PersistenceAdapter",
    "QueueManager",
    "RetryPolicy",
    "RetryDecision",
    "Executor",
    "ExecutionResult",
    "JobHandler",
    "Dispatcher",
    "DispatcherState",
    "Worker",
    "ItemPlanner",
    "RecoveryManager",
    "PublishHandler",
    "RevealHandler",
    "DailyReconcileHandler",
    "CacheKeys",
    "SchedulerService",
]
