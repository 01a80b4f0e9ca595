"""
Scheduler Service - Main entry point for the Job Scheduler.

This service orchestrates all scheduler components:
- PersistenceAdapter (storage)
- QueueManager (queue operations)
- RetryPolicy (backoff decisions)
- ItemPlanner (item dates -> jobs)
- RecoveryManager (crash recovery, reconcile sweep)
- Executor (handler invocation)
- Dispatcher (worker pool)

Usage:
    service = SchedulerService.create(settings, cache, repository)
    service.start()
    # ... workers run in background threads ...
    service.shutdown()
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .clock import Clock, SystemClock
from .dispatcher import Dispatcher
from .entities import Job, JobType, UpcomingJob
from .errors import JobNotFoundError
from .executor import Executor
from .handlers import DailyReconcileHandler, PublishHandler, RevealHandler
from .persistence import PersistenceAdapter
from .planner import ItemPlanner
from .ports import Cache, ItemRepository, StatsCompute
from .queue_manager import QueueManager
from .recovery import RecoveryManager
from .retry_policy import RetryPolicy
from ..infra.config import SchedulerSettings


logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Main service that coordinates all scheduler components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery
    - Graceful shutdown
    - API-friendly methods for item and job operations
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        queue_manager: QueueManager,
        planner: ItemPlanner,
        recovery_manager: RecoveryManager,
        executor: Executor,
        dispatcher: Dispatcher,
        settings: Optional[SchedulerSettings] = None,
    ):
        """
        Initialize SchedulerService with all components.

        Use SchedulerService.create() for convenient construction.
        """
        self.persistence = persistence
        self.queue_manager = queue_manager
        self.planner = planner
        self.recovery_manager = recovery_manager
        self.executor = executor
        self.dispatcher = dispatcher
        self.settings = settings or SchedulerSettings()

        self._started = False

    @classmethod
    def create(
        cls,
        settings: SchedulerSettings,
        cache: Cache,
        repository: ItemRepository,
        compute_stats: Optional[StatsCompute] = None,
        clock: Optional[Clock] = None,
    ) -> "SchedulerService":
        """
        Create a SchedulerService with all components wired together.

        Args:
            settings: Scheduler settings
            cache: Cache touched by the publish and reveal handlers
            repository: Source of future items
            compute_stats: Vote statistics source (default: repository.compute_stats)
            clock: Time source (default: system clock)

        Returns:
            Configured SchedulerService
        """
        clock = clock or SystemClock()

        if compute_stats is None:
            compute_stats = getattr(repository, "compute_stats", None)
            if compute_stats is None:
                raise ValueError("compute_stats is required when the repository has none")

        persistence = PersistenceAdapter(settings.db_path)

        retry_policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.retry_base_delay,
            max_delay_seconds=settings.retry_max_delay,
            jitter_ratio=settings.retry_jitter,
        )

        queue_manager = QueueManager(persistence, clock=clock, retry_policy=retry_policy)

        planner = ItemPlanner(
            queue_manager,
            clock=clock,
            timezone_name=settings.timezone,
            max_attempts=settings.max_attempts,
        )

        recovery_manager = RecoveryManager(queue_manager, planner, repository)

        executor = Executor(timeout_seconds=settings.handler_timeout)
        executor.register(JobType.PUBLISH, PublishHandler(cache))
        executor.register(
            JobType.REVEAL,
            RevealHandler(cache, compute_stats, stats_ttl_seconds=settings.stats_ttl_seconds),
        )
        executor.register(
            JobType.DAILY_RECONCILE,
            DailyReconcileHandler(
                planner,
                recovery_manager,
                queue_manager,
                completed_retention=settings.completed_retention,
                failed_retention=settings.failed_retention,
            ),
        )

        dispatcher = Dispatcher(
            queue_manager,
            executor,
            worker_count=settings.worker_count,
            batch_size=settings.batch_size,
            poll_interval=settings.poll_interval,
        )

        return cls(
            persistence=persistence,
            queue_manager=queue_manager,
            planner=planner,
            recovery_manager=recovery_manager,
            executor=executor,
            dispatcher=dispatcher,
            settings=settings,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True) -> dict:
        """
        Start the scheduler service.

        Args:
            run_recovery: Whether to run crash recovery first

        Returns:
            Recovery statistics if recovery was run

        Raises:
            MissingHandlerError: If a job type has no handler
            RuntimeError: If already started, or if workers of the previous
                run are still finishing (recovery would fail their jobs)
        """
        if self._started:
            raise RuntimeError("Scheduler already started")

        if self.dispatcher.is_draining():
            raise RuntimeError("Workers from the previous run are still finishing")

        logger.info("Starting scheduler service...")

        self.executor.validate()

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recover_at_startup()

        self.arm_daily_reconcile()

        self.dispatcher.start()
        self._started = True

        logger.info("Scheduler service started")
        return recovery_stats

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the scheduler service gracefully.

        Stops new claims and waits for in-flight jobs (no preemption).

        Args:
            timeout: Grace period in seconds (default: settings.shutdown_grace)
        """
        if not self._started:
            return

        if timeout is None:
            timeout = self.settings.shutdown_grace

        logger.info("Stopping scheduler service...")
        self.dispatcher.stop(timeout=timeout)
        self._started = False
        logger.info("Scheduler service stopped")

    stop = shutdown

    def close(self) -> None:
        """Shut down and release the job store."""
        self.shutdown()
        self.persistence.close()

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self.dispatcher.is_running()

    # =========================================================================
    # Item Operations
    # =========================================================================

    def schedule_item(self, item_id: str, publish_at: datetime, reveal_at: datetime) -> list[Job]:
        return self.planner.schedule_item(item_id, publish_at, reveal_at)

    def unschedule_item(self, item_id: str) -> int:
        return self.planner.unschedule_item(item_id)

    def reschedule_item(self, item_id: str, publish_at: datetime, reveal_at: datetime) -> list[Job]:
        return self.planner.reschedule_item(item_id, publish_at, reveal_at)

    def recover_at_startup(self) -> dict:
        """Recover abandoned jobs and re-plan every future item."""
        return self.recovery_manager.recover_on_startup()

    def arm_daily_reconcile(self) -> Job:
        """Arm the daily reconcile job for the next local midnight."""
        return self.planner.arm_daily_reconcile()

    def reconcile(self) -> int:
        """Run the reconcile sweep now. Returns the number of items scheduled."""
        return self.recovery_manager.reconcile()

    # =========================================================================
    # Inspection
    # =========================================================================

    def get_queue_stats(self) -> dict:
        """
        Get queue statistics.

        Returns:
            pending, active, completed, failed, delayed and total counts
        """
        return self.queue_manager.counts().as_dict()

    def get_scheduler_status(self) -> dict:
        """Get worker state and queue statistics in one view."""
        return {
            "scheduler_running": self.is_running,
            "worker_count": len(self.dispatcher.workers),
            "current_job_ids": [job.job_id for job in self.dispatcher.current_jobs],
            "queue": self.get_queue_stats(),
        }

    def list_upcoming_jobs(self, limit: int = 10) -> list[UpcomingJob]:
        """Jobs not run yet, soonest first."""
        return [UpcomingJob.from_job(job) for job in self.queue_manager.list_upcoming(limit)]

    def list_failed_jobs(self, limit: int = 100) -> list[Job]:
        return self.queue_manager.list_failed(limit)

    def get_job(self, job_id: str) -> Job:
        """
        Get a job by ID.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = self.queue_manager.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup(
        self,
        completed_retention: Optional[timedelta] = None,
        failed_retention: Optional[timedelta] = None,
    ) -> dict:
        """Prune terminal jobs past their retention window."""
        return self.queue_manager.cleanup(
            self.settings.completed_retention if completed_retention is None else completed_retention,
            self.settings.failed_retention if failed_retention is None else failed_retention,
        )
