"""
Item Planner for Job Scheduler.

Turns dilemma dates into jobs:
- schedule_item: publish job at publish_at, reveal job at reveal_at
- unschedule_item: remove both
- reschedule_item: unschedule, then schedule with the new dates
- arm_daily_reconcile: next occurrence of the daily sweep

Targets already in the past are skipped, never run retroactively. The daily
reconcile sweep runs often enough that items are planned before they are
due; a past target here means a backfill or an upstream mistake.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .clock import Clock, SystemClock, ensure_utc, local_date_stamp, next_local_midnight
from .entities import DEFAULT_MAX_ATTEMPTS, Job, JobType, job_id_for
from .queue_manager import QueueManager


logger = logging.getLogger(__name__)


DEFAULT_TIMEZONE = "Europe/Paris"
RECONCILE_INTERVAL = timedelta(hours=24)


class ItemPlanner:
    """Computes delays from item dates and keeps the queue in step with them."""

    def __init__(
        self,
        queue_manager: QueueManager,
        clock: Optional[Clock] = None,
        timezone_name: str = DEFAULT_TIMEZONE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        """
        Initialize ItemPlanner.

        Args:
            queue_manager: QueueManager for enqueue/remove
            clock: Time source (defaults to the system clock)
            timezone_name: Local timezone for the daily reconcile fire time
            max_attempts: Attempt budget given to every job created here
        """
        self.queue_manager = queue_manager
        self.clock = clock or SystemClock()
        self.timezone_name = timezone_name
        self.max_attempts = max_attempts

    # =========================================================================
    # Item Scheduling
    # =========================================================================

    def _delay_until(self, target: datetime) -> float:
        return (ensure_utc(target) - self.clock.now()).total_seconds()

    def schedule_item(
        self,
        item_id: str,
        publish_at: datetime,
        reveal_at: datetime,
    ) -> list[Job]:
        """
        Enqueue the publish and reveal jobs of an item.

        Each job is created only if its target is still in the future.
        Re-scheduling the same item replaces the earlier jobs.

        Returns:
            The jobs that were enqueued (0, 1 or 2)
        """
        enqueued = []

        publish_delay = self._delay_until(publish_at)
        if publish_delay > 0:
            enqueued.append(
                self.queue_manager.enqueue(
                    Job.publish(item_id, max_attempts=self.max_attempts),
                    publish_delay,
                )
            )
            logger.info(f"Publication planned for item {item_id} at {publish_at.isoformat()}")
        else:
            logger.debug(f"Publish time of item {item_id} already passed, not planned")

        reveal_delay = self._delay_until(reveal_at)
        if reveal_delay > 0:
            enqueued.append(
                self.queue_manager.enqueue(
                    Job.reveal(item_id, max_attempts=self.max_attempts),
                    reveal_delay,
                )
            )
            logger.info(f"Reveal planned for item {item_id} at {reveal_at.isoformat()}")
        else:
            logger.debug(f"Reveal time of item {item_id} already passed, not planned")

        return enqueued

    def unschedule_item(self, item_id: str) -> int:
        """
        Remove the publish and reveal jobs of an item. Idempotent.

        Returns:
            Number of jobs removed
        """
        removed = 0

        for job_type in (JobType.PUBLISH, JobType.REVEAL):
            if self.queue_manager.remove(job_id_for(job_type, item_id)):
                removed += 1

        if removed:
            logger.info(f"Unscheduled item {item_id} ({removed} jobs removed)")

        return removed

    def reschedule_item(
        self,
        item_id: str,
        publish_at: datetime,
        reveal_at: datetime,
    ) -> list[Job]:
        """
        Move an item to new dates.

        Not atomic across the two steps; the removal happens first, so the
        worst case is a short window with no job rather than a stale one.
        """
        self.unschedule_item(item_id)
        return self.schedule_item(item_id, publish_at, reveal_at)

    # =========================================================================
    # Daily Reconcile
    # =========================================================================

    def arm_daily_reconcile(self, fire_at: Optional[datetime] = None) -> Job:
        """
        Enqueue the next daily reconcile occurrence.

        Args:
            fire_at: When it should run (default: next local midnight)

        Returns:
            The enqueued job
        """
        now = self.clock.now()
        if fire_at is None:
            fire_at = next_local_midnight(now, self.timezone_name)

        job = Job.daily_reconcile(
            local_date_stamp(fire_at, self.timezone_name),
            max_attempts=self.max_attempts,
        )
        job = self.queue_manager.enqueue(job, (ensure_utc(fire_at) - now).total_seconds())

        logger.info(f"Daily reconcile armed for {fire_at.isoformat()} ({job.job_id})")
        return job

    def arm_next_reconcile(self) -> Job:
        """
        Enqueue the occurrence after the current one (now + 24h).

        On a 25-hour day (DST end) now + 24h can fall on the same local
        date as the running occurrence; the next local midnight is used
        instead so the new job never shares the running job's id.
        """
        now = self.clock.now()
        fire_at = now + RECONCILE_INTERVAL

        if local_date_stamp(fire_at, self.timezone_name) == local_date_stamp(now, self.timezone_name):
            fire_at = next_local_midnight(now, self.timezone_name)

        return self.arm_daily_reconcile(fire_at)
