"""
Recovery Manager for Job Scheduler.

- Handles crash recovery on startup (jobs left ACTIVE by a dead process)
- Re-derives publish/reveal jobs from the item repository

The job store is not trusted as the only record of what should run: the
repository is the source of truth and every future item is planned again
on startup and by the daily reconcile job.

Recovery is idempotent: running it twice produces the same queue.
"""

import logging

from .planner import ItemPlanner
from .ports import ItemRepository
from .queue_manager import QueueManager


logger = logging.getLogger(__name__)


class RecoveryManager:
    """
    Handles crash recovery and the reconciliation sweep.

    Recovery scenarios:
    1. Crash during an ACTIVE job -> attempt counted as failed
    2. Delayed jobs lost or never created -> re-planned from the repository
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        planner: ItemPlanner,
        repository: ItemRepository,
    ):
        """
        Initialize RecoveryManager.

        Args:
            queue_manager: QueueManager for queue operations
            planner: ItemPlanner for (re)scheduling items
            repository: Source of future items
        """
        self.queue_manager = queue_manager
        self.planner = planner
        self.repository = repository

    def recover_on_startup(self) -> dict:
        """
        Perform full recovery on scheduler startup.

        1. Fail abandoned ACTIVE jobs through the retry policy
        2. Re-plan every future item

        Returns:
            Recovery statistics
        """
        stats = {
            "abandoned_jobs_recovered": 0,
            "items_scheduled": 0,
            "errors": [],
        }

        logger.info("Starting crash recovery...")

        # 1. Abandoned ACTIVE jobs
        try:
            recovered = self.queue_manager.recover_abandoned()
            stats["abandoned_jobs_recovered"] = len(recovered)
        except Exception as e:
            logger.error(f"Error recovering ACTIVE jobs: {e}")
            stats["errors"].append(f"Active jobs: {e}")

        # 2. Future items
        try:
            stats["items_scheduled"] = self.reconcile()
        except Exception as e:
            logger.error(f"Error re-planning future items: {e}")
            stats["errors"].append(f"Items: {e}")

        logger.info(
            f"Recovery complete: "
            f"{stats['abandoned_jobs_recovered']} abandoned jobs recovered, "
            f"{stats['items_scheduled']} items scheduled"
        )

        return stats

    def reconcile(self) -> int:
        """
        Plan every item whose publish date is still ahead.

        Returns:
            Number of items scheduled
        """
        items = self.repository.list_future_items(self.queue_manager.clock.now())

        logger.info(f"{len(items)} future items to schedule")

        for item in items:
            self.planner.schedule_item(item.item_id, item.publish_at, item.reveal_at)

        return len(items)
