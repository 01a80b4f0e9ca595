"""
Job handlers for the dilemma scheduler.

- PublishHandler: drops the cached today/tomorrow dilemmas so readers see
  the newly published one
- RevealHandler: drops an item's cached statistics and pre-computes the
  global vote split so the first read after reveal is fast
- DailyReconcileHandler: re-arms itself, re-plans future items, prunes
  old jobs

All handlers are idempotent; running one twice is harmless.
"""

import logging
from datetime import timedelta

from .entities import ItemPayload, ReconcilePayload
from .executor import JobHandler
from .planner import ItemPlanner
from .ports import STATS_TTL_SECONDS, Cache, CacheKeys, StatsCompute
from .queue_manager import (
    DEFAULT_COMPLETED_RETENTION,
    DEFAULT_FAILED_RETENTION,
    QueueManager,
)
from .recovery import RecoveryManager


logger = logging.getLogger(__name__)


class PublishHandler(JobHandler):
    """Publication of a dilemma."""

    def __init__(self, cache: Cache):
        self.cache = cache

    def execute(self, payload: ItemPayload) -> None:
        logger.info(f"Publishing dilemma {payload.item_id}")

        self.cache.invalidate(CacheKeys.ITEM_TODAY, CacheKeys.ITEM_TOMORROW)

        logger.info(f"Dilemma {payload.item_id} published")


class RevealHandler(JobHandler):
    """
    Reveal of a dilemma's results.

    Invalidation and recomputation run as one unit: if either fails the
    whole job is retried, which is safe since both steps are idempotent.
    """

    def __init__(
        self,
        cache: Cache,
        compute_stats: StatsCompute,
        stats_ttl_seconds: int = STATS_TTL_SECONDS,
    ):
        self.cache = cache
        self.compute_stats = compute_stats
        self.stats_ttl_seconds = stats_ttl_seconds

    def execute(self, payload: ItemPayload) -> None:
        item_id = payload.item_id
        logger.info(f"Revealing results of dilemma {item_id}")

        self.cache.invalidate_pattern(CacheKeys.stats_pattern(item_id))

        stats = self.compute_stats(item_id)
        self.cache.set(
            CacheKeys.stats_global(item_id),
            stats.as_dict(),
            self.stats_ttl_seconds,
        )

        logger.info(
            f"Results of dilemma {item_id} revealed "
            f"({stats.total_votes} votes pre-computed)"
        )


class DailyReconcileHandler(JobHandler):
    """
    Daily maintenance run.

    The next occurrence is armed first, so a sweep that keeps failing does
    not stop the daily chain.
    """

    def __init__(
        self,
        planner: ItemPlanner,
        recovery_manager: RecoveryManager,
        queue_manager: QueueManager,
        completed_retention: timedelta = DEFAULT_COMPLETED_RETENTION,
        failed_retention: timedelta = DEFAULT_FAILED_RETENTION,
    ):
        self.planner = planner
        self.recovery_manager = recovery_manager
        self.queue_manager = queue_manager
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention

    def execute(self, payload: ReconcilePayload) -> None:
        logger.info("Running daily reconcile")

        self.planner.arm_next_reconcile()
        scheduled = self.recovery_manager.reconcile()
        self.queue_manager.cleanup(self.completed_retention, self.failed_retention)

        logger.info(f"Daily reconcile done ({scheduled} items scheduled)")
