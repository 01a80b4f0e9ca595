"""
Queue Manager for Job Scheduler.

The job store contract used by the rest of the scheduler:
- enqueue(job, delay): insert or replace by id, due at now + delay
- claim_due(limit): hand due jobs to a worker, never the same job twice
- complete(job_id) / fail(job_id, error): record the outcome of an attempt
- release(job_id, claim_token): give back a claim that never ran
- remove(job_id): cancel a job in any state
- counts(), list_upcoming(limit): inspection

What QueueManager MUST NOT do:
- Execute jobs (Executor's responsibility)
- Decide retry timing itself (RetryPolicy's responsibility)
- Know about items, caches or repositories
"""

import logging
from datetime import timedelta
from typing import Optional

from .clock import Clock, SystemClock
from .entities import (
    Job,
    JobState,
    QueueStats,
)
from .errors import InvalidOperationError
from .persistence import PersistenceAdapter
from .retry_policy import RetryPolicy


logger = logging.getLogger(__name__)


# Retention windows for terminal jobs
DEFAULT_COMPLETED_RETENTION = timedelta(days=7)
DEFAULT_FAILED_RETENTION = timedelta(days=30)

CRASH_RECOVERY_ERROR = "Scheduler crash recovery"


class QueueManager:
    """
    Manages the delayed job queue.

    Key behaviors:
    - Idempotent insertion: one live job per id, latest definition wins
    - Due ordering: not_before ASC
    - Failure: retry with backoff or terminal FAILED, per RetryPolicy
    - Cancellation: delete in any state; in-flight reports are then ignored
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize QueueManager.

        Args:
            persistence: PersistenceAdapter for storage operations
            clock: Time source (defaults to the system clock)
            retry_policy: Retry decisions for failed attempts
        """
        self.persistence = persistence
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy()

    # =========================================================================
    # Job Insertion
    # =========================================================================

    def enqueue(self, job: Job, delay_seconds: float) -> Job:
        """
        Add a job to the queue, replacing any job with the same id.

        Args:
            job: The job definition
            delay_seconds: Seconds from now until the job may run

        Returns:
            The stored job

        Raises:
            InvalidOperationError: If delay_seconds is not positive
        """
        if delay_seconds <= 0:
            raise InvalidOperationError(
                f"Delay must be positive for job {job.job_id}, got {delay_seconds}s"
            )

        now = self.clock.now()
        job.state = JobState.PENDING
        job.not_before = now + timedelta(seconds=delay_seconds)
        job.attempts = 0
        job.created_at = now
        job.last_attempt_at = None
        job.finished_at = None
        job.last_error = None
        job.claim_token = None
        job.worker_id = None

        replaced = self.persistence.upsert_job(job)

        logger.info(
            f"{'Replaced' if replaced else 'Enqueued'} job {job.job_id} "
            f"(type={job.job_type.value}, due={job.not_before.isoformat()})"
        )

        return job

    # =========================================================================
    # Claiming and Outcomes
    # =========================================================================

    def claim_due(self, limit: int = 1, worker_id: Optional[str] = None) -> list[Job]:
        """
        Claim up to `limit` due jobs for execution.

        Returns:
            Jobs now ACTIVE and owned by the caller
        """
        jobs = self.persistence.claim_due_jobs(self.clock.now(), limit, worker_id)

        for job in jobs:
            logger.info(
                f"Claimed job {job.job_id} "
                f"(attempt {job.attempts}/{job.max_attempts}, worker={worker_id})"
            )

        return jobs

    def complete(self, job_id: str, claim_token: Optional[str] = None) -> Optional[Job]:
        """
        Record a successful attempt: ACTIVE -> COMPLETED.

        Returns:
            The completed job, or None if it was removed or replaced meanwhile
        """
        job = self.persistence.mark_completed(job_id, self.clock.now(), claim_token)

        if job is None:
            logger.info(f"Job {job_id} no longer active, completion ignored")
            return None

        logger.info(f"Job {job_id} completed")
        return job

    def fail(
        self,
        job_id: str,
        error: str,
        claim_token: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Record a failed attempt.

        ACTIVE -> PENDING (re-armed with backoff) while attempts remain,
        ACTIVE -> FAILED once the job has used all its attempts.

        Returns:
            The updated job, or None if it was removed or replaced meanwhile
        """
        current = self.persistence.get_job(job_id)

        if current is None or current.state != JobState.ACTIVE:
            logger.info(f"Job {job_id} no longer active, failure ignored: {error}")
            return None

        now = self.clock.now()
        decision = self.retry_policy.decide(current.attempts, current.max_attempts)

        if decision.retry:
            job = self.persistence.rearm_job(
                job_id,
                now + timedelta(seconds=decision.delay_seconds),
                error,
                claim_token,
            )
            if job is not None:
                logger.warning(
                    f"Job {job_id} failed (attempt {job.attempts}/{job.max_attempts}), "
                    f"retrying in {decision.delay_seconds:g}s: {error}"
                )
        else:
            job = self.persistence.mark_failed(job_id, now, error, claim_token)
            if job is not None:
                logger.error(
                    f"Job {job_id} failed permanently after "
                    f"{job.attempts}/{job.max_attempts} attempts: {error}"
                )

        if job is None:
            logger.info(f"Job {job_id} claim superseded, failure ignored: {error}")

        return job

    def release(self, job_id: str, claim_token: str) -> Optional[Job]:
        """
        Hand back a claimed job that was never executed: ACTIVE -> READY.

        The job keeps its due time and does not lose an attempt.

        Returns:
            The released job, or None if it was removed or replaced meanwhile
        """
        job = self.persistence.release_job(job_id, claim_token)

        if job is None:
            logger.info(f"Job {job_id} no longer held, release ignored")
            return None

        logger.info(f"Released job {job_id} unstarted")
        return job

    # =========================================================================
    # Cancellation
    # =========================================================================

    def remove(self, job_id: str) -> bool:
        """
        Remove a job in any state. No-op if absent.

        An ACTIVE job keeps running; its outcome report is then ignored.

        Returns:
            True if a job was removed
        """
        removed = self.persistence.delete_job(job_id)

        if removed:
            logger.info(f"Removed job {job_id}")

        return removed

    # =========================================================================
    # Inspection
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        return self.persistence.get_job(job_id)

    def counts(self) -> QueueStats:
        """Get job counts per state."""
        by_state = self.persistence.count_jobs_by_state(self.clock.now())
        return QueueStats(
            pending=by_state[JobState.READY.value],
            active=by_state[JobState.ACTIVE.value],
            completed=by_state[JobState.COMPLETED.value],
            failed=by_state[JobState.FAILED.value],
            delayed=by_state[JobState.PENDING.value],
        )

    def list_upcoming(self, limit: int = 10) -> list[Job]:
        """List jobs that have not run yet, soonest first."""
        return self.persistence.list_upcoming_jobs(limit=limit)

    def list_failed(self, limit: int = 100) -> list[Job]:
        """List terminally failed jobs, most recent first."""
        return self.persistence.list_jobs_by_state(JobState.FAILED, limit=limit)

    def list_active(self, limit: int = 100) -> list[Job]:
        """List jobs currently claimed by a worker."""
        return self.persistence.list_jobs_by_state(JobState.ACTIVE, limit=limit)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup(
        self,
        completed_retention: timedelta = DEFAULT_COMPLETED_RETENTION,
        failed_retention: timedelta = DEFAULT_FAILED_RETENTION,
    ) -> dict:
        """
        Prune terminal jobs past their retention window.

        Returns:
            Number of completed and failed jobs deleted
        """
        now = self.clock.now()

        completed = self.persistence.delete_finished_before(
            JobState.COMPLETED, now - completed_retention
        )
        failed = self.persistence.delete_finished_before(
            JobState.FAILED, now - failed_retention
        )

        logger.info(f"Cleanup removed {completed} completed and {failed} failed jobs")

        return {"completed_removed": completed, "failed_removed": failed}

    def recover_abandoned(self) -> list[Job]:
        """
        Fail jobs left ACTIVE by a process that died mid-execution.

        Only safe at startup, before any worker of this process has claimed
        anything. Each job goes through the retry policy, so it runs again
        or ends FAILED.

        Returns:
            The recovered jobs in their new state
        """
        recovered = []

        for job in self.list_active(limit=10_000):
            logger.info(f"Recovering abandoned job {job.job_id}")
            updated = self.fail(job.job_id, CRASH_RECOVERY_ERROR)
            if updated is not None:
                recovered.append(updated)

        return recovered
