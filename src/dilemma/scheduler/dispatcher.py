"""
Dispatcher for Job Scheduler.

- Runs a pool of worker threads sharing one job store
- Each worker claims due jobs, hands them to the Executor and records the
  outcome: complete() or fail(), exactly once per claimed job
- Backs off when the job store is unavailable instead of crashing

What Dispatcher MUST NOT do:
- Run handler code itself (Executor's responsibility)
- Decide retry timing (RetryPolicy's responsibility)
- Hold the store lock while a handler runs
"""

import logging
import threading
import time
import uuid
from enum import Enum
from typing import Optional, Protocol

from .entities import Job
from .errors import StoreUnavailableError
from .executor import ExecutionResult
from .queue_manager import QueueManager


logger = logging.getLogger(__name__)


DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_BATCH_SIZE = 5
MAX_STORE_BACKOFF_SECONDS = 30.0


class DispatcherState(str, Enum):
    """Dispatcher lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class ExecutorProtocol(Protocol):
    """Protocol for job executor."""

    def execute(self, job: Job) -> ExecutionResult:
        """Run a claimed job and report the outcome without raising."""
        ...


class Worker:
    """
    One polling executor.

    Loop:
    1. claim_due(batch_size)
    2. For each claimed job: execute, then complete() or fail()
    3. Stop requested mid-batch -> release the jobs not yet started
    4. Nothing claimed -> sleep poll_interval
    """

    def __init__(
        self,
        worker_id: str,
        queue_manager: QueueManager,
        executor: ExecutorProtocol,
        stop_event: threading.Event,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.worker_id = worker_id
        self.queue_manager = queue_manager
        self.executor = executor
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._stop_event = stop_event
        self._current_job: Optional[Job] = None

    @property
    def current_job(self) -> Optional[Job]:
        """Get the job this worker is executing, if any."""
        return self._current_job

    def run_once(self) -> int:
        """
        Claim and process one batch of due jobs.

        Stops between jobs once the stop event is set; claimed jobs that
        were not started are released back to the queue.

        Returns:
            Number of jobs processed

        Raises:
            StoreUnavailableError: If the job store cannot be reached
        """
        jobs = self.queue_manager.claim_due(self.batch_size, worker_id=self.worker_id)
        unstarted = list(jobs)

        try:
            while unstarted and not self._stop_event.is_set():
                self._process(unstarted.pop(0))
        finally:
            self._release(unstarted)

        return len(jobs) - len(unstarted)

    def _process(self, job: Job) -> None:
        self._current_job = job

        try:
            result = self.executor.execute(job)
        finally:
            self._current_job = None

        self._report(job, result)

    def _report(self, job: Job, result: ExecutionResult) -> None:
        """
        Record the outcome of an executed job.

        Store outages are retried with backoff until the report lands. Once
        the worker is stopping, the last failure is raised and the job stays
        ACTIVE for startup recovery.
        """
        backoff = self.poll_interval

        while True:
            try:
                if result.succeeded:
                    self.queue_manager.complete(job.job_id, claim_token=job.claim_token)
                else:
                    self.queue_manager.fail(
                        job.job_id,
                        result.error or "Unknown error",
                        claim_token=job.claim_token,
                    )
                return

            except StoreUnavailableError as e:
                if self._stop_event.is_set():
                    raise
                logger.error(
                    f"Worker {self.worker_id}: cannot record outcome of job {job.job_id}, "
                    f"retrying in {backoff:g}s: {e}"
                )
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, MAX_STORE_BACKOFF_SECONDS)

    def _release(self, jobs: list[Job]) -> None:
        for job in jobs:
            try:
                self.queue_manager.release(job.job_id, job.claim_token)
            except StoreUnavailableError as e:
                # Left ACTIVE; startup recovery re-arms it
                logger.error(f"Worker {self.worker_id}: cannot release job {job.job_id}: {e}")

    def run(self) -> None:
        """Main worker loop; returns once the stop event is set."""
        logger.info(f"Worker {self.worker_id} started")
        store_backoff = self.poll_interval

        while not self._stop_event.is_set():
            try:
                processed = self.run_once()
                store_backoff = self.poll_interval

                if processed == 0:
                    # No job claimed, wait before polling again
                    self._stop_event.wait(self.poll_interval)
                # If jobs were processed, immediately check for more

            except StoreUnavailableError as e:
                logger.error(
                    f"Worker {self.worker_id}: job store unavailable, "
                    f"retrying in {store_backoff:g}s: {e}"
                )
                self._stop_event.wait(store_backoff)
                store_backoff = min(store_backoff * 2, MAX_STORE_BACKOFF_SECONDS)

            except Exception as e:
                logger.error(f"Error in worker {self.worker_id} loop: {e}", exc_info=True)
                self._stop_event.wait(self.poll_interval)

        logger.info(f"Worker {self.worker_id} stopped")


class Dispatcher:
    """
    Owns the worker pool.

    Jobs for different items are independent, so workers share nothing but
    the job store; the store's atomic claim keeps them from running the
    same attempt twice.
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        executor: ExecutorProtocol,
        worker_count: int = 2,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """
        Initialize Dispatcher.

        Args:
            queue_manager: QueueManager for claims and outcomes
            executor: Executor running the handlers
            worker_count: Number of worker threads
            batch_size: Jobs claimed per poll by each worker
            poll_interval: Seconds between polls when idle
        """
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")

        self.queue_manager = queue_manager
        self.executor = executor
        self.poll_interval = poll_interval

        self._state = DispatcherState.STOPPED
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

        prefix = uuid.uuid4().hex[:8]
        self.workers = [
            Worker(
                worker_id=f"worker-{prefix}-{index}",
                queue_manager=queue_manager,
                executor=executor,
                stop_event=self._stop_event,
                batch_size=batch_size,
                poll_interval=poll_interval,
            )
            for index in range(worker_count)
        ]

    @property
    def state(self) -> DispatcherState:
        """Get current dispatcher state."""
        return self._state

    @property
    def current_jobs(self) -> list[Job]:
        """Jobs being executed right now."""
        return [w.current_job for w in self.workers if w.current_job is not None]

    def run_once(self) -> int:
        """
        Run one polling pass on the first worker, in the calling thread.

        Returns:
            Number of jobs processed
        """
        return self.workers[0].run_once()

    def is_draining(self) -> bool:
        """Check if workers of a previous run are still finishing a job."""
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """
        Start all worker threads.

        Raises:
            RuntimeError: If already running, or if workers from the last
                run outlived their stop grace period
        """
        if self._state != DispatcherState.STOPPED:
            raise RuntimeError(f"Cannot start dispatcher in {self._state.value} state")

        if self.is_draining():
            raise RuntimeError("Workers from the previous run are still finishing")

        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=worker.run, name=worker.worker_id, daemon=True)
            for worker in self.workers
        ]
        self._state = DispatcherState.RUNNING

        for thread in self._threads:
            thread.start()

        logger.info(f"Dispatcher started with {len(self._threads)} workers")

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop claiming new jobs and wait for in-flight ones.

        Workers finish the job they are running and release the rest of
        their batch. Threads still alive after the grace period are kept
        track of, and start() refuses to run until they are gone.

        Args:
            timeout: Grace period shared by all workers, in seconds
        """
        if self._state == DispatcherState.STOPPED:
            return

        logger.info("Stopping dispatcher...")
        self._state = DispatcherState.STOPPING
        self._stop_event.set()

        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning(f"Worker {thread.name} did not stop within timeout")

        self._threads = [thread for thread in self._threads if thread.is_alive()]
        self._state = DispatcherState.STOPPED
        logger.info("Dispatcher stopped")

    def is_running(self) -> bool:
        """Check if dispatcher is running."""
        return self._state == DispatcherState.RUNNING

    def is_busy(self) -> bool:
        """Check if any worker is executing a job."""
        return bool(self.current_jobs)
