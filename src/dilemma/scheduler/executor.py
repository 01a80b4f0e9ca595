"""
Executor for Job Scheduler.

- Looks up the handler registered for a job's type
- Runs it under a time budget
- Turns every outcome (success, exception, timeout) into an ExecutionResult

What Executor MUST NOT do:
- Touch the job store (the worker records the outcome)
- Decide retry policy (RetryPolicy's responsibility)
- Let a handler exception escape
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Optional

from .entities import Job, JobPayload, JobType
from .errors import HandlerTimeoutError, MissingHandlerError


logger = logging.getLogger(__name__)


DEFAULT_HANDLER_TIMEOUT_SECONDS = 30.0


class JobHandler(ABC):
    """
    Abstract base class for job type handlers.

    Each job type (publish, reveal, daily reconcile) implements this
    interface. Handlers must be idempotent: a job may run more than once.
    """

    @abstractmethod
    def execute(self, payload: JobPayload) -> None:
        """
        Perform the job's side effects.

        Raises:
            Exception: Any failure; the attempt is then retried or failed
        """
        ...


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one handler invocation."""

    succeeded: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "ExecutionResult":
        return cls(succeeded=True)

    @classmethod
    def failure(cls, error: str) -> "ExecutionResult":
        return cls(succeeded=False, error=error)


class Executor:
    """
    Runs jobs through their registered handlers.

    With a timeout, each invocation runs on its own daemon thread so the
    calling worker can stop waiting. A handler that overruns keeps its
    thread until it returns, but holds nothing later jobs need; the attempt
    is already recorded as failed.
    """

    def __init__(
        self,
        handlers: Optional[dict[JobType, JobHandler]] = None,
        timeout_seconds: Optional[float] = DEFAULT_HANDLER_TIMEOUT_SECONDS,
    ):
        """
        Initialize Executor.

        Args:
            handlers: Handler per job type (more can be added with register())
            timeout_seconds: Time budget per invocation (None = unbounded, inline)
        """
        self._handlers: dict[JobType, JobHandler] = dict(handlers or {})
        self.timeout_seconds = timeout_seconds
        self._overrunning: set[threading.Thread] = set()
        self._lock = threading.Lock()

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        """Register (or replace) the handler for a job type."""
        self._handlers[job_type] = handler

    def handler_for(self, job_type: JobType) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise MissingHandlerError(job_type.value)
        return handler

    def validate(self) -> None:
        """
        Check that every job type has a handler.

        Raises:
            MissingHandlerError: For the first job type without one
        """
        for job_type in JobType:
            self.handler_for(job_type)

    @property
    def overrunning_count(self) -> int:
        """Timed-out handler invocations that have not returned yet."""
        with self._lock:
            self._overrunning = {t for t in self._overrunning if t.is_alive()}
            return len(self._overrunning)

    def execute(self, job: Job) -> ExecutionResult:
        """
        Execute a job and report the outcome. Never raises.

        Args:
            job: An ACTIVE job claimed by the caller
        """
        try:
            handler = self.handler_for(job.job_type)
        except MissingHandlerError as e:
            logger.error(str(e))
            return ExecutionResult.failure(str(e))

        try:
            if self.timeout_seconds is None:
                handler.execute(job.payload)
            else:
                self._run_timed(handler, job)

        except HandlerTimeoutError as e:
            logger.error(f"{e} ({self.overrunning_count} handlers still overrunning)")
            return ExecutionResult.failure(str(e))

        except Exception as e:
            logger.exception(f"Handler error for job {job.job_id}")
            return ExecutionResult.failure(f"{type(e).__name__}: {e}")

        logger.debug(f"Handler for job {job.job_id} succeeded")
        return ExecutionResult.success()

    def _run_timed(self, handler: JobHandler, job: Job) -> None:
        future: Future = Future()

        def invoke() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                handler.execute(job.payload)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(None)

        thread = threading.Thread(target=invoke, name=f"job-handler-{job.job_id}", daemon=True)
        thread.start()

        try:
            future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            with self._lock:
                self._overrunning.add(thread)
            raise HandlerTimeoutError(job.job_id, self.timeout_seconds)
