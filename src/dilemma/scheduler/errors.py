"""
Scheduler-specific exceptions.

Two families matter to callers:
- Contract violations (InvalidOperationError): rejected synchronously, never retried
- Store failures (StoreUnavailableError): the worker loop backs off and keeps running

Handler failures never surface as exceptions outside the worker loop; they
are converted to a fail() call on the job store.
"""


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""
    pass


class InvalidOperationError(SchedulerError):
    """
    Raised when a call violates the scheduler contract.

    Examples:
    - Enqueueing a job with a non-positive delay
    - Building a job whose payload does not match its type
    """
    pass


class JobNotFoundError(SchedulerError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ConcurrencyViolationError(SchedulerError):
    """
    Raised when a concurrent modification is detected.

    Used by the claim path when a READY job was taken by another worker
    between selection and update.
    """

    def __init__(self, job_id: str, expected_state: str, actual_state: str):
        self.job_id = job_id
        self.expected_state = expected_state
        self.actual_state = actual_state
        super().__init__(
            f"Concurrency violation for job {job_id}: "
            f"expected state '{expected_state}', got '{actual_state}'"
        )


class StoreUnavailableError(SchedulerError):
    """Raised when the backing job store cannot be reached or written."""
    pass


class HandlerTimeoutError(SchedulerError):
    """Raised when a job handler exceeds its execution time budget."""

    def __init__(self, job_id: str, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Handler for job {job_id} timed out after {timeout_seconds}s"
        )


class MissingHandlerError(SchedulerError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")
