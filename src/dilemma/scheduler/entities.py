"""
Scheduler Domain Entities.

- Job: Single unit of deferred work (publish, reveal, daily reconcile)
- ScheduledItem: Read-only view of a dilemma owned by the item repository
- QueueStats / UpcomingJob: Inspection views returned to operators

Job ids are idempotency keys: "<job_type>-<key>", so submitting the same
type and item twice replaces the earlier definition instead of adding a
second job.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from .clock import ensure_utc
from .errors import InvalidOperationError


# Fixed-width so stored timestamps compare correctly as text
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

DEFAULT_MAX_ATTEMPTS = 3


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string."""
    return ensure_utc(value).strftime(ISO_FORMAT)


def from_iso(value: str) -> datetime:
    """Parse a string produced by to_iso()."""
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


class JobType(str, Enum):
    """Kinds of work the scheduler knows how to run."""

    PUBLISH = "publish"
    REVEAL = "reveal"
    DAILY_RECONCILE = "daily-reconcile"


class JobState(str, Enum):
    """
    Job lifecycle states.

    PENDING --(not_before elapses)--> READY --(claim)--> ACTIVE
    ACTIVE --(success)--> COMPLETED
    ACTIVE --(failure, attempts < max)--> PENDING
    ACTIVE --(failure, attempts == max)--> FAILED
    """

    PENDING = "PENDING"
    READY = "READY"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ItemPayload:
    """Payload of publish and reveal jobs."""

    item_id: str


@dataclass(frozen=True)
class ReconcilePayload:
    """The daily reconcile job carries no data."""


JobPayload = Union[ItemPayload, ReconcilePayload]

PAYLOAD_TYPES: dict[JobType, type] = {
    JobType.PUBLISH: ItemPayload,
    JobType.REVEAL: ItemPayload,
    JobType.DAILY_RECONCILE: ReconcilePayload,
}


def payload_to_dict(payload: JobPayload) -> dict:
    return asdict(payload)


def payload_from_dict(job_type: JobType, data: dict) -> JobPayload:
    return PAYLOAD_TYPES[job_type](**data)


def job_id_for(job_type: JobType, key: str) -> str:
    """Build the deterministic id for a job, e.g. "publish-42"."""
    return f"{job_type.value}-{key}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """
    Single unit of deferred work.

    Mutability rules:
    - job_id, job_type, payload: fixed once enqueued (replace by re-enqueueing)
    - state, attempts, not_before, last_attempt_at, finished_at, last_error:
      changed only by the job store's transitions
    - claim_token: set when a worker claims the job; completion reports
      carrying a stale token are ignored
    """

    job_id: str
    job_type: JobType
    payload: JobPayload
    state: JobState = JobState.PENDING
    not_before: datetime = field(default_factory=_utcnow)
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    created_at: datetime = field(default_factory=_utcnow)
    last_attempt_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    claim_token: Optional[str] = None
    worker_id: Optional[str] = None

    def __post_init__(self):
        expected = PAYLOAD_TYPES[self.job_type]
        if not isinstance(self.payload, expected):
            raise InvalidOperationError(
                f"Job {self.job_id} of type {self.job_type.value} requires "
                f"{expected.__name__}, got {type(self.payload).__name__}"
            )

    @classmethod
    def publish(cls, item_id: str, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> "Job":
        """Create the publish job for an item."""
        return cls(
            job_id=job_id_for(JobType.PUBLISH, item_id),
            job_type=JobType.PUBLISH,
            payload=ItemPayload(item_id=item_id),
            max_attempts=max_attempts,
        )

    @classmethod
    def reveal(cls, item_id: str, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> "Job":
        """Create the reveal job for an item."""
        return cls(
            job_id=job_id_for(JobType.REVEAL, item_id),
            job_type=JobType.REVEAL,
            payload=ItemPayload(item_id=item_id),
            max_attempts=max_attempts,
        )

    @classmethod
    def daily_reconcile(
        cls,
        date_stamp: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> "Job":
        """
        Create one occurrence of the daily reconcile job.

        Args:
            date_stamp: Local fire date (YYYYMMDD), part of the id so each
                day's occurrence is kept separately
        """
        return cls(
            job_id=job_id_for(JobType.DAILY_RECONCILE, date_stamp),
            job_type=JobType.DAILY_RECONCILE,
            payload=ReconcilePayload(),
            max_attempts=max_attempts,
        )

    @property
    def item_id(self) -> Optional[str]:
        """The referenced item, for item-bound jobs."""
        if isinstance(self.payload, ItemPayload):
            return self.payload.item_id
        return None


@dataclass(frozen=True)
class ScheduledItem:
    """
    A dilemma as seen by the scheduler.

    Owned by the item repository; reveal_at is computed by the owner
    (20:00 local time on the publish date), never by the scheduler.
    """

    item_id: str
    publish_at: datetime
    reveal_at: datetime


@dataclass(frozen=True)
class UpcomingJob:
    """A job that has not run yet, for operator listings."""

    job_id: str
    job_type: JobType
    item_id: Optional[str]
    scheduled_for: datetime

    @classmethod
    def from_job(cls, job: Job) -> "UpcomingJob":
        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            item_id=job.item_id,
            scheduled_for=job.not_before,
        )


@dataclass(frozen=True)
class QueueStats:
    """
    Job counts per state.

    pending: READY jobs waiting for a worker
    delayed: PENDING jobs whose not_before is still in the future
    """

    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.active + self.completed + self.failed + self.delayed

    def as_dict(self) -> dict:
        return {
            "pending": self.pending,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }
