"""
Scheduler API schemas.

Request/response models for the /scheduler/* admin endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from ...scheduler.clock import ensure_utc
from ...scheduler.entities import Job, UpcomingJob


# =============================================================================
# Control
# =============================================================================


class SchedulerStartRequest(BaseModel):
    """Request to start the scheduler workers."""

    run_recovery: bool = Field(
        default=True,
        description="Recover abandoned jobs and re-plan future items before starting"
    )


class SchedulerStartResponse(BaseModel):
    """Response from scheduler start."""

    success: bool
    message: str
    recovery_stats: Optional[dict] = Field(
        default=None,
        description="Recovery statistics if recovery was run"
    )


class SchedulerStopRequest(BaseModel):
    """Request to stop the scheduler workers."""

    timeout: Optional[float] = Field(
        default=None,
        ge=0,
        description="Seconds to wait for in-flight jobs (default: configured grace period)"
    )


class SchedulerStopResponse(BaseModel):
    """Response from scheduler stop."""

    success: bool
    message: str


# =============================================================================
# Status
# =============================================================================


class QueueStatsResponse(BaseModel):
    """Job counts per state."""

    pending: int = Field(..., description="Due jobs waiting for a worker")
    active: int = Field(..., description="Jobs being executed")
    completed: int
    failed: int
    delayed: int = Field(..., description="Jobs whose run time is still ahead")
    total: int


class SchedulerStatusResponse(BaseModel):
    """Scheduler status."""

    scheduler_running: bool
    worker_count: int
    current_job_ids: List[str] = Field(default_factory=list)
    queue: QueueStatsResponse


# =============================================================================
# Jobs
# =============================================================================


class UpcomingJobResponse(BaseModel):
    """A job that has not run yet."""

    job_id: str
    type: str
    item_id: Optional[str] = None
    scheduled_for: datetime

    @classmethod
    def from_upcoming(cls, upcoming: UpcomingJob) -> "UpcomingJobResponse":
        return cls(
            job_id=upcoming.job_id,
            type=upcoming.job_type.value,
            item_id=upcoming.item_id,
            scheduled_for=upcoming.scheduled_for,
        )


class UpcomingJobListResponse(BaseModel):
    jobs: List[UpcomingJobResponse] = Field(default_factory=list)
    total: int


class JobResponse(BaseModel):
    """Full view of a job."""

    job_id: str = Field(..., description="Deterministic job id, e.g. publish-<item_id>")
    type: str
    state: str = Field(..., description="PENDING/READY/ACTIVE/COMPLETED/FAILED")
    item_id: Optional[str] = None
    not_before: datetime
    attempts: int
    max_attempts: int
    created_at: datetime
    last_attempt_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            type=job.job_type.value,
            state=job.state.value,
            item_id=job.item_id,
            not_before=job.not_before,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            created_at=job.created_at,
            last_attempt_at=job.last_attempt_at,
            finished_at=job.finished_at,
            last_error=job.last_error,
        )


class JobListResponse(BaseModel):
    jobs: List[JobResponse] = Field(default_factory=list)
    total: int


# =============================================================================
# Maintenance
# =============================================================================


class CleanupRequest(BaseModel):
    """Request to prune terminal jobs."""

    completed_retention_days: Optional[int] = Field(default=None, ge=0)
    failed_retention_days: Optional[int] = Field(default=None, ge=0)


class CleanupResponse(BaseModel):
    completed_removed: int
    failed_removed: int


class ReconcileResponse(BaseModel):
    items_scheduled: int


# =============================================================================
# Items
# =============================================================================


class ItemScheduleRequest(BaseModel):
    """
    Schedule (or reschedule) an item.

    Naive datetimes are read as UTC. reveal_at defaults to 20:00 local
    time on the publish date.
    """

    publish_at: datetime
    reveal_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_order(self) -> "ItemScheduleRequest":
        if self.reveal_at is not None and ensure_utc(self.reveal_at) < ensure_utc(self.publish_at):
            raise ValueError("reveal_at must not be before publish_at")
        return self


class ItemScheduleResponse(BaseModel):
    item_id: str
    publish_at: datetime
    reveal_at: datetime
    jobs: List[UpcomingJobResponse] = Field(default_factory=list)


class ItemUnscheduleResponse(BaseModel):
    item_id: str
    removed: int
