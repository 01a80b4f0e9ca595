"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .scheduler import (
    SchedulerStartRequest,
    SchedulerStartResponse,
    SchedulerStopRequest,
    SchedulerStopResponse,
    SchedulerStatusResponse,
    QueueStatsResponse,
    UpcomingJobResponse,
    UpcomingJobListResponse,
    JobResponse,
    JobListResponse,
    CleanupRequest,
    CleanupResponse,
    ReconcileResponse,
    ItemScheduleRequest,
    ItemScheduleResponse,
    ItemUnscheduleResponse,
)

__all__ = [
    "SchedulerStartRequest",
    "SchedulerStartResponse",
    "SchedulerStopRequest",
    "SchedulerStopResponse",
    "SchedulerStatusResponse",
    "QueueStatsResponse",
    "UpcomingJobResponse",
    "UpcomingJobListResponse",
    "JobResponse",
    "JobListResponse",
    "CleanupRequest",
    "CleanupResponse",
    "ReconcileResponse",
    "ItemScheduleRequest",
    "ItemScheduleResponse",
    "ItemUnscheduleResponse",
]
