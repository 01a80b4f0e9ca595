"""
Scheduler router for the admin control plane.

Endpoints under /scheduler/* to start and stop the workers, inspect the
queue, run maintenance, and (re)schedule items by hand.
"""

import logging
from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query

from ..schemas.scheduler import (
    CleanupRequest,
    CleanupResponse,
    ItemScheduleRequest,
    ItemScheduleResponse,
    ItemUnscheduleResponse,
    JobListResponse,
    JobResponse,
    QueueStatsResponse,
    ReconcileResponse,
    SchedulerStartRequest,
    SchedulerStartResponse,
    SchedulerStatusResponse,
    SchedulerStopRequest,
    SchedulerStopResponse,
    UpcomingJobListResponse,
    UpcomingJobResponse,
)
from .._scheduler_state import get_scheduler_service
from ...infra.repository import reveal_time_for
from ...scheduler.clock import ensure_utc
from ...scheduler.entities import UpcomingJob
from ...scheduler.errors import InvalidOperationError, JobNotFoundError


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Control
# =============================================================================


@router.post("/start", response_model=SchedulerStartResponse)
def start_scheduler(request: SchedulerStartRequest = SchedulerStartRequest()):
    """
    Start the scheduler workers.

    Idempotent: If scheduler is already running, returns success with message.
    """
    service = get_scheduler_service()

    if service.is_running:
        return SchedulerStartResponse(
            success=True,
            message="Scheduler is already running",
            recovery_stats=None,
        )

    try:
        recovery_stats = service.start(run_recovery=request.run_recovery)

        return SchedulerStartResponse(
            success=True,
            message="Scheduler started successfully",
            recovery_stats=recovery_stats if recovery_stats else None,
        )

    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to start scheduler: {str(e)}"
        )


@router.post("/stop", response_model=SchedulerStopResponse)
def stop_scheduler(request: SchedulerStopRequest = SchedulerStopRequest()):
    """
    Stop the scheduler workers gracefully.

    Waits for in-flight jobs up to the grace period (no preemption).
    Idempotent: If scheduler is already stopped, returns success.
    """
    service = get_scheduler_service()

    if not service.is_running:
        return SchedulerStopResponse(
            success=True,
            message="Scheduler is already stopped",
        )

    try:
        service.shutdown(timeout=request.timeout)

        return SchedulerStopResponse(
            success=True,
            message="Scheduler stopped successfully",
        )

    except Exception as e:
        logger.error(f"Failed to stop scheduler: {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to stop scheduler: {str(e)}"
        )


@router.get("/status", response_model=SchedulerStatusResponse)
def get_scheduler_status():
    """
    Get scheduler status.

    Returns:
    - scheduler_running: Whether the workers are active
    - worker_count: Size of the worker pool
    - current_job_ids: Jobs being executed right now
    - queue: pending/active/completed/failed/delayed/total counts
    """
    service = get_scheduler_service()

    try:
        status = service.get_scheduler_status()

        return SchedulerStatusResponse(
            scheduler_running=status["scheduler_running"],
            worker_count=status["worker_count"],
            current_job_ids=status["current_job_ids"],
            queue=QueueStatsResponse(**status["queue"]),
        )

    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to get scheduler status: {str(e)}"
        )


# =============================================================================
# Jobs
# =============================================================================


@router.get("/jobs/upcoming", response_model=UpcomingJobListResponse)
def list_upcoming_jobs(limit: int = Query(default=10, ge=1, le=500)):
    """Jobs that have not run yet, soonest first."""
    service = get_scheduler_service()

    jobs = [UpcomingJobResponse.from_upcoming(j) for j in service.list_upcoming_jobs(limit)]
    return UpcomingJobListResponse(jobs=jobs, total=len(jobs))


@router.get("/jobs/failed", response_model=JobListResponse)
def list_failed_jobs(limit: int = Query(default=100, ge=1, le=1000)):
    """Terminally failed jobs, most recent first."""
    service = get_scheduler_service()

    jobs = [JobResponse.from_job(j) for j in service.list_failed_jobs(limit)]
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str):
    """Get a job by ID."""
    service = get_scheduler_service()

    try:
        return JobResponse.from_job(service.get_job(job_id))
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")


# =============================================================================
# Maintenance
# =============================================================================


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_jobs(request: CleanupRequest = CleanupRequest()):
    """Delete completed and failed jobs past their retention window."""
    service = get_scheduler_service()

    completed_retention = None
    if request.completed_retention_days is not None:
        completed_retention = timedelta(days=request.completed_retention_days)

    failed_retention = None
    if request.failed_retention_days is not None:
        failed_retention = timedelta(days=request.failed_retention_days)

    result = service.cleanup(completed_retention, failed_retention)
    return CleanupResponse(**result)


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile():
    """Re-plan every future item from the repository now."""
    service = get_scheduler_service()

    try:
        return ReconcileResponse(items_scheduled=service.reconcile())
    except Exception as e:
        logger.error(f"Reconcile failed: {e}")
        raise HTTPException(status_code=500, detail=f"Reconcile failed: {str(e)}")


# =============================================================================
# Items
# =============================================================================


@router.put("/items/{item_id}", response_model=ItemScheduleResponse)
def schedule_item(item_id: str, request: ItemScheduleRequest):
    """
    Schedule or reschedule an item.

    Existing jobs of the item are replaced. Targets already in the past
    are not scheduled.
    """
    service = get_scheduler_service()

    publish_at = ensure_utc(request.publish_at)
    if request.reveal_at is not None:
        reveal_at = ensure_utc(request.reveal_at)
    else:
        reveal_at = reveal_time_for(publish_at, service.settings.timezone)

    try:
        jobs = service.reschedule_item(item_id, publish_at, reveal_at)
    except InvalidOperationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return ItemScheduleResponse(
        item_id=item_id,
        publish_at=publish_at,
        reveal_at=reveal_at,
        jobs=[UpcomingJobResponse.from_upcoming(UpcomingJob.from_job(j)) for j in jobs],
    )


@router.delete("/items/{item_id}", response_model=ItemUnscheduleResponse)
def unschedule_item(item_id: str):
    """Remove the publish and reveal jobs of an item. Idempotent."""
    service = get_scheduler_service()

    removed = service.unschedule_item(item_id)
    return ItemUnscheduleResponse(item_id=item_id, removed=removed)
