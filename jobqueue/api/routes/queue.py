"""
Queue management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from jobqueue.api.auth import CurrentClient
from jobqueue.api.deps import Manager
from jobqueue.constants import API_V1_PREFIX, JobStatus
from jobqueue.db.models import Job
from jobqueue.types.api import (
    CleanJobsRequest,
    CleanJobsResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobListResponse,
    JobResponse,
    QueueStateResponse,
    QueueStatsResponse,
    RemoveJobResponse,
)
from jobqueue.types.job import EnqueueOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/queue", tags=["Queue"])


def _job_to_response(job: Job) -> JobResponse:
    """Convert a Job model to a JobResponse."""
    return JobResponse.model_validate(job, from_attributes=True)


@router.post(
    "/jobs",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Add a new job to the queue.",
)
async def enqueue_job(
    request: EnqueueJobRequest,
    current_client: CurrentClient,
    manager: Manager,
) -> EnqueueJobResponse:
    """
    Enqueue a new job.

    Args:
        request: Job type, payload and scheduling options.
        current_client: Authenticated caller.
        manager: Queue manager.

    Returns:
        EnqueueJobResponse with the new job's id and due time.
    """
    job_id = await manager.enqueue(
        request.type,
        request.payload,
        EnqueueOptions(
            priority=request.priority,
            max_attempts=request.max_attempts,
            delay_ms=request.delay_ms,
            queue=request.queue,
        ),
    )
    job = await manager.get_job(job_id)

    logger.info(
        "Job enqueued via API",
        extra={"job_id": str(job_id), "client_id": current_client.client_id},
    )

    return EnqueueJobResponse(
        id=job.id,
        type=job.type,
        queue=job.queue,
        status=job.status,
        available_at=job.available_at,
    )


@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs, newest first, with optional filtering.",
)
async def list_jobs(
    current_client: CurrentClient,
    manager: Manager,
    job_status: JobStatus | None = Query(default=None, alias="status"),
    queue: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> JobListResponse:
    """List jobs with pagination."""
    jobs, total = await manager.list_jobs(
        queue=queue,
        status=job_status,
        limit=page_size,
        offset=(page - 1) * page_size,
    )

    return JobListResponse(
        jobs=[_job_to_response(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=page * page_size < total,
    )


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: UUID,
    current_client: CurrentClient,
    manager: Manager,
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If job not found.
    """
    job = await manager.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return _job_to_response(job)


@router.delete(
    "/jobs/{job_id}",
    response_model=RemoveJobResponse,
    summary="Remove a job",
    description="Delete a job that has not been claimed yet.",
)
async def remove_job(
    job_id: UUID,
    current_client: CurrentClient,
    manager: Manager,
) -> RemoveJobResponse:
    """
    Remove a waiting job.

    Raises:
        HTTPException: 404 if the job does not exist, 409 if a worker
            already claimed or finished it.
    """
    if await manager.remove_job(job_id):
        logger.info(
            "Job removed via API",
            extra={"job_id": str(job_id), "client_id": current_client.client_id},
        )
        return RemoveJobResponse(id=job_id)

    job = await manager.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Job is {job.status}, only pending jobs can be removed",
    )


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Queue statistics",
    description="Job counts by status and dead letter queue size.",
)
async def get_stats(
    current_client: CurrentClient,
    manager: Manager,
    queue: str | None = Query(default=None),
) -> QueueStatsResponse:
    stats = await manager.get_stats(queue)
    return QueueStatsResponse(queue=queue or "all", stats=stats, total=stats.total)


@router.post(
    "/clean",
    response_model=CleanJobsResponse,
    summary="Purge finished jobs",
    description="Delete completed or failed jobs older than a cutoff.",
)
async def clean_jobs(
    request: CleanJobsRequest,
    current_client: CurrentClient,
    manager: Manager,
) -> CleanJobsResponse:
    job_status = JobStatus(request.status)
    deleted = await manager.clean_jobs(job_status, request.older_than_hours)

    logger.info(
        f"Purged {deleted} {job_status} jobs",
        extra={"client_id": current_client.client_id},
    )
    return CleanJobsResponse(deleted=deleted, status=job_status)


@router.post(
    "/pause",
    response_model=QueueStateResponse,
    summary="Pause a queue",
    description="Stop workers from claiming new jobs. Running jobs are not interrupted.",
)
async def pause_queue(
    current_client: CurrentClient,
    manager: Manager,
    queue: str | None = Query(default=None),
) -> QueueStateResponse:
    queue = queue or manager.settings.queue_name
    await manager.pause(queue)

    logger.info(f"Queue {queue} paused", extra={"client_id": current_client.client_id})
    return QueueStateResponse(queue=queue, paused=True)


@router.post(
    "/resume",
    response_model=QueueStateResponse,
    summary="Resume a queue",
    description="Let workers claim jobs from a paused queue again.",
)
async def resume_queue(
    current_client: CurrentClient,
    manager: Manager,
    queue: str | None = Query(default=None),
) -> QueueStateResponse:
    queue = queue or manager.settings.queue_name
    await manager.resume(queue)

    logger.info(f"Queue {queue} resumed", extra={"client_id": current_client.client_id})
    return QueueStateResponse(queue=queue, paused=False)
