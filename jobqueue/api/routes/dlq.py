"""
Dead letter queue routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from jobqueue.api.auth import CurrentClient
from jobqueue.api.deps import Manager
from jobqueue.constants import API_V1_PREFIX
from jobqueue.db.models import DeadLetterQueueEntry
from jobqueue.types.api import (
    CleanupResponse,
    DLQEntryResponse,
    DLQListResponse,
    DLQStatsResponse,
    ReprocessResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/dlq", tags=["Dead Letter Queue"])


def _entry_to_response(entry: DeadLetterQueueEntry) -> DLQEntryResponse:
    return DLQEntryResponse.model_validate(entry, from_attributes=True)


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Dead letter queue entry not found",
    )


@router.get(
    "",
    response_model=DLQListResponse,
    summary="List recent failures",
    description="Dead letter queue entries, most recent failure first.",
)
async def list_entries(
    current_client: CurrentClient,
    manager: Manager,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=100),
) -> DLQListResponse:
    entries, total = await manager.list_dlq_entries(
        limit=page_size,
        offset=(page - 1) * page_size,
    )

    return DLQListResponse(
        entries=[_entry_to_response(entry) for entry in entries],
        total=total,
        page=page,
        page_size=page_size,
        has_next=page * page_size < total,
    )


@router.get(
    "/stats",
    response_model=DLQStatsResponse,
    summary="Failure statistics",
    description="Entry counts grouped by failure reason, largest first.",
)
async def get_stats(
    current_client: CurrentClient,
    manager: Manager,
) -> DLQStatsResponse:
    reasons = await manager.get_dlq_stats_by_reason()
    unprocessed = await manager.count_dlq_entries(reprocessed=False)

    return DLQStatsResponse(
        reasons=reasons,
        total=sum(reason.count for reason in reasons),
        unprocessed=unprocessed,
    )


@router.get(
    "/reasons/{reason}",
    response_model=list[DLQEntryResponse],
    summary="Find failures by reason",
)
async def find_by_reason(
    reason: str,
    current_client: CurrentClient,
    manager: Manager,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[DLQEntryResponse]:
    entries = await manager.find_dlq_by_reason(reason, limit=limit)
    return [_entry_to_response(entry) for entry in entries]


@router.get(
    "/{entry_id}",
    response_model=DLQEntryResponse,
    summary="Get a dead letter queue entry",
)
async def get_entry(
    entry_id: UUID,
    current_client: CurrentClient,
    manager: Manager,
) -> DLQEntryResponse:
    entry = await manager.get_dlq_entry(entry_id)
    if entry is None:
        raise _not_found()
    return _entry_to_response(entry)


@router.post(
    "/{entry_id}/reprocess",
    response_model=ReprocessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reprocess a failed job",
    description="Re-enqueue the job held by an entry and flag the entry as reprocessed.",
)
async def reprocess_entry(
    entry_id: UUID,
    current_client: CurrentClient,
    manager: Manager,
) -> ReprocessResponse:
    """
    Reprocess a dead letter queue entry.

    Raises:
        HTTPException: 404 if the entry does not exist, 409 if it was
            already reprocessed.
    """
    entry = await manager.get_dlq_entry(entry_id)
    if entry is None:
        raise _not_found()

    job_id = None
    if not entry.reprocessed:
        job_id = await manager.reprocess(entry_id)

    if job_id is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Dead letter queue entry already reprocessed",
        )

    logger.info(
        "Reprocessed dead letter queue entry via API",
        extra={
            "dlq_entry_id": str(entry_id),
            "job_id": str(job_id),
            "client_id": current_client.client_id,
        },
    )
    return ReprocessResponse(dlq_entry_id=entry_id, job_id=job_id)


@router.post(
    "/{entry_id}/mark-reprocessed",
    response_model=DLQEntryResponse,
    summary="Mark an entry as handled",
    description="Flag an entry as reprocessed without re-enqueuing it.",
)
async def mark_reprocessed(
    entry_id: UUID,
    current_client: CurrentClient,
    manager: Manager,
) -> DLQEntryResponse:
    entry = await manager.mark_dlq_reprocessed(entry_id)
    if entry is None:
        raise _not_found()
    return _entry_to_response(entry)


@router.delete(
    "",
    response_model=CleanupResponse,
    summary="Purge old failures",
    description="Delete unreprocessed entries that failed more than N days ago.",
)
async def cleanup_entries(
    current_client: CurrentClient,
    manager: Manager,
    older_than_days: int = Query(default=30, ge=0),
) -> CleanupResponse:
    deleted = await manager.cleanup_dlq(older_than_days)
    return CleanupResponse(deleted=deleted, older_than_days=older_than_days)
