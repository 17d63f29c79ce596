"""Operator endpoints for the Notion sync engine.

All routes require the operator API key. Components come from app.state
via api.deps (503 when missing).

Endpoints:
- GET  /sync/status            queue + entity sync stats
- POST /sync/drain             run one drain pass
- POST /sync/enqueue/{type}/{id}
- POST /sync/sync-all          enqueue every PENDING/FAILED entity
- POST /sync/retry             retry all FAILED jobs
- POST /sync/jobs/{id}/retry
- POST /sync/jobs/{id}/cancel
- GET  /sync/failed
- POST /sync/cleanup
- GET  /sync/reconciliation
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from src.backoffice.api.deps import (
    get_queue_processor,
    get_reconciler,
    get_sync_queue,
    get_sync_service,
)
from src.backoffice.config import get_settings
from src.backoffice.core.exceptions import JobNotFoundError, JobStateError
from src.backoffice.core.security import require_operator
from src.backoffice.sync.processor import QueueProcessor
from src.backoffice.sync.queue import SyncJobQueue
from src.backoffice.sync.reconciliation import ReconciliationReporter
from src.backoffice.sync.schemas import (
    DrainSummary,
    EntityType,
    ReconciliationReport,
    SyncJob,
)
from src.backoffice.sync.service import SyncService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_operator)])


# ── Response Schemas ─────────────────────────────────────────────────────────


class EnqueueResponse(BaseModel):
    job_id: int
    entity_type: EntityType
    entity_id: str


class SyncAllResponse(BaseModel):
    queued: dict[str, int]


class RetryResponse(BaseModel):
    retried_count: int


class CleanupResponse(BaseModel):
    deleted: int
    older_than_days: int


class FailedJobsResponse(BaseModel):
    jobs: list[SyncJob]
    total: int


def _job_errors(exc: Exception) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {exc} not found")
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/status")
async def sync_status(service: SyncService = Depends(get_sync_service)) -> dict[str, Any]:
    return await service.stats()


@router.post("/drain", response_model=DrainSummary)
async def drain_queue(
    max_jobs: int | None = Query(default=None, ge=1, le=1000),
    processor: QueueProcessor = Depends(get_queue_processor),
) -> DrainSummary:
    """Process due jobs now instead of waiting for the background worker."""
    summary = await processor.drain(max_jobs=max_jobs)
    logger.info("sync.manual_drain", **summary.model_dump())
    return summary


@router.post("/enqueue/{entity_type}/{entity_id}", response_model=EnqueueResponse)
async def enqueue_entity(
    entity_type: EntityType,
    entity_id: str,
    service: SyncService = Depends(get_sync_service),
) -> EnqueueResponse:
    """Enqueue an UPDATE (or CREATE when the entity has no page yet)."""
    job_id = await service.on_entity_updated(entity_type, entity_id)
    if job_id is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{entity_type.value} {entity_id} not found",
        )
    return EnqueueResponse(job_id=job_id, entity_type=entity_type, entity_id=entity_id)


@router.post("/sync-all", response_model=SyncAllResponse)
async def sync_all(service: SyncService = Depends(get_sync_service)) -> SyncAllResponse:
    return SyncAllResponse(queued=await service.sync_all_pending())


@router.post("/retry", response_model=RetryResponse)
async def retry_all(service: SyncService = Depends(get_sync_service)) -> RetryResponse:
    return RetryResponse(retried_count=await service.retry_failed())


@router.post("/jobs/{job_id}/retry", response_model=SyncJob)
async def retry_job(job_id: int, queue: SyncJobQueue = Depends(get_sync_queue)) -> SyncJob:
    try:
        return await queue.retry(job_id)
    except (JobNotFoundError, JobStateError) as exc:
        raise _job_errors(exc) from exc


@router.post("/jobs/{job_id}/cancel", response_model=SyncJob)
async def cancel_job(job_id: int, queue: SyncJobQueue = Depends(get_sync_queue)) -> SyncJob:
    try:
        return await queue.cancel(job_id)
    except (JobNotFoundError, JobStateError) as exc:
        raise _job_errors(exc) from exc


@router.get("/failed", response_model=FailedJobsResponse)
async def failed_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    queue: SyncJobQueue = Depends(get_sync_queue),
) -> FailedJobsResponse:
    jobs = await queue.list_failed(limit=limit)
    return FailedJobsResponse(jobs=jobs, total=len(jobs))


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_jobs(
    older_than_days: int | None = Query(default=None, ge=0),
    queue: SyncJobQueue = Depends(get_sync_queue),
) -> CleanupResponse:
    days = older_than_days if older_than_days is not None else get_settings().SYNC_JOB_RETENTION_DAYS
    deleted = await queue.cleanup(days)
    return CleanupResponse(deleted=deleted, older_than_days=days)


@router.get("/reconciliation", response_model=ReconciliationReport)
async def reconciliation_report(
    reconciler: ReconciliationReporter = Depends(get_reconciler),
) -> ReconciliationReport:
    """Read-only diff of local entities against their Notion pages."""
    return await reconciler.generate()
