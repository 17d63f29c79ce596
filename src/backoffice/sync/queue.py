"""Durable sync job queue backed by the ``sync_jobs`` table.

Provides SyncJobQueue with the session_factory callable pattern:

- enqueue(): insert, or coalesce into the entity's outstanding job (at most
  one PENDING/PROCESSING row per entity, backed by a partial unique index)
- claim_next(): optimistic conditional UPDATE PENDING -> PROCESSING, safe
  across processor instances
- complete() / fail(): outcome transitions, including exponential backoff
  and terminal FAILED, written atomically with the entity's sync overlay
- operator actions: cancel, retry, retry_all_failed, list_failed, status,
  cleanup, recover_stale
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.backoffice.core.clock import ensure_utc, utcnow
from src.backoffice.core.exceptions import JobNotFoundError, JobStateError
from src.backoffice.models.sync import SyncJobModel
from src.backoffice.sync.repository import ENTITY_MODELS
from src.backoffice.sync.schemas import (
    DEFAULT_PRIORITIES,
    EntitySyncStatus,
    EntityType,
    JobStatus,
    QueueStatus,
    SyncJob,
    SyncOperation,
)

logger = structlog.get_logger(__name__)

_OUTSTANDING = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)

CANCELLED_MESSAGE = "Cancelled by operator"


def compute_backoff(retry_count: int, base: float, cap: float) -> float:
    """Backoff delay in seconds: ``min(cap, base * 2**retry_count)``.

    Non-decreasing in ``retry_count`` for any non-negative base and cap.
    """
    return min(cap, base * (2 ** max(retry_count, 0)))


def _merge_operation(existing: str, incoming: str) -> str:
    """Combine two intents for one entity. DELETE dominates, then CREATE."""
    ops = {existing, incoming}
    if SyncOperation.DELETE.value in ops:
        return SyncOperation.DELETE.value
    if SyncOperation.CREATE.value in ops:
        return SyncOperation.CREATE.value
    return SyncOperation.UPDATE.value


def _model_to_job(model: SyncJobModel) -> SyncJob:
    """Convert SyncJobModel to SyncJob schema."""
    return SyncJob(
        id=model.id,
        entity_type=EntityType(model.entity_type),
        entity_id=model.entity_id,
        operation=SyncOperation(model.operation),
        status=JobStatus(model.status),
        priority=model.priority,
        retry_count=model.retry_count,
        max_retries=model.max_retries,
        last_error=model.last_error,
        notion_page_id=model.notion_page_id,
        payload=model.payload,
        scheduled_for=ensure_utc(model.scheduled_for),
        rerun_requested=model.rerun_requested,
        claimed_at=ensure_utc(model.claimed_at),
        completed_at=ensure_utc(model.completed_at),
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


class SyncJobQueue:
    """Store-backed queue of Notion sync intents.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        max_retries: Attempts before a job becomes terminal FAILED.
        backoff_base: Base delay in seconds for exponential backoff.
        backoff_max: Upper bound on a single backoff delay.
        clock: Returns the current UTC time (injectable for tests).
    """

    ENQUEUE_ATTEMPTS: int = 3
    CLAIM_ATTEMPTS: int = 5

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        *,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock

    # ── Enqueue ─────────────────────────────────────────────────────────────

    async def enqueue(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        operation: SyncOperation | str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        notion_page_id: str | None = None,
    ) -> int:
        """Insert a job, or coalesce into the entity's outstanding job.

        A coalesced PROCESSING job is flagged ``rerun_requested`` so that it
        returns to PENDING on completion and the newer intent is not lost.

        Returns:
            The id of the (new or existing) outstanding job.
        """
        entity_type = EntityType(entity_type)
        operation = SyncOperation(operation)
        if priority is None:
            priority = DEFAULT_PRIORITIES.get(entity_type, 0)

        for _ in range(self.ENQUEUE_ATTEMPTS):
            async for session in self._session_factory():
                job_id = await self._try_enqueue(
                    session, entity_type, entity_id, operation, payload, priority, notion_page_id
                )
            if job_id is not None:
                return job_id

        raise RuntimeError(
            f"Could not enqueue {entity_type.value} {entity_id}: outstanding job kept changing"
        )

    async def _try_enqueue(
        self,
        session: AsyncSession,
        entity_type: EntityType,
        entity_id: str,
        operation: SyncOperation,
        payload: dict[str, Any] | None,
        priority: int,
        notion_page_id: str | None,
    ) -> int | None:
        result = await session.execute(
            select(SyncJobModel).where(
                SyncJobModel.entity_type == entity_type.value,
                SyncJobModel.entity_id == entity_id,
                SyncJobModel.status.in_(_OUTSTANDING),
            )
        )
        existing = result.scalar_one_or_none()

        if existing is not None:
            values: dict[str, Any] = {
                "operation": _merge_operation(existing.operation, operation.value),
                "priority": max(existing.priority, priority),
            }
            # A running attempt already holds its snapshot; the rerun reads this one
            if payload is not None:
                values["payload"] = payload
            if notion_page_id:
                values["notion_page_id"] = notion_page_id
            if existing.status == JobStatus.PROCESSING.value:
                values["rerun_requested"] = True

            # Conditional on the observed status so a concurrent claim or
            # completion forces a fresh look instead of a lost update.
            updated = await session.execute(
                update(SyncJobModel)
                .where(SyncJobModel.id == existing.id, SyncJobModel.status == existing.status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if updated.rowcount != 1:
                return None
            logger.info(
                "sync.job_coalesced",
                job_id=existing.id,
                entity_type=entity_type.value,
                entity_id=entity_id,
                operation=values["operation"],
                in_flight=existing.status == JobStatus.PROCESSING.value,
            )
            return existing.id

        model = SyncJobModel(
            entity_type=entity_type.value,
            entity_id=entity_id,
            operation=operation.value,
            status=JobStatus.PENDING.value,
            priority=priority,
            max_retries=self._max_retries,
            payload=payload,
            notion_page_id=notion_page_id,
        )
        session.add(model)
        try:
            await session.commit()
        except IntegrityError:
            # Another writer inserted the outstanding job first
            await session.rollback()
            return None

        logger.info(
            "sync.job_enqueued",
            job_id=model.id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            operation=operation.value,
            priority=priority,
        )
        return model.id

    # ── Claim ───────────────────────────────────────────────────────────────

    async def claim_next(self) -> SyncJob | None:
        """Atomically claim the next due job.

        Order: priority desc, then scheduled_for asc (unscheduled first),
        then insertion order. The claim is a conditional UPDATE on
        ``status = PENDING``; losing the race retries selection.

        Returns:
            The claimed job (status PROCESSING), or None if nothing is due.
        """
        for _ in range(self.CLAIM_ATTEMPTS):
            async for session in self._session_factory():
                now = self._clock()
                result = await session.execute(
                    select(SyncJobModel.id)
                    .where(
                        SyncJobModel.status == JobStatus.PENDING.value,
                        (SyncJobModel.scheduled_for.is_(None))
                        | (SyncJobModel.scheduled_for <= now),
                    )
                    .order_by(
                        SyncJobModel.priority.desc(),
                        SyncJobModel.scheduled_for.asc().nulls_first(),
                        SyncJobModel.id.asc(),
                    )
                    .limit(1)
                )
                candidate_id = result.scalar_one_or_none()
                if candidate_id is None:
                    return None

                claimed = await session.execute(
                    update(SyncJobModel)
                    .where(
                        SyncJobModel.id == candidate_id,
                        SyncJobModel.status == JobStatus.PENDING.value,
                    )
                    .values(status=JobStatus.PROCESSING.value, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                if claimed.rowcount == 1:
                    model = await session.get(SyncJobModel, candidate_id, populate_existing=True)
                    job = _model_to_job(model)
                    logger.debug(
                        "sync.job_claimed",
                        job_id=job.id,
                        entity_type=job.entity_type.value,
                        operation=job.operation.value,
                    )
                    return job

                logger.debug("sync.claim_lost", job_id=candidate_id)
        return None

    # ── Outcomes ────────────────────────────────────────────────────────────

    async def complete(self, job_id: int, notion_page_id: str | None = None) -> SyncJob:
        """Mark a job SYNCED and record success on the owning entity.

        If the job was coalesced while in flight it returns to PENDING (as an
        UPDATE) instead, so the newer intent is applied next.
        """
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, job_id)
            if model is None:
                raise JobNotFoundError(str(job_id))

            now = self._clock()
            if notion_page_id:
                model.notion_page_id = notion_page_id

            entity_values: dict[str, Any] = {
                "sync_status": EntitySyncStatus.SYNCED.value,
                "last_synced_at": now,
                "sync_error": None,
            }
            if model.operation == SyncOperation.DELETE.value:
                entity_values["notion_page_id"] = None
            elif notion_page_id:
                entity_values["notion_page_id"] = notion_page_id

            model.last_error = None
            model.claimed_at = None
            if model.rerun_requested:
                model.status = JobStatus.PENDING.value
                model.rerun_requested = False
                model.retry_count = 0
                model.scheduled_for = None
                if model.operation == SyncOperation.CREATE.value:
                    model.operation = SyncOperation.UPDATE.value
                entity_values["sync_status"] = EntitySyncStatus.PENDING.value
            else:
                model.status = JobStatus.SYNCED.value
                model.completed_at = now

            await self._write_entity(session, model, entity_values)
            await session.commit()

            logger.info(
                "sync.job_completed",
                job_id=job_id,
                entity_type=model.entity_type,
                entity_id=model.entity_id,
                operation=model.operation,
                requeued=model.status == JobStatus.PENDING.value,
            )
            return _model_to_job(model)

    async def fail(self, job_id: int, error: str) -> SyncJob:
        """Record a failed attempt.

        Increments retry_count. Below max_retries the job returns to PENDING
        with ``scheduled_for`` pushed out by exponential backoff; otherwise it
        becomes terminal FAILED and the error is copied onto the entity.
        """
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, job_id)
            if model is None:
                raise JobNotFoundError(str(job_id))

            now = self._clock()
            model.retry_count += 1
            model.last_error = error
            model.claimed_at = None
            model.rerun_requested = False

            if model.retry_count < model.max_retries:
                delay = compute_backoff(
                    model.retry_count - 1, self._backoff_base, self._backoff_max
                )
                model.status = JobStatus.PENDING.value
                model.scheduled_for = now + timedelta(seconds=delay)
                entity_status = EntitySyncStatus.PENDING.value
                logger.warning(
                    "sync.job_retry_scheduled",
                    job_id=job_id,
                    entity_type=model.entity_type,
                    entity_id=model.entity_id,
                    retry_count=model.retry_count,
                    delay_seconds=delay,
                    error=error,
                )
            else:
                model.status = JobStatus.FAILED.value
                model.completed_at = now
                entity_status = EntitySyncStatus.FAILED.value
                logger.error(
                    "sync.job_failed",
                    job_id=job_id,
                    entity_type=model.entity_type,
                    entity_id=model.entity_id,
                    retry_count=model.retry_count,
                    error=error,
                )

            await self._write_entity(
                session, model, {"sync_status": entity_status, "sync_error": error}
            )
            await session.commit()
            return _model_to_job(model)

    async def _write_entity(
        self, session: AsyncSession, job: SyncJobModel, values: dict[str, Any]
    ) -> None:
        """Update the owning entity's sync overlay without touching updated_at."""
        model = ENTITY_MODELS[EntityType(job.entity_type)]
        await session.execute(
            update(model)
            .where(model.id == job.entity_id)
            .values(**values, updated_at=model.updated_at)
            .execution_options(synchronize_session=False)
        )

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def get(self, job_id: int) -> SyncJob | None:
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, job_id)
            return _model_to_job(model) if model is not None else None

    async def outstanding_for(self, entity_type: EntityType, entity_id: str) -> SyncJob | None:
        """The entity's PENDING/PROCESSING job, if any."""
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncJobModel).where(
                    SyncJobModel.entity_type == EntityType(entity_type).value,
                    SyncJobModel.entity_id == entity_id,
                    SyncJobModel.status.in_(_OUTSTANDING),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_job(model) if model is not None else None

    async def list_failed(self, limit: int = 50) -> list[SyncJob]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncJobModel)
                .where(SyncJobModel.status == JobStatus.FAILED.value)
                .order_by(SyncJobModel.updated_at.desc(), SyncJobModel.id.desc())
                .limit(limit)
            )
            return [_model_to_job(m) for m in result.scalars().all()]

    async def status(self) -> QueueStatus:
        """Counts per status and per entity type, plus the oldest pending age."""
        async for session in self._session_factory():
            rows = await session.execute(
                select(SyncJobModel.entity_type, SyncJobModel.status, func.count()).group_by(
                    SyncJobModel.entity_type, SyncJobModel.status
                )
            )
            counts: dict[str, int] = {s.value: 0 for s in JobStatus}
            by_type: dict[str, dict[str, int]] = {}
            for entity_type, status, count in rows.all():
                counts[status] = counts.get(status, 0) + count
                by_type.setdefault(entity_type, {})[status] = count

            oldest = (
                await session.execute(
                    select(func.min(SyncJobModel.created_at)).where(
                        SyncJobModel.status == JobStatus.PENDING.value
                    )
                )
            ).scalar_one_or_none()

            age = None
            if oldest is not None:
                age = (self._clock() - ensure_utc(oldest)).total_seconds()
            return QueueStatus(counts=counts, by_entity_type=by_type, oldest_pending_age_seconds=age)

    # ── Operator Actions ────────────────────────────────────────────────────

    async def cancel(self, job_id: int) -> SyncJob:
        """Move a PENDING job to FAILED. In-flight jobs cannot be cancelled."""
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, job_id)
            if model is None:
                raise JobNotFoundError(str(job_id))
            if model.status != JobStatus.PENDING.value:
                raise JobStateError(f"Job {job_id} is {model.status}, only PENDING jobs can be cancelled")

            model.status = JobStatus.FAILED.value
            model.last_error = CANCELLED_MESSAGE
            model.completed_at = self._clock()
            await self._write_entity(
                session,
                model,
                {"sync_status": EntitySyncStatus.FAILED.value, "sync_error": CANCELLED_MESSAGE},
            )
            await session.commit()
            logger.info("sync.job_cancelled", job_id=job_id)
            return _model_to_job(model)

    async def retry(self, job_id: int) -> SyncJob:
        """Reset a FAILED job to PENDING with a fresh retry budget."""
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, job_id)
            if model is None:
                raise JobNotFoundError(str(job_id))
            if model.status != JobStatus.FAILED.value:
                raise JobStateError(f"Job {job_id} is {model.status}, only FAILED jobs can be retried")

            model.status = JobStatus.PENDING.value
            model.retry_count = 0
            model.scheduled_for = None
            model.completed_at = None
            model.last_error = None
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                raise JobStateError(
                    f"Job {job_id}: entity already has an outstanding job"
                ) from None

            await self._write_entity(
                session, model, {"sync_status": EntitySyncStatus.PENDING.value, "sync_error": None}
            )
            await session.commit()

            logger.info("sync.job_retried", job_id=job_id)
            return _model_to_job(model)

    async def retry_all_failed(self) -> int:
        """Retry the latest FAILED job of each entity that has no outstanding job.

        Operator-cancelled jobs stay cancelled, and a FAILED job that a later
        job for the same entity has superseded is left alone.

        Returns:
            Number of jobs moved back to PENDING.
        """
        async for session in self._session_factory():
            latest_per_entity = select(func.max(SyncJobModel.id)).group_by(
                SyncJobModel.entity_type, SyncJobModel.entity_id
            )
            result = await session.execute(
                select(SyncJobModel.id)
                .where(
                    SyncJobModel.status == JobStatus.FAILED.value,
                    SyncJobModel.id.in_(latest_per_entity),
                    or_(
                        SyncJobModel.last_error.is_(None),
                        SyncJobModel.last_error != CANCELLED_MESSAGE,
                    ),
                )
                .order_by(SyncJobModel.id.desc())
            )
            failed_ids = list(result.scalars().all())

        retried = 0
        for job_id in failed_ids:
            try:
                await self.retry(job_id)
                retried += 1
            except JobStateError:
                continue
        return retried

    async def cleanup(self, older_than_days: int = 7) -> int:
        """Delete SYNCED jobs completed before the retention window. FAILED jobs are kept."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        async for session in self._session_factory():
            result = await session.execute(
                delete(SyncJobModel).where(
                    SyncJobModel.status == JobStatus.SYNCED.value,
                    SyncJobModel.completed_at < cutoff,
                )
            )
            await session.commit()
            logger.info("sync.jobs_cleaned", deleted=result.rowcount, older_than_days=older_than_days)
            return result.rowcount

    async def recover_stale(self, older_than_seconds: int = 600) -> int:
        """Return PROCESSING jobs whose claim has gone stale to PENDING.

        Used at startup: a worker that crashed mid-job leaves its claim behind.
        """
        cutoff = self._clock() - timedelta(seconds=older_than_seconds)
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncJobModel)
                .where(
                    SyncJobModel.status == JobStatus.PROCESSING.value,
                    SyncJobModel.claimed_at < cutoff,
                )
                .values(status=JobStatus.PENDING.value, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount:
                logger.warning("sync.stale_jobs_recovered", count=result.rowcount)
            return result.rowcount
