"""Queue processor -- drains sync jobs against the Notion workspace.

Claims due jobs from SyncJobQueue, dispatches each to its entity-type
handler, and feeds the typed AdapterResult back into complete()/fail().
Independent entities run concurrently up to a semaphore limit; jobs for the
same entity never overlap because the queue holds at most one outstanding
job per entity.

Failures never escape: unexpected exceptions inside a job are converted
into a failed attempt (retried with backoff like any domain failure), and
errors in the loop itself are logged and the loop keeps polling.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.backoffice.core.monitoring import track_sync_job
from src.backoffice.sync.adapter import WorkspaceAdapter
from src.backoffice.sync.handlers.base import EntitySyncHandler
from src.backoffice.sync.queue import SyncJobQueue
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import (
    AdapterResult,
    DrainSummary,
    EntityType,
    JobStatus,
    SyncJob,
    SyncOperation,
)

logger = structlog.get_logger(__name__)


class QueueProcessor:
    """Worker that drains the sync job queue.

    Args:
        queue: SyncJobQueue to claim jobs from.
        store: EntityStore for snapshots and sync overlay writes.
        adapter: WorkspaceAdapter performing remote calls.
        handlers: One EntitySyncHandler per EntityType.
        concurrency: Maximum jobs executing at once.
        poll_interval: Idle sleep between drains in run().
    """

    def __init__(
        self,
        queue: SyncJobQueue,
        store: EntityStore,
        adapter: WorkspaceAdapter,
        handlers: dict[EntityType, EntitySyncHandler],
        concurrency: int = 4,
        poll_interval: float = 2.0,
    ) -> None:
        self._queue = queue
        self._store = store
        self._adapter = adapter
        self._handlers = handlers
        self._concurrency = max(concurrency, 1)
        self._poll_interval = poll_interval
        self._running = False
        self._wakeup = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    # ── Loop ────────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Poll and drain until stop() is called."""
        self._running = True
        logger.info("sync.processor_started", concurrency=self._concurrency)

        while self._running:
            try:
                summary = await self.drain()
                if summary.processed:
                    logger.info("sync.drain_completed", **summary.model_dump())
            except Exception:
                logger.error("sync.drain_crashed", exc_info=True)

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

        logger.info("sync.processor_stopped")

    def notify(self) -> None:
        """Wake the run() loop early, e.g. right after an enqueue."""
        self._wakeup.set()

    def stop(self) -> None:
        """Signal the loop to stop after the current drain."""
        self._running = False
        self._wakeup.set()

    async def drain(self, max_jobs: int | None = None) -> DrainSummary:
        """Process due jobs until none are left (or ``max_jobs`` were claimed).

        Returns:
            DrainSummary with counts per outcome.
        """
        summary = DrainSummary()
        semaphore = asyncio.Semaphore(self._concurrency)
        tasks: set[asyncio.Task] = set()
        claimed = 0

        while max_jobs is None or claimed < max_jobs:
            await semaphore.acquire()
            try:
                job = await self._queue.claim_next()
            except Exception:
                semaphore.release()
                raise
            if job is None:
                semaphore.release()
                # In-flight jobs may reschedule themselves as immediately due
                if tasks:
                    await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                    continue
                break

            claimed += 1
            task = asyncio.create_task(self._run_one(job, semaphore, summary))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks)
        return summary

    async def _run_one(
        self, job: SyncJob, semaphore: asyncio.Semaphore, summary: DrainSummary
    ) -> None:
        try:
            outcome = await self.process_job(job)
            summary.processed += 1
            if outcome == JobStatus.SYNCED:
                summary.synced += 1
            elif outcome == JobStatus.FAILED:
                summary.failed += 1
            else:
                summary.retried += 1
        finally:
            semaphore.release()

    # ── Single Job ──────────────────────────────────────────────────────────

    async def process_job(self, job: SyncJob) -> JobStatus:
        """Execute one claimed job and record its outcome.

        Returns:
            The job's resulting status (SYNCED, PENDING for a scheduled
            retry or a requested re-run, FAILED once retries are exhausted).
        """
        log = logger.bind(
            job_id=job.id,
            entity_type=job.entity_type.value,
            entity_id=job.entity_id,
            operation=job.operation.value,
        )

        async with track_sync_job(job.entity_type.value, job.operation.value) as tracker:
            try:
                result = await self._execute(job)
            except Exception as exc:
                log.warning("sync.job_crashed", error=str(exc), exc_info=True)
                result = AdapterResult.failure(f"Unexpected error: {exc}")

            try:
                if result.success:
                    updated = await self._queue.complete(job.id, result.page_id)
                else:
                    updated = await self._queue.fail(job.id, result.error or "Unknown error")
            except Exception:
                # The claim stays PROCESSING; recover_stale() returns it later
                log.error("sync.job_outcome_not_recorded", exc_info=True)
                tracker["outcome"] = "error"
                return JobStatus.PROCESSING

            if result.success:
                tracker["outcome"] = "synced"
                if job.operation == SyncOperation.CREATE:
                    await self._queue_dependents(job)
            elif updated.status == JobStatus.FAILED:
                tracker["outcome"] = "failed"
            else:
                tracker["outcome"] = "retry"
            return updated.status

    async def _queue_dependents(self, job: SyncJob) -> None:
        """Queue CREATE jobs for child entities that live inside the new page.

        Coalesces with any job the child already has, so each child gets
        exactly one block.
        """
        handler = self._handlers.get(job.entity_type)
        if handler is None:
            return
        try:
            dependents = await handler.unlinked_dependents(self._store, job.entity_id)
            for entity_type, entity_id in dependents:
                await self._queue.enqueue(entity_type, entity_id, SyncOperation.CREATE)
        except Exception:
            # The children stay PENDING and are picked up by sync_all_pending()
            logger.error("sync.dependents_not_queued", job_id=job.id, exc_info=True)
            return
        if dependents:
            logger.info("sync.dependents_queued", job_id=job.id, count=len(dependents))

    async def _execute(self, job: SyncJob) -> AdapterResult:
        handler = self._handlers.get(job.entity_type)
        if handler is None:
            return AdapterResult.failure(f"No sync handler for {job.entity_type.value}")

        if job.operation == SyncOperation.DELETE:
            return await self._execute_delete(handler, job)

        snapshot = await handler.load_snapshot(self._store, job.entity_id)
        if snapshot is None:
            if not job.payload:
                return AdapterResult.failure(f"{job.entity_type.value} {job.entity_id} not found")
            snapshot = job.payload

        await self._store.mark_syncing(job.entity_type, job.entity_id)

        page_id = snapshot.get("notion_page_id") or job.notion_page_id
        if page_id:
            if job.operation == SyncOperation.CREATE:
                # A page already exists: never create a duplicate
                logger.info("sync.create_downgraded_to_update", job_id=job.id, page_id=page_id)
            result = await handler.update(self._adapter, page_id, snapshot)
            if result.success:
                result.page_id = page_id
            return result

        return await handler.create(self._adapter, snapshot)

    async def _execute_delete(self, handler: EntitySyncHandler, job: SyncJob) -> AdapterResult:
        page_id = job.notion_page_id or (job.payload or {}).get("notion_page_id")
        if not page_id:
            entity: Any = await self._store.get(job.entity_type, job.entity_id)
            page_id = entity.notion_page_id if entity is not None else None
        if not page_id:
            # Never reached Notion; nothing to archive
            return AdapterResult.ok(None)
        return await handler.archive(self._adapter, page_id)
