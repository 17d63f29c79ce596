"""Sync service -- the entry point business code uses to request syncs.

Local mutations call the on_entity_* hooks, which only enqueue; the Notion
work itself happens in the QueueProcessor. Operator endpoints use the bulk
operations (sync_all_pending, retry_failed, stats).
"""

from __future__ import annotations

from typing import Any

import structlog

from src.backoffice.sync.processor import QueueProcessor
from src.backoffice.sync.queue import SyncJobQueue
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import EntitySyncStatus, EntityType, SyncOperation

logger = structlog.get_logger(__name__)


class SyncService:
    """Enqueue-side API of the sync engine.

    Args:
        queue: SyncJobQueue to enqueue into.
        store: EntityStore for page-id lookups and stats.
        processor: Optional running QueueProcessor to wake after enqueues.
    """

    def __init__(
        self,
        queue: SyncJobQueue,
        store: EntityStore,
        processor: QueueProcessor | None = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._processor = processor

    def _wake(self) -> None:
        if self._processor is not None and self._processor.running:
            self._processor.notify()

    # ── Local Mutation Hooks ────────────────────────────────────────────────

    async def on_entity_created(self, entity_type: EntityType, entity_id: str) -> int:
        job_id = await self._queue.enqueue(entity_type, entity_id, SyncOperation.CREATE)
        self._wake()
        return job_id

    async def on_entity_updated(self, entity_type: EntityType, entity_id: str) -> int | None:
        """Enqueue an UPDATE, or a CREATE if the entity has no Notion page yet.

        A milestone change also refreshes its project's page (progress).
        """
        entity = await self._store.get(entity_type, entity_id)
        if entity is None:
            logger.warning(
                "sync.update_for_missing_entity",
                entity_type=entity_type.value,
                entity_id=entity_id,
            )
            return None

        operation = SyncOperation.UPDATE if entity.notion_page_id else SyncOperation.CREATE
        job_id = await self._queue.enqueue(entity_type, entity_id, operation)

        if entity_type == EntityType.MILESTONE:
            await self.on_entity_updated(EntityType.PROJECT, entity.project_id)

        self._wake()
        return job_id

    async def on_entity_deleted(
        self,
        entity_type: EntityType,
        entity_id: str,
        notion_page_id: str | None,
        snapshot: dict[str, Any] | None = None,
    ) -> int | None:
        """Enqueue an archive of the entity's page. No page, nothing to do."""
        if not notion_page_id:
            logger.debug(
                "sync.delete_without_page",
                entity_type=entity_type.value,
                entity_id=entity_id,
            )
            return None

        payload = dict(snapshot or {})
        payload["notion_page_id"] = notion_page_id
        job_id = await self._queue.enqueue(
            entity_type,
            entity_id,
            SyncOperation.DELETE,
            payload=payload,
            notion_page_id=notion_page_id,
        )
        self._wake()
        return job_id

    # ── Bulk Operations ─────────────────────────────────────────────────────

    async def sync_all_pending(self) -> dict[str, int]:
        """Enqueue every entity whose sync_status is PENDING or FAILED.

        Returns:
            Number of entities enqueued per entity type.
        """
        enqueued: dict[str, int] = {}
        for entity_type in EntityType:
            ids = await self._store.ids_with_sync_status(
                entity_type, [EntitySyncStatus.PENDING, EntitySyncStatus.FAILED]
            )
            for entity_id in ids:
                await self.on_entity_updated(entity_type, entity_id)
            enqueued[entity_type.value] = len(ids)

        logger.info("sync.all_pending_enqueued", **enqueued)
        return enqueued

    async def retry_failed(self) -> int:
        retried = await self._queue.retry_all_failed()
        if retried:
            self._wake()
        logger.info("sync.failed_jobs_retried", count=retried)
        return retried

    async def stats(self) -> dict[str, Any]:
        """Entity sync_status counts per type plus queue status."""
        entities = {
            entity_type.value: await self._store.sync_status_counts(entity_type)
            for entity_type in EntityType
        }
        queue_status = await self._queue.status()
        return {"entities": entities, "queue": queue_status.model_dump()}
