"""Read-only reconciliation between the entity store and the Notion workspace.

Walks every linked entity of the reconciled types, fetches its Notion page
and compares title, status and edit timestamps. Nothing is written on
either side; the report is for operators.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.backoffice.core.clock import ensure_utc
from src.backoffice.core.exceptions import RemoteAccessError
from src.backoffice.sync.adapter import WorkspaceAdapter
from src.backoffice.sync.handlers.base import EntitySyncHandler
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import (
    Discrepancy,
    DiscrepancyIssue,
    EntityType,
    LocalSummary,
    NotionSummary,
    ReconciliationReport,
    ReconciliationStatus,
)

logger = structlog.get_logger(__name__)

_COMPARED_FIELDS = ("name", "status")


def classify_report(
    discrepancy_count: int,
    in_sync: int,
    unlinked: int,
    drift_threshold: float = 0.1,
) -> ReconciliationStatus:
    """Classify overall sync health from per-entity counts.

    healthy: nothing drifted and every local entity is linked.
    mostly_synced: drifted / (in_sync + drifted) stays under the threshold.
    """
    if discrepancy_count == 0 and unlinked == 0:
        return ReconciliationStatus.HEALTHY
    if in_sync > 0 and discrepancy_count / (in_sync + discrepancy_count) < drift_threshold:
        return ReconciliationStatus.MOSTLY_SYNCED
    return ReconciliationStatus.NEEDS_ATTENTION


class ReconciliationReporter:
    """Build ReconciliationReport snapshots.

    Args:
        store: Entity store.
        adapter: Notion workspace adapter.
        handlers: Sync handlers keyed by entity type; used for field mapping.
        tolerance_seconds: Remote edits newer than the local row by more than
            this are reported as timestamp drift.
        drift_threshold: Ratio below which drift counts as mostly_synced.
        entity_types: Entity types to reconcile. Each needs a configured
            collection on its handler.
    """

    def __init__(
        self,
        store: EntityStore,
        adapter: WorkspaceAdapter,
        handlers: dict[EntityType, EntitySyncHandler],
        *,
        tolerance_seconds: int = 60,
        drift_threshold: float = 0.1,
        entity_types: Iterable[EntityType] = (EntityType.PROJECT, EntityType.LEAD),
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._handlers = handlers
        self._tolerance_seconds = tolerance_seconds
        self._drift_threshold = drift_threshold
        self._entity_types = tuple(entity_types)

    def _collections(self) -> list[str]:
        ids = []
        for entity_type in self._entity_types:
            handler = self._handlers.get(entity_type)
            if handler is not None and handler.collection_id:
                ids.append(handler.collection_id)
        return ids

    async def generate(self) -> ReconciliationReport:
        local = LocalSummary()
        linked_entities: list[tuple[EntityType, Any]] = []
        for entity_type in self._entity_types:
            total = await self._store.count(entity_type)
            linked = await self._store.list_linked(entity_type)
            local.total += total
            local.linked += len(linked)
            local.unlinked += total - len(linked)
            linked_entities.extend((entity_type, entity) for entity in linked)

        notion = NotionSummary()
        try:
            collections = self._collections()
            if not collections:
                raise RemoteAccessError("No Notion collections configured for reconciliation")
            for collection_id in collections:
                pages = await self._adapter.query_collection(collection_id)
                notion.total += len(pages)
        except RemoteAccessError as exc:
            logger.error("sync.reconciliation.query_failed", error=str(exc))
            return ReconciliationReport(
                status=ReconciliationStatus.ERROR,
                notion=NotionSummary(total=-1),
                postgres=local,
                error=str(exc),
            )

        discrepancies: list[Discrepancy] = []
        for entity_type, entity in linked_entities:
            issues = await self._compare(entity_type, entity)
            if issues:
                discrepancies.append(
                    Discrepancy(
                        entity_type=entity_type,
                        entity_id=entity.id,
                        notion_page_id=entity.notion_page_id,
                        issues=issues,
                    )
                )
            else:
                notion.in_sync += 1

        status = classify_report(
            len(discrepancies), notion.in_sync, local.unlinked, self._drift_threshold
        )
        logger.info(
            "sync.reconciliation.completed",
            status=status.value,
            discrepancies=len(discrepancies),
            in_sync=notion.in_sync,
            unlinked=local.unlinked,
        )
        return ReconciliationReport(
            status=status,
            notion=notion,
            postgres=local,
            discrepancies=discrepancies,
            discrepancy_count=len(discrepancies),
        )

    async def _compare(self, entity_type: EntityType, entity: Any) -> list[DiscrepancyIssue]:
        handler = self._handlers[entity_type]
        try:
            page = await self._adapter.get_page(entity.notion_page_id)
        except RemoteAccessError as exc:
            return [DiscrepancyIssue(field="notion_access", error=str(exc))]

        issues: list[DiscrepancyIssue] = []
        remote = handler.map_remote_fields(page)
        local = handler.local_fields(entity)
        for field in _COMPARED_FIELDS:
            # Unmapped remote values (untitled pages, unknown statuses) are not drift.
            if field not in remote or field not in local:
                continue
            if remote[field] != local[field]:
                issues.append(
                    DiscrepancyIssue(
                        field=field, local_value=local[field], remote_value=remote[field]
                    )
                )

        # Our own pushes edit the page after the local write, so measure
        # drift from whichever happened last locally.
        local_ts = ensure_utc(entity.updated_at)
        synced_ts = ensure_utc(entity.last_synced_at)
        if synced_ts is not None and (local_ts is None or synced_ts > local_ts):
            local_ts = synced_ts
        remote_ts = ensure_utc(page.last_edited_time)
        if local_ts is not None and remote_ts is not None:
            diff = (remote_ts - local_ts).total_seconds()
            if diff > self._tolerance_seconds:
                issues.append(
                    DiscrepancyIssue(
                        field="timestamp",
                        local_value=local_ts.isoformat(),
                        remote_value=remote_ts.isoformat(),
                        time_diff_seconds=int(diff),
                    )
                )
        return issues
