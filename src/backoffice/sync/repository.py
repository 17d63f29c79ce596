"""Entity store access for the sync subsystem.

Provides EntityStore with the session_factory callable pattern. It covers
everything the queue processor, webhook ingestion and reconciliation need
from the relational store:

- entity lookups by id and by linked Notion page id
- sync overlay writes (these never bump ``updated_at``, so last-write-wins
  comparisons only see business edits)
- conditional last-write-wins field application for inbound Notion edits
- the sync event log (audit + Notion event idempotency)
- the processed Stripe event ledger
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.backoffice.core.clock import ensure_utc
from src.backoffice.models.entities import Client, Deliverable, Lead, Milestone, Project
from src.backoffice.models.sync import ProcessedEventModel, SyncEventLogModel
from src.backoffice.sync.schemas import EntitySyncStatus, EntityType

logger = structlog.get_logger(__name__)

ENTITY_MODELS: dict[EntityType, type] = {
    EntityType.LEAD: Lead,
    EntityType.PROJECT: Project,
    EntityType.MILESTONE: Milestone,
    EntityType.DELIVERABLE: Deliverable,
}

# Only these local fields may be written by inbound Notion events.
INBOUND_FIELD_WHITELIST: dict[EntityType, frozenset[str]] = {
    EntityType.LEAD: frozenset({"name", "status"}),
    EntityType.PROJECT: frozenset({"name", "status"}),
    EntityType.DELIVERABLE: frozenset({"name"}),
    EntityType.MILESTONE: frozenset(),
}

# Page-id lookup order for inbound events: collection pages first.
_PAGE_LOOKUP_ORDER = (
    EntityType.PROJECT,
    EntityType.LEAD,
    EntityType.DELIVERABLE,
    EntityType.MILESTONE,
)


class EntityStore:
    """Async access to syncable entities and sync bookkeeping tables.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Entities ────────────────────────────────────────────────────────────

    async def get(self, entity_type: EntityType, entity_id: str) -> Any | None:
        """Load an entity row by id, or None if it does not exist."""
        model = ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            return await session.get(model, entity_id)

    async def find_by_page_id(self, page_id: str) -> tuple[EntityType, Any] | None:
        """Locate the local entity linked to a Notion page id."""
        async for session in self._session_factory():
            for entity_type in _PAGE_LOOKUP_ORDER:
                model = ENTITY_MODELS[entity_type]
                result = await session.execute(
                    select(model).where(model.notion_page_id == page_id).limit(1)
                )
                entity = result.scalar_one_or_none()
                if entity is not None:
                    return entity_type, entity
            return None

    async def get_client(self, client_id: str | None) -> Client | None:
        if not client_id:
            return None
        async for session in self._session_factory():
            return await session.get(Client, client_id)

    async def list_milestones(self, project_id: str) -> list[Milestone]:
        async for session in self._session_factory():
            result = await session.execute(
                select(Milestone)
                .where(Milestone.project_id == project_id)
                .order_by(Milestone.sort_order, Milestone.created_at)
            )
            return list(result.scalars().all())

    async def list_linked(self, entity_type: EntityType) -> list[Any]:
        """All entities of a type that have a Notion page id."""
        model = ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            result = await session.execute(
                select(model).where(model.notion_page_id.is_not(None))
            )
            return list(result.scalars().all())

    async def count(self, entity_type: EntityType, *, linked: bool | None = None) -> int:
        """Count entities; ``linked`` filters on presence of a page id."""
        model = ENTITY_MODELS[entity_type]
        stmt = select(func.count()).select_from(model)
        if linked is True:
            stmt = stmt.where(model.notion_page_id.is_not(None))
        elif linked is False:
            stmt = stmt.where(model.notion_page_id.is_(None))
        async for session in self._session_factory():
            return (await session.execute(stmt)).scalar_one()

    async def ids_with_sync_status(
        self, entity_type: EntityType, statuses: list[EntitySyncStatus]
    ) -> list[str]:
        model = ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            result = await session.execute(
                select(model.id).where(model.sync_status.in_([s.value for s in statuses]))
            )
            return list(result.scalars().all())

    async def sync_status_counts(self, entity_type: EntityType) -> dict[str, int]:
        model = ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            result = await session.execute(
                select(model.sync_status, func.count()).group_by(model.sync_status)
            )
            return {status: count for status, count in result.all()}

    # ── Sync Overlay ────────────────────────────────────────────────────────

    async def mark_syncing(self, entity_type: EntityType, entity_id: str) -> None:
        model = ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            await session.execute(
                update(model)
                .where(model.id == entity_id)
                .values(sync_status=EntitySyncStatus.SYNCING.value, updated_at=model.updated_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def apply_remote_fields(
        self,
        entity_type: EntityType,
        entity_id: str,
        fields: dict[str, Any],
        remote_edited_at: datetime,
    ) -> bool:
        """Apply whitelisted remote fields iff the remote edit is strictly newer.

        The timestamp comparison is part of the UPDATE's WHERE clause, so a
        concurrent local write between read and write cannot be overwritten.
        ``updated_at`` is set to the remote edit time so replays of the same
        edit are no-ops.

        Returns:
            True if the row was updated, False if the local copy is newer/equal
            or nothing whitelisted was supplied.
        """
        allowed = INBOUND_FIELD_WHITELIST[entity_type]
        values = {k: v for k, v in fields.items() if k in allowed}
        if not values:
            return False

        remote_edited_at = ensure_utc(remote_edited_at)
        model = ENTITY_MODELS[entity_type]
        async for session in self._session_factory():
            result = await session.execute(
                update(model)
                .where(model.id == entity_id, model.updated_at < remote_edited_at)
                .values(**values, updated_at=remote_edited_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    # ── Event Log ───────────────────────────────────────────────────────────

    async def record_event(
        self,
        action: str,
        *,
        entity_type: EntityType | None = None,
        entity_id: str | None = None,
        remote_page_id: str | None = None,
        remote_edited_at: datetime | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append a sync event log row."""
        async for session in self._session_factory():
            session.add(
                SyncEventLogModel(
                    action=action,
                    entity_type=entity_type.value if entity_type else None,
                    entity_id=entity_id,
                    remote_page_id=remote_page_id,
                    remote_edited_at=ensure_utc(remote_edited_at),
                    correlation_id=correlation_id,
                    details=details,
                )
            )
            await session.commit()

    async def latest_event_for_page(self, remote_page_id: str) -> SyncEventLogModel | None:
        """Most recent log row recorded for a Notion page id."""
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncEventLogModel)
                .where(SyncEventLogModel.remote_page_id == remote_page_id)
                .order_by(SyncEventLogModel.created_at.desc(), SyncEventLogModel.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ── Processed Event Ledger ──────────────────────────────────────────────

    async def is_event_processed(self, event_id: str) -> bool:
        async for session in self._session_factory():
            return await session.get(ProcessedEventModel, event_id) is not None

    async def record_processed_event(
        self, event_id: str, event_type: str, payload: dict[str, Any] | None = None
    ) -> bool:
        """Append an event id to the ledger.

        Returns:
            False if another delivery recorded the same id first.
        """
        async for session in self._session_factory():
            session.add(
                ProcessedEventModel(id=event_id, event_type=event_type, payload=payload)
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("webhook.event_already_recorded", event_id=event_id)
                return False
            return True
