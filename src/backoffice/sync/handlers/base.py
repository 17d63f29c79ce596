"""Entity sync handler interface.

One implementation per EntityType. The queue processor, the Notion webhook
service and the reconciliation reporter depend only on this interface:

- load_snapshot(): read the entity (and related rows) into a JSON-safe dict
- build_create_payload() / build_update_payload(): snapshot -> Notion payloads
- map_remote_fields(): Notion page -> whitelisted local fields
- local_fields(): entity -> the same fields, for comparison
- create() / update() / archive(): perform the remote operation
- unlinked_dependents(): child entities to queue once the page exists
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from src.backoffice.sync.adapter import WorkspaceAdapter
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import AdapterResult, EntityType, PagePayload, PageSnapshot


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class EntitySyncHandler(ABC):
    """Translate one entity type to and from Notion pages.

    Args:
        collection_id: Notion database id pages are created in. Empty means
            the collection is not configured and CREATE fails (retryably).
    """

    entity_type: EntityType

    def __init__(self, collection_id: str = "") -> None:
        self.collection_id = collection_id

    @abstractmethod
    async def load_snapshot(self, store: EntityStore, entity_id: str) -> dict[str, Any] | None:
        """Return a JSON-serializable snapshot, or None if the entity is gone."""
        ...

    @abstractmethod
    def build_create_payload(self, snapshot: dict[str, Any]) -> PagePayload:
        ...

    @abstractmethod
    def build_update_payload(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    def map_remote_fields(self, page: PageSnapshot) -> dict[str, Any]:
        """Extract the inbound-whitelisted fields from a remote page."""
        ...

    def local_fields(self, entity: Any) -> dict[str, Any]:
        """Local values comparable with map_remote_fields() output."""
        return {}

    async def unlinked_dependents(
        self, store: EntityStore, entity_id: str
    ) -> list[tuple[EntityType, str]]:
        """Entities rendered inside this entity's page that have no block yet.

        The processor queues a CREATE for each once the page exists.
        """
        return []

    async def create(self, adapter: WorkspaceAdapter, snapshot: dict[str, Any]) -> AdapterResult:
        if not self.collection_id:
            return AdapterResult.failure(
                f"Notion collection not configured for {self.entity_type.value}"
            )
        payload = self.build_create_payload(snapshot)
        return await adapter.create_page(self.collection_id, payload.properties, payload.children)

    async def update(
        self, adapter: WorkspaceAdapter, page_id: str, snapshot: dict[str, Any]
    ) -> AdapterResult:
        return await adapter.update_page(page_id, self.build_update_payload(snapshot))

    async def archive(self, adapter: WorkspaceAdapter, page_id: str) -> AdapterResult:
        return await adapter.archive_page(page_id)
