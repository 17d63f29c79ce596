"""Workspace adapter abstract base class -- the remote page API the sync engine needs.

NotionWorkspaceAdapter is the production implementation. Write operations
return AdapterResult instead of raising, so callers map failures onto the
retry state machine. Read operations raise RemoteAccessError, which lets the
reconciliation reporter tell a per-entity access failure from a collection
outage.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.backoffice.sync.schemas import AdapterResult, PageSnapshot


class WorkspaceAdapter(ABC):
    """Abstract interface for remote workspace operations.

    Methods:
        create_page: Create a page in a collection, result carries the page id.
        update_page: Patch page properties (never content blocks).
        archive_page: Archive a page (remote history is preserved).
        get_page: Fetch a page's properties and timestamps.
        query_collection: List every page in a collection.
        list_children: List child blocks of a page or block.
        append_blocks: Append blocks under a parent, result carries the first new block id.
        update_block: Patch a block.
        archive_block: Archive a block.
    """

    @abstractmethod
    async def create_page(
        self,
        collection_id: str,
        properties: dict[str, Any],
        children: list[dict[str, Any]] | None = None,
    ) -> AdapterResult:
        ...

    @abstractmethod
    async def update_page(self, page_id: str, properties: dict[str, Any]) -> AdapterResult:
        ...

    @abstractmethod
    async def archive_page(self, page_id: str) -> AdapterResult:
        ...

    @abstractmethod
    async def get_page(self, page_id: str) -> PageSnapshot:
        """Raises RemoteAccessError when the page cannot be read."""
        ...

    @abstractmethod
    async def query_collection(self, collection_id: str) -> list[PageSnapshot]:
        """Raises RemoteAccessError when the collection cannot be queried."""
        ...

    @abstractmethod
    async def list_children(self, block_id: str) -> list[dict[str, Any]]:
        """Raises RemoteAccessError when the children cannot be listed."""
        ...

    @abstractmethod
    async def append_blocks(
        self,
        parent_id: str,
        children: list[dict[str, Any]],
        after: str | None = None,
    ) -> AdapterResult:
        ...

    @abstractmethod
    async def update_block(self, block_id: str, payload: dict[str, Any]) -> AdapterResult:
        ...

    @abstractmethod
    async def archive_block(self, block_id: str) -> AdapterResult:
        ...
