"""Notion workspace adapter -- the remote side of the sync engine.

Implements WorkspaceAdapter over notion-client's AsyncClient.

Key implementation details:
- Every call first takes a token from the shared RateLimiter (Notion allows
  roughly 3 requests/second per integration)
- Transient failures (timeouts, transport errors, 429, 5xx) are retried with
  tenacity + exponential backoff before surfacing
- Writes return AdapterResult; reads raise RemoteAccessError
- Collection queries and child listings follow ``has_more``/``next_cursor``
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from notion_client import AsyncClient
from notion_client.errors import HTTPResponseError, RequestTimeoutError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.backoffice.core.clock import parse_timestamp
from src.backoffice.core.exceptions import RemoteAccessError
from src.backoffice.core.monitoring import record_notion_call
from src.backoffice.sync.adapter import WorkspaceAdapter
from src.backoffice.sync.ratelimit import RateLimiter
from src.backoffice.sync.schemas import AdapterResult, PageSnapshot

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """Errors worth retrying in-process: timeouts, transport, 429 and 5xx."""
    if isinstance(exc, (RequestTimeoutError, httpx.TransportError)):
        return True
    if isinstance(exc, HTTPResponseError):
        return exc.status == 429 or exc.status >= 500
    return False


_notion_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


def page_to_snapshot(page: dict[str, Any]) -> PageSnapshot:
    """Convert a Notion page object to PageSnapshot."""
    return PageSnapshot(
        id=page["id"],
        properties=page.get("properties", {}),
        last_edited_time=parse_timestamp(page.get("last_edited_time")),
        archived=bool(page.get("archived") or page.get("in_trash")),
        url=page.get("url"),
    )


class NotionWorkspaceAdapter(WorkspaceAdapter):
    """Notion API adapter for page and block operations.

    Args:
        client: notion-client AsyncClient (or a compatible test double).
        rate_limiter: Shared token bucket; None disables throttling.
    """

    def __init__(self, client: AsyncClient, rate_limiter: RateLimiter | None = None) -> None:
        self._client = client
        self._rate_limiter = rate_limiter

    @classmethod
    def from_token(
        cls,
        token: str,
        rate_limiter: RateLimiter | None = None,
        timeout_ms: int = 30_000,
    ) -> NotionWorkspaceAdapter:
        """Build an adapter with a fresh AsyncClient for an integration token."""
        return cls(AsyncClient(auth=token, timeout_ms=timeout_ms), rate_limiter)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _throttle(self) -> None:
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

    # ── Raw API calls (throttled + retried) ─────────────────────────────────

    @_notion_retry
    async def _pages_create(self, **kwargs: Any) -> dict[str, Any]:
        await self._throttle()
        return await self._client.pages.create(**kwargs)

    @_notion_retry
    async def _pages_update(self, **kwargs: Any) -> dict[str, Any]:
        await self._throttle()
        return await self._client.pages.update(**kwargs)

    @_notion_retry
    async def _pages_retrieve(self, page_id: str) -> dict[str, Any]:
        await self._throttle()
        return await self._client.pages.retrieve(page_id=page_id)

    @_notion_retry
    async def _databases_query(self, **kwargs: Any) -> dict[str, Any]:
        await self._throttle()
        return await self._client.databases.query(**kwargs)

    @_notion_retry
    async def _children_list(self, **kwargs: Any) -> dict[str, Any]:
        await self._throttle()
        return await self._client.blocks.children.list(**kwargs)

    @_notion_retry
    async def _children_append(self, **kwargs: Any) -> dict[str, Any]:
        await self._throttle()
        return await self._client.blocks.children.append(**kwargs)

    @_notion_retry
    async def _blocks_update(self, **kwargs: Any) -> dict[str, Any]:
        await self._throttle()
        return await self._client.blocks.update(**kwargs)

    @_notion_retry
    async def _blocks_delete(self, block_id: str) -> dict[str, Any]:
        await self._throttle()
        return await self._client.blocks.delete(block_id=block_id)

    # ── Pages ───────────────────────────────────────────────────────────────

    async def create_page(
        self,
        collection_id: str,
        properties: dict[str, Any],
        children: list[dict[str, Any]] | None = None,
    ) -> AdapterResult:
        """Create a page in a Notion database.

        Returns:
            AdapterResult with the new page id on success.
        """
        try:
            page = await self._pages_create(
                parent={"database_id": collection_id},
                properties=properties,
                children=children or [],
            )
        except Exception as exc:
            record_notion_call("pages.create", success=False)
            logger.warning("notion.page_create_failed", collection_id=collection_id, error=str(exc))
            return AdapterResult.failure(f"Notion page create failed: {exc}")

        record_notion_call("pages.create", success=True)
        logger.info("notion.page_created", page_id=page["id"], collection_id=collection_id)
        return AdapterResult.ok(page["id"])

    async def update_page(self, page_id: str, properties: dict[str, Any]) -> AdapterResult:
        """Patch page properties only. Content blocks are left alone."""
        if not properties:
            return AdapterResult.ok(page_id)
        try:
            await self._pages_update(page_id=page_id, properties=properties)
        except Exception as exc:
            record_notion_call("pages.update", success=False)
            logger.warning("notion.page_update_failed", page_id=page_id, error=str(exc))
            return AdapterResult.failure(f"Notion page update failed: {exc}")

        record_notion_call("pages.update", success=True)
        logger.info("notion.page_updated", page_id=page_id, properties=list(properties))
        return AdapterResult.ok(page_id)

    async def archive_page(self, page_id: str) -> AdapterResult:
        try:
            await self._pages_update(page_id=page_id, archived=True)
        except Exception as exc:
            record_notion_call("pages.archive", success=False)
            logger.warning("notion.page_archive_failed", page_id=page_id, error=str(exc))
            return AdapterResult.failure(f"Notion page archive failed: {exc}")

        record_notion_call("pages.archive", success=True)
        logger.info("notion.page_archived", page_id=page_id)
        return AdapterResult.ok(page_id)

    async def get_page(self, page_id: str) -> PageSnapshot:
        try:
            page = await self._pages_retrieve(page_id)
        except Exception as exc:
            record_notion_call("pages.retrieve", success=False)
            logger.warning("notion.page_retrieve_failed", page_id=page_id, error=str(exc))
            raise RemoteAccessError(f"Could not retrieve Notion page {page_id}: {exc}") from exc

        record_notion_call("pages.retrieve", success=True)
        return page_to_snapshot(page)

    async def query_collection(self, collection_id: str) -> list[PageSnapshot]:
        pages: list[PageSnapshot] = []
        cursor: str | None = None
        try:
            while True:
                kwargs: dict[str, Any] = {"database_id": collection_id, "page_size": 100}
                if cursor:
                    kwargs["start_cursor"] = cursor
                response = await self._databases_query(**kwargs)
                pages.extend(page_to_snapshot(p) for p in response.get("results", []))
                if not response.get("has_more"):
                    break
                cursor = response.get("next_cursor")
        except Exception as exc:
            record_notion_call("databases.query", success=False)
            logger.warning("notion.collection_query_failed", collection_id=collection_id, error=str(exc))
            raise RemoteAccessError(f"Could not query Notion collection {collection_id}: {exc}") from exc

        record_notion_call("databases.query", success=True)
        return pages

    # ── Blocks ──────────────────────────────────────────────────────────────

    async def list_children(self, block_id: str) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        cursor: str | None = None
        try:
            while True:
                kwargs: dict[str, Any] = {"block_id": block_id, "page_size": 100}
                if cursor:
                    kwargs["start_cursor"] = cursor
                response = await self._children_list(**kwargs)
                blocks.extend(response.get("results", []))
                if not response.get("has_more"):
                    break
                cursor = response.get("next_cursor")
        except Exception as exc:
            record_notion_call("blocks.children.list", success=False)
            raise RemoteAccessError(f"Could not list children of {block_id}: {exc}") from exc

        record_notion_call("blocks.children.list", success=True)
        return blocks

    async def append_blocks(
        self,
        parent_id: str,
        children: list[dict[str, Any]],
        after: str | None = None,
    ) -> AdapterResult:
        kwargs: dict[str, Any] = {"block_id": parent_id, "children": children}
        if after:
            kwargs["after"] = after
        try:
            response = await self._children_append(**kwargs)
        except Exception as exc:
            record_notion_call("blocks.children.append", success=False)
            logger.warning("notion.blocks_append_failed", parent_id=parent_id, error=str(exc))
            return AdapterResult.failure(f"Notion block append failed: {exc}")

        record_notion_call("blocks.children.append", success=True)
        results = response.get("results", [])
        block_id = results[0]["id"] if results else None
        logger.info("notion.blocks_appended", parent_id=parent_id, block_id=block_id)
        return AdapterResult.ok(block_id)

    async def update_block(self, block_id: str, payload: dict[str, Any]) -> AdapterResult:
        try:
            await self._blocks_update(block_id=block_id, **payload)
        except Exception as exc:
            record_notion_call("blocks.update", success=False)
            logger.warning("notion.block_update_failed", block_id=block_id, error=str(exc))
            return AdapterResult.failure(f"Notion block update failed: {exc}")

        record_notion_call("blocks.update", success=True)
        return AdapterResult.ok(block_id)

    async def archive_block(self, block_id: str) -> AdapterResult:
        try:
            await self._blocks_delete(block_id)
        except Exception as exc:
            record_notion_call("blocks.delete", success=False)
            logger.warning("notion.block_archive_failed", block_id=block_id, error=str(exc))
            return AdapterResult.failure(f"Notion block archive failed: {exc}")

        record_notion_call("blocks.delete", success=True)
        return AdapterResult.ok(block_id)
