"""Shared fixtures for the sync engine tests.

Provides:
- A file-backed SQLite database per test (aiosqlite), schema from Base.metadata
- session_factory in the same async-generator shape as core.database.get_session
- EntityStore / SyncJobQueue wired to that database
- FakeClock for deterministic backoff and retention tests
- FakeWorkspace: in-memory WorkspaceAdapter double (pages, blocks, failures)
- seed(): persist rows and get them back detached
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.backoffice.config import Settings
from src.backoffice.core.clock import utcnow
from src.backoffice.core.database import Base
from src.backoffice.core.exceptions import RemoteAccessError
from src.backoffice.models import entities, sync  # noqa: F401
from src.backoffice.sync.adapter import WorkspaceAdapter
from src.backoffice.sync.handlers import build_handlers
from src.backoffice.sync.queue import SyncJobQueue
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import AdapterResult, PageSnapshot


# ── Clock ────────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ── Workspace Double ─────────────────────────────────────────────────────────


class FakeWorkspace(WorkspaceAdapter):
    """In-memory Notion workspace.

    Pages live in ``pages`` keyed by id; page content and appended blocks
    live in ``children`` keyed by parent id. Every call is appended to
    ``calls`` as ``(method, target)``.

    Failure knobs:
        write_error: every write returns AdapterResult.failure(write_error)
        crash: every write raises RuntimeError
        unreadable: page ids whose get_page raises RemoteAccessError
        query_error: query_collection raises RemoteAccessError
    """

    def __init__(self) -> None:
        self.pages: dict[str, dict[str, Any]] = {}
        self.children: dict[str, list[dict[str, Any]]] = {}
        self.archived_blocks: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.write_error: str | None = None
        self.crash = False
        self.unreadable: set[str] = set()
        self.query_error: str | None = None
        self._ids = itertools.count(1)

    # Helpers for tests

    def add_page(
        self,
        page_id: str,
        properties: dict[str, Any],
        last_edited_time: datetime | None = None,
        collection_id: str = "db-projects",
    ) -> None:
        self.pages[page_id] = {
            "collection_id": collection_id,
            "properties": properties,
            "archived": False,
            "last_edited_time": last_edited_time or utcnow(),
        }
        self.children.setdefault(page_id, [])

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _check_write(self) -> AdapterResult | None:
        if self.crash:
            raise RuntimeError("workspace exploded")
        if self.write_error:
            return AdapterResult.failure(self.write_error)
        return None

    def _with_ids(self, blocks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [{**block, "id": f"block-{next(self._ids)}"} for block in blocks]

    # WorkspaceAdapter

    async def create_page(
        self,
        collection_id: str,
        properties: dict[str, Any],
        children: list[dict[str, Any]] | None = None,
    ) -> AdapterResult:
        self.calls.append(("create_page", collection_id))
        failed = self._check_write()
        if failed is not None:
            return failed
        page_id = f"page-{next(self._ids)}"
        self.add_page(page_id, dict(properties), collection_id=collection_id)
        self.children[page_id] = self._with_ids(children or [])
        return AdapterResult.ok(page_id)

    async def update_page(self, page_id: str, properties: dict[str, Any]) -> AdapterResult:
        self.calls.append(("update_page", page_id))
        failed = self._check_write()
        if failed is not None:
            return failed
        page = self.pages.get(page_id)
        if page is None:
            return AdapterResult.failure(f"page {page_id} not found")
        page["properties"].update(properties)
        page["last_edited_time"] = utcnow()
        return AdapterResult.ok(page_id)

    async def archive_page(self, page_id: str) -> AdapterResult:
        self.calls.append(("archive_page", page_id))
        failed = self._check_write()
        if failed is not None:
            return failed
        if page_id not in self.pages:
            return AdapterResult.failure(f"page {page_id} not found")
        self.pages[page_id]["archived"] = True
        return AdapterResult.ok(page_id)

    async def get_page(self, page_id: str) -> PageSnapshot:
        self.calls.append(("get_page", page_id))
        page = self.pages.get(page_id)
        if page is None or page_id in self.unreadable:
            raise RemoteAccessError(f"Could not retrieve Notion page {page_id}")
        return PageSnapshot(
            id=page_id,
            properties=page["properties"],
            last_edited_time=page["last_edited_time"],
            archived=page["archived"],
        )

    async def query_collection(self, collection_id: str) -> list[PageSnapshot]:
        self.calls.append(("query_collection", collection_id))
        if self.query_error:
            raise RemoteAccessError(self.query_error)
        return [
            PageSnapshot(id=pid, properties=p["properties"], last_edited_time=p["last_edited_time"])
            for pid, p in self.pages.items()
            if p["collection_id"] == collection_id and not p["archived"]
        ]

    async def list_children(self, block_id: str) -> list[dict[str, Any]]:
        self.calls.append(("list_children", block_id))
        if block_id not in self.children:
            raise RemoteAccessError(f"Could not list children of {block_id}")
        return [b for b in self.children[block_id] if b["id"] not in self.archived_blocks]

    async def append_blocks(
        self,
        parent_id: str,
        children: list[dict[str, Any]],
        after: str | None = None,
    ) -> AdapterResult:
        self.calls.append(("append_blocks", parent_id))
        failed = self._check_write()
        if failed is not None:
            return failed
        blocks = self.children.setdefault(parent_id, [])
        new_blocks = self._with_ids(children)
        position = len(blocks)
        if after is not None:
            for index, block in enumerate(blocks):
                if block["id"] == after:
                    position = index + 1
                    break
        blocks[position:position] = new_blocks
        return AdapterResult.ok(new_blocks[0]["id"] if new_blocks else None)

    async def update_block(self, block_id: str, payload: dict[str, Any]) -> AdapterResult:
        self.calls.append(("update_block", block_id))
        failed = self._check_write()
        if failed is not None:
            return failed
        for blocks in self.children.values():
            for block in blocks:
                if block["id"] == block_id:
                    block.update(payload)
                    return AdapterResult.ok(block_id)
        return AdapterResult.failure(f"block {block_id} not found")

    async def archive_block(self, block_id: str) -> AdapterResult:
        self.calls.append(("archive_block", block_id))
        failed = self._check_write()
        if failed is not None:
            return failed
        self.archived_blocks.add(block_id)
        return AdapterResult.ok(block_id)


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(session_factory) -> EntityStore:
    return EntityStore(session_factory=session_factory)


@pytest.fixture
def queue(session_factory, clock) -> SyncJobQueue:
    return SyncJobQueue(
        session_factory=session_factory,
        max_retries=3,
        backoff_base=1.0,
        backoff_max=300.0,
        clock=clock,
    )


@pytest.fixture
def workspace() -> FakeWorkspace:
    return FakeWorkspace()


@pytest.fixture
def handlers():
    settings = Settings(
        NOTION_LEADS_DATABASE_ID="db-leads",
        NOTION_PROJECTS_DATABASE_ID="db-projects",
        NOTION_DELIVERABLES_DATABASE_ID="db-deliverables",
    )
    return build_handlers(settings)


@pytest.fixture
def seed(session_factory):
    """Persist rows in one commit; returns the first (detached, fully loaded)."""

    async def _seed(*rows: Any) -> Any:
        async for session in session_factory():
            session.add_all(rows)
            await session.commit()
        return rows[0]

    return _seed
