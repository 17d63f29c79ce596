"""Tests for QueueProcessor and SyncService against the in-memory workspace.

Covers the end-to-end outbound path: enqueue -> claim -> handler ->
adapter -> complete/fail, including duplicate-create protection, crash
handling, milestone to-do placement and archive on delete.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.backoffice.models.entities import Client, Lead, Milestone, Project
from src.backoffice.sync.processor import QueueProcessor
from src.backoffice.sync.schemas import (
    EntitySyncStatus,
    EntityType,
    JobStatus,
    SyncOperation,
)
from src.backoffice.sync.service import SyncService


# ── Helpers ──────────────────────────────────────────────────────────────────


@pytest.fixture
def processor(queue, store, workspace, handlers) -> QueueProcessor:
    return QueueProcessor(
        queue=queue,
        store=store,
        adapter=workspace,
        handlers=handlers,
        concurrency=1,
        poll_interval=0.01,
    )


@pytest.fixture
def service(queue, store, processor) -> SyncService:
    return SyncService(queue=queue, store=store, processor=processor)


# ── Create / Update ──────────────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_double_create_makes_one_page(
        self, service, processor, store, workspace, seed
    ) -> None:
        lead = await seed(Lead(email="ann@example.com", name="Ann"))
        first = await service.on_entity_created(EntityType.LEAD, lead.id)
        second = await service.on_entity_created(EntityType.LEAD, lead.id)
        assert first == second

        summary = await processor.drain()

        assert summary.synced == 1
        assert workspace.count("create_page") == 1
        reloaded = await store.get(EntityType.LEAD, lead.id)
        assert reloaded.notion_page_id in workspace.pages
        assert reloaded.sync_status == EntitySyncStatus.SYNCED.value

    @pytest.mark.asyncio
    async def test_create_for_linked_entity_updates_instead(
        self, queue, processor, workspace, seed
    ) -> None:
        workspace.add_page("page-7", {}, collection_id="db-leads")
        lead = await seed(Lead(email="ann@example.com", name="Ann", notion_page_id="page-7"))
        await queue.enqueue(EntityType.LEAD, lead.id, SyncOperation.CREATE)

        await processor.drain()

        assert workspace.count("create_page") == 0
        assert workspace.count("update_page") == 1
        title = workspace.pages["page-7"]["properties"]["Name"]["title"][0]["text"]["content"]
        assert title == "Ann"

    @pytest.mark.asyncio
    async def test_update_without_page_becomes_create(self, service, queue, seed) -> None:
        lead = await seed(Lead(email="ann@example.com"))
        job_id = await service.on_entity_updated(EntityType.LEAD, lead.id)
        job = await queue.get(job_id)
        assert job.operation == SyncOperation.CREATE

    @pytest.mark.asyncio
    async def test_update_for_missing_entity(self, service) -> None:
        assert await service.on_entity_updated(EntityType.LEAD, "nope") is None

    @pytest.mark.asyncio
    async def test_project_page_carries_client_and_progress(
        self, service, processor, store, workspace, seed
    ) -> None:
        client = await seed(Client(name="Cora", email="cora@example.com"))
        project = await seed(
            Project(name="Garden", status="ONBOARDING", tier=2, client_id=client.id)
        )
        await seed(
            Milestone(project_id=project.id, name="Survey", status="COMPLETED", sort_order=1),
            Milestone(project_id=project.id, name="Design", status="PENDING", sort_order=2),
        )
        await service.on_entity_created(EntityType.PROJECT, project.id)

        await processor.drain()

        page_id = (await store.get(EntityType.PROJECT, project.id)).notion_page_id
        props = workspace.pages[page_id]["properties"]
        assert props["Progress"] == {"number": 50.0}
        assert props["Tier"] == {"select": {"name": "Sprout"}}
        assert props["Client Email"] == {"email": "cora@example.com"}
        todos = [b for b in workspace.children[page_id] if b["type"] == "to_do"]
        assert len(todos) == 2
        assert todos[0]["to_do"]["checked"] is True


# ── Failures ─────────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_crashing_adapter_is_retryable(
        self, service, processor, queue, store, workspace, seed
    ) -> None:
        lead = await seed(Lead(email="ann@example.com"))
        job_id = await service.on_entity_created(EntityType.LEAD, lead.id)
        workspace.crash = True

        summary = await processor.drain()

        assert summary.retried == 1
        job = await queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert "workspace exploded" in job.last_error

    @pytest.mark.asyncio
    async def test_domain_failure_exhausts_retries(
        self, service, processor, queue, store, workspace, clock, seed
    ) -> None:
        lead = await seed(Lead(email="ann@example.com"))
        job_id = await service.on_entity_created(EntityType.LEAD, lead.id)
        workspace.write_error = "validation_error"

        for _ in range(3):
            await processor.drain()
            clock.advance(3600)

        job = await queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        reloaded = await store.get(EntityType.LEAD, lead.id)
        assert reloaded.sync_status == EntitySyncStatus.FAILED.value
        assert reloaded.sync_error == "validation_error"

    @pytest.mark.asyncio
    async def test_missing_collection_fails(self, queue, store, workspace, seed) -> None:
        from src.backoffice.sync.handlers import LeadSyncHandler

        processor = QueueProcessor(
            queue=queue,
            store=store,
            adapter=workspace,
            handlers={EntityType.LEAD: LeadSyncHandler("")},
        )
        lead = await seed(Lead(email="ann@example.com"))
        job_id = await queue.enqueue(EntityType.LEAD, lead.id, SyncOperation.CREATE)

        await processor.drain()

        job = await queue.get(job_id)
        assert "not configured" in job.last_error
        assert workspace.count("create_page") == 0

    @pytest.mark.asyncio
    async def test_vanished_entity_fails(self, queue, processor) -> None:
        job_id = await queue.enqueue(EntityType.LEAD, "gone", SyncOperation.UPDATE)
        await processor.drain()
        job = await queue.get(job_id)
        assert job.retry_count == 1
        assert "not found" in job.last_error


# ── Milestones ───────────────────────────────────────────────────────────────


class TestMilestones:
    @pytest.mark.asyncio
    async def test_milestone_appended_under_heading(
        self, service, processor, store, workspace, seed
    ) -> None:
        project = await seed(Project(name="Garden"))
        await service.on_entity_created(EntityType.PROJECT, project.id)
        await processor.drain()
        page_id = (await store.get(EntityType.PROJECT, project.id)).notion_page_id

        milestone = await seed(
            Milestone(
                project_id=project.id,
                name="Site survey",
                due_date=datetime(2026, 5, 1, tzinfo=timezone.utc),
            )
        )
        await service.on_entity_created(EntityType.MILESTONE, milestone.id)
        await processor.drain()

        block_id = (await store.get(EntityType.MILESTONE, milestone.id)).notion_page_id
        blocks = workspace.children[page_id]
        index = next(i for i, b in enumerate(blocks) if b["id"] == block_id)
        assert blocks[index - 1]["type"] == "heading_2"
        text = "".join(t["text"]["content"] for t in blocks[index]["to_do"]["rich_text"])
        assert "Site survey" in text and "2026-05-01" in text

    @pytest.mark.asyncio
    async def test_project_and_milestone_created_together_render_one_todo(
        self, service, processor, store, workspace, seed
    ) -> None:
        project = await seed(Project(name="Garden"))
        milestone = await seed(Milestone(project_id=project.id, name="Survey"))
        await service.on_entity_created(EntityType.PROJECT, project.id)
        await service.on_entity_created(EntityType.MILESTONE, milestone.id)

        await processor.drain()

        page_id = (await store.get(EntityType.PROJECT, project.id)).notion_page_id
        todos = [b for b in workspace.children[page_id] if b["type"] == "to_do"]
        assert len(todos) == 1
        reloaded = await store.get(EntityType.MILESTONE, milestone.id)
        assert reloaded.notion_page_id == todos[0]["id"]
        assert reloaded.sync_status == EntitySyncStatus.SYNCED.value

    @pytest.mark.asyncio
    async def test_project_create_queues_unlinked_milestones_once(
        self, service, processor, queue, store, workspace, seed
    ) -> None:
        project = await seed(Project(name="Garden"))
        linked = await seed(
            Milestone(project_id=project.id, name="Kickoff", notion_page_id="block-x")
        )
        await seed(Milestone(project_id=project.id, name="Survey"))
        await service.on_entity_created(EntityType.PROJECT, project.id)

        await processor.drain()

        page_id = (await store.get(EntityType.PROJECT, project.id)).notion_page_id
        todos = [b for b in workspace.children[page_id] if b["type"] == "to_do"]
        assert len(todos) == 1
        assert await queue.outstanding_for(EntityType.MILESTONE, linked.id) is None

    @pytest.mark.asyncio
    async def test_milestone_update_also_refreshes_project(self, service, queue, seed) -> None:
        project = await seed(Project(name="Garden", notion_page_id="page-1"))
        milestone = await seed(
            Milestone(project_id=project.id, name="Survey", notion_page_id="block-1")
        )

        await service.on_entity_updated(EntityType.MILESTONE, milestone.id)

        assert await queue.outstanding_for(EntityType.MILESTONE, milestone.id) is not None
        assert await queue.outstanding_for(EntityType.PROJECT, project.id) is not None

    @pytest.mark.asyncio
    async def test_milestone_before_project_sync_retries(
        self, service, processor, queue, seed
    ) -> None:
        project = await seed(Project(name="Garden"))
        milestone = await seed(Milestone(project_id=project.id, name="Survey"))
        job_id = await queue.enqueue(EntityType.MILESTONE, milestone.id, SyncOperation.CREATE)

        await processor.drain()

        job = await queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.last_error == "Parent project not synced to Notion"


# ── Delete ───────────────────────────────────────────────────────────────────


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_archives_page(self, service, processor, workspace, seed) -> None:
        workspace.add_page("page-3", {})
        project = await seed(Project(name="Garden", notion_page_id="page-3"))

        await service.on_entity_deleted(EntityType.PROJECT, project.id, "page-3")
        await processor.drain()

        assert workspace.pages["page-3"]["archived"] is True

    @pytest.mark.asyncio
    async def test_delete_after_row_removed(self, service, processor, workspace) -> None:
        workspace.add_page("page-4", {})
        await service.on_entity_deleted(
            EntityType.PROJECT, "already-deleted", "page-4", snapshot={"name": "Old"}
        )
        summary = await processor.drain()
        assert summary.synced == 1
        assert workspace.pages["page-4"]["archived"] is True

    @pytest.mark.asyncio
    async def test_delete_without_page_is_noop(self, service, queue) -> None:
        assert await service.on_entity_deleted(EntityType.PROJECT, "p-1", None) is None
        assert (await queue.status()).counts["PENDING"] == 0


# ── Bulk / Concurrency ───────────────────────────────────────────────────────


class TestBulk:
    @pytest.mark.asyncio
    async def test_concurrent_drain_syncs_everything(
        self, queue, store, workspace, handlers, seed
    ) -> None:
        processor = QueueProcessor(
            queue=queue, store=store, adapter=workspace, handlers=handlers, concurrency=4
        )
        service = SyncService(queue=queue, store=store)
        leads = [Lead(email=f"lead{i}@example.com") for i in range(6)]
        await seed(*leads)

        queued = await service.sync_all_pending()
        assert queued["LEAD"] == 6

        summary = await processor.drain()

        assert summary.synced == 6
        assert workspace.count("create_page") == 6
        counts = await store.sync_status_counts(EntityType.LEAD)
        assert counts == {"SYNCED": 6}

    @pytest.mark.asyncio
    async def test_drain_respects_max_jobs(self, service, processor, seed) -> None:
        await seed(Lead(email="a@example.com"), Lead(email="b@example.com"))
        await service.sync_all_pending()

        summary = await processor.drain(max_jobs=1)
        assert summary.processed == 1

    @pytest.mark.asyncio
    async def test_stats(self, service, seed) -> None:
        await seed(Lead(email="a@example.com"))
        await service.sync_all_pending()

        stats = await service.stats()
        assert stats["entities"]["LEAD"] == {"PENDING": 1}
        assert stats["queue"]["counts"]["PENDING"] == 1
