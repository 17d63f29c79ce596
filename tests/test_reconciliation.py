"""Tests for the read-only reconciliation report."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.backoffice.models.entities import Lead, Project
from src.backoffice.sync.reconciliation import ReconciliationReporter, classify_report
from src.backoffice.sync.schemas import EntityType, ReconciliationStatus

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _props(name: str, status: str = "Onboarding") -> dict:
    return {
        "Name": {"type": "title", "title": [{"plain_text": name}]},
        "Status": {"type": "select", "select": {"name": status}},
    }


@pytest.fixture
def reporter(store, workspace, handlers) -> ReconciliationReporter:
    return ReconciliationReporter(store, workspace, handlers, tolerance_seconds=60)


async def _linked_project(
    seed,
    workspace,
    index: int,
    *,
    remote_name: str | None = None,
    remote_edited: datetime | None = None,
    **fields,
) -> Project:
    page_id = f"page-{index}"
    name = f"Project {index}"
    workspace.add_page(
        page_id,
        _props(remote_name or name),
        last_edited_time=remote_edited or T0 + timedelta(seconds=30),
    )
    return await seed(
        Project(name=name, status="ONBOARDING", notion_page_id=page_id, updated_at=T0, **fields)
    )


# ── Classification ───────────────────────────────────────────────────────────


class TestClassifyReport:
    def test_healthy(self) -> None:
        assert classify_report(0, 10, 0) == ReconciliationStatus.HEALTHY

    def test_mostly_synced_below_threshold(self) -> None:
        assert classify_report(1, 19, 0) == ReconciliationStatus.MOSTLY_SYNCED

    def test_needs_attention_at_threshold(self) -> None:
        assert classify_report(1, 9, 0) == ReconciliationStatus.NEEDS_ATTENTION

    def test_unlinked_only(self) -> None:
        assert classify_report(0, 5, 2) == ReconciliationStatus.MOSTLY_SYNCED
        assert classify_report(0, 0, 2) == ReconciliationStatus.NEEDS_ATTENTION


# ── Reports ──────────────────────────────────────────────────────────────────


class TestReconciliationReporter:
    @pytest.mark.asyncio
    async def test_healthy(self, reporter, workspace, seed) -> None:
        await _linked_project(seed, workspace, 1)

        report = await reporter.generate()

        assert report.status == ReconciliationStatus.HEALTHY
        assert report.notion.total == 1
        assert report.notion.in_sync == 1
        assert report.postgres.total == 1
        assert report.postgres.linked == 1
        assert report.discrepancy_count == 0

    @pytest.mark.asyncio
    async def test_one_discrepancy_in_twenty(self, reporter, workspace, seed) -> None:
        for i in range(19):
            await _linked_project(seed, workspace, i)
        drifted = await _linked_project(seed, workspace, 19, remote_name="Renamed remotely")

        report = await reporter.generate()

        assert report.status == ReconciliationStatus.MOSTLY_SYNCED
        assert report.discrepancy_count == 1
        [discrepancy] = report.discrepancies
        assert discrepancy.entity_id == drifted.id
        assert discrepancy.entity_type == EntityType.PROJECT
        [issue] = discrepancy.issues
        assert issue.field == "name"
        assert issue.local_value == "Project 19"
        assert issue.remote_value == "Renamed remotely"

    @pytest.mark.asyncio
    async def test_issues_grouped_per_entity(self, reporter, workspace, seed) -> None:
        await _linked_project(
            seed, workspace, 1, remote_name="Other", remote_edited=T0 + timedelta(hours=2)
        )

        report = await reporter.generate()

        assert report.discrepancy_count == 1
        fields = {issue.field for issue in report.discrepancies[0].issues}
        assert fields == {"name", "timestamp"}
        drift = next(i for i in report.discrepancies[0].issues if i.field == "timestamp")
        assert drift.time_diff_seconds == 7200
        assert report.status == ReconciliationStatus.NEEDS_ATTENTION

    @pytest.mark.asyncio
    async def test_last_sync_counts_as_local_edit(self, reporter, workspace, seed) -> None:
        await _linked_project(
            seed,
            workspace,
            1,
            remote_edited=T0 + timedelta(hours=2, seconds=10),
            last_synced_at=T0 + timedelta(hours=2),
        )

        report = await reporter.generate()

        assert report.status == ReconciliationStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_unreadable_page(self, reporter, workspace, seed) -> None:
        await _linked_project(seed, workspace, 1)
        workspace.unreadable.add("page-1")

        report = await reporter.generate()

        [issue] = report.discrepancies[0].issues
        assert issue.field == "notion_access"
        assert "page-1" in issue.error

    @pytest.mark.asyncio
    async def test_unlinked_entities_counted(self, reporter, workspace, seed) -> None:
        await _linked_project(seed, workspace, 1)
        await seed(Lead(email="new@example.com"))

        report = await reporter.generate()

        assert report.postgres.total == 2
        assert report.postgres.unlinked == 1
        assert report.status == ReconciliationStatus.MOSTLY_SYNCED

    @pytest.mark.asyncio
    async def test_query_failure_is_error_report(self, reporter, workspace, seed) -> None:
        await _linked_project(seed, workspace, 1)
        workspace.query_error = "unauthorized"

        report = await reporter.generate()

        assert report.status == ReconciliationStatus.ERROR
        assert report.notion.total == -1
        assert report.error == "unauthorized"
        assert workspace.count("get_page") == 0

    @pytest.mark.asyncio
    async def test_no_collections_configured(self, store, workspace) -> None:
        reporter = ReconciliationReporter(store, workspace, handlers={})

        report = await reporter.generate()

        assert report.status == ReconciliationStatus.ERROR

    @pytest.mark.asyncio
    async def test_report_is_read_only(self, reporter, workspace, seed, store) -> None:
        project = await _linked_project(seed, workspace, 1, remote_name="Other")

        await reporter.generate()

        assert (await store.get(EntityType.PROJECT, project.id)).name == "Project 1"
        assert workspace.count("update_page") == 0
