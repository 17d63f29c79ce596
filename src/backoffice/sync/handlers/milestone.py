"""Milestones as to-do blocks inside their project's Notion page.

Milestones have no collection of their own. CREATE appends a to-do under the
project page's "Milestones" heading and stores the block id as the
milestone's notion_page_id; UPDATE rewrites the block; DELETE archives it.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.backoffice.core.exceptions import RemoteAccessError
from src.backoffice.sync.adapter import WorkspaceAdapter
from src.backoffice.sync.blocks import block_plain_text, to_do_block
from src.backoffice.sync.handlers.base import EntitySyncHandler, iso
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import AdapterResult, EntityType, PagePayload, PageSnapshot

logger = structlog.get_logger(__name__)

STATUS_EMOJI: dict[str, str] = {
    "PENDING": "⏳",
    "IN_PROGRESS": "🔄",
    "COMPLETED": "✅",
}


def milestone_block(milestone: dict[str, Any]) -> dict:
    """Render one milestone snapshot as a Notion to-do block."""
    status = milestone.get("status") or "PENDING"
    due = milestone.get("due_date")
    return to_do_block(
        f"{STATUS_EMOJI.get(status, '⏳')} {milestone['name']}",
        checked=status == "COMPLETED",
        suffix=f" (Due: {due[:10]})" if due else None,
    )


def find_milestone_anchor(blocks: list[dict[str, Any]], heading: str = "Milestones") -> str | None:
    """Block id to append a new milestone after: the last to-do under the heading.

    Returns the heading's own id when the list is empty, or None when the
    page has no such heading (the block is then appended at the end).
    """
    anchor: str | None = None
    in_section = False
    for block in blocks:
        block_type = block.get("type")
        if in_section:
            if block_type == "to_do":
                anchor = block["id"]
                continue
            break
        if block_type == "heading_2" and block_plain_text(block).strip() == heading:
            in_section = True
            anchor = block["id"]
    return anchor


class MilestoneSyncHandler(EntitySyncHandler):
    entity_type = EntityType.MILESTONE

    async def load_snapshot(self, store: EntityStore, entity_id: str) -> dict[str, Any] | None:
        milestone = await store.get(EntityType.MILESTONE, entity_id)
        if milestone is None:
            return None
        project = await store.get(EntityType.PROJECT, milestone.project_id)
        return {
            "id": milestone.id,
            "project_id": milestone.project_id,
            "name": milestone.name,
            "status": milestone.status,
            "due_date": iso(milestone.due_date),
            "project_notion_page_id": project.notion_page_id if project else None,
            "notion_page_id": milestone.notion_page_id,
        }

    def build_create_payload(self, snapshot: dict[str, Any]) -> PagePayload:
        return PagePayload(children=[milestone_block(snapshot)])

    def build_update_payload(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        block = milestone_block(snapshot)
        return {"to_do": block["to_do"]}

    def map_remote_fields(self, page: PageSnapshot) -> dict[str, Any]:
        return {}

    async def create(self, adapter: WorkspaceAdapter, snapshot: dict[str, Any]) -> AdapterResult:
        project_page_id = snapshot.get("project_notion_page_id")
        if not project_page_id:
            return AdapterResult.failure("Parent project not synced to Notion")

        try:
            blocks = await adapter.list_children(project_page_id)
        except RemoteAccessError as exc:
            return AdapterResult.failure(str(exc))

        anchor = find_milestone_anchor(blocks)
        if anchor is None:
            logger.info("notion.milestone_heading_missing", project_page_id=project_page_id)

        payload = self.build_create_payload(snapshot)
        return await adapter.append_blocks(project_page_id, payload.children, after=anchor)

    async def update(
        self, adapter: WorkspaceAdapter, page_id: str, snapshot: dict[str, Any]
    ) -> AdapterResult:
        return await adapter.update_block(page_id, self.build_update_payload(snapshot))

    async def archive(self, adapter: WorkspaceAdapter, page_id: str) -> AdapterResult:
        return await adapter.archive_block(page_id)
