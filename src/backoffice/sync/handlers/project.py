"""Project pages in the Notion projects database.

Project pages host the milestone to-do list under a "Milestones" heading.
The page is created with an empty list; each milestone's own CREATE job
appends its to-do and records the block id, so no milestone is rendered twice.
"""

from __future__ import annotations

from typing import Any

from src.backoffice.sync.blocks import (
    callout_block,
    divider_block,
    heading_block,
    paragraph_block,
)
from src.backoffice.sync.field_mapping import (
    PROJECT_INBOUND_STATUSES,
    PROJECT_PROPERTY_MAP,
    from_notion_properties,
    get_page_title,
    normalize_remote_status,
    tier_name,
    to_notion_properties,
)
from src.backoffice.sync.handlers.base import EntitySyncHandler, iso
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import EntityType, PagePayload, PageSnapshot

MILESTONES_HEADING = "Milestones"

_UPDATE_FIELDS = ("name", "status", "progress", "payment_status")


def compute_progress(milestone_statuses: list[str]) -> int:
    """Percentage of milestones completed, rounded; 0 when there are none."""
    if not milestone_statuses:
        return 0
    completed = sum(1 for s in milestone_statuses if s == "COMPLETED")
    return round(completed / len(milestone_statuses) * 100)


class ProjectSyncHandler(EntitySyncHandler):
    entity_type = EntityType.PROJECT

    async def load_snapshot(self, store: EntityStore, entity_id: str) -> dict[str, Any] | None:
        project = await store.get(EntityType.PROJECT, entity_id)
        if project is None:
            return None
        client = await store.get_client(project.client_id)
        milestones = await store.list_milestones(project.id)

        return {
            "id": project.id,
            "name": project.name,
            "status": project.status,
            "tier": project.tier,
            "payment_status": project.payment_status,
            "project_address": project.project_address,
            "created_at": iso(project.created_at),
            "client_name": client.name if client else None,
            "client_email": client.email if client else None,
            "progress": compute_progress([m.status for m in milestones]),
            "notion_page_id": project.notion_page_id,
        }

    def _property_values(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        return {
            "name": snapshot["name"],
            "status": snapshot.get("status"),
            "tier": tier_name(snapshot.get("tier")),
            "progress": snapshot.get("progress", 0),
            "payment_status": snapshot.get("payment_status"),
            "address": snapshot.get("project_address") or "N/A",
            "client": snapshot.get("client_name") or snapshot.get("client_email") or "Unknown",
            "client_email": snapshot.get("client_email"),
            "created_at": snapshot.get("created_at"),
            "internal_id": snapshot["id"],
        }

    def build_create_payload(self, snapshot: dict[str, Any]) -> PagePayload:
        values = self._property_values(snapshot)
        client_line = (
            f"Client: {snapshot.get('client_name') or 'Unknown'} "
            f"({snapshot.get('client_email') or 'No email'})"
        )

        children = [
            heading_block("Project Overview"),
            callout_block(client_line, "👤"),
        ]
        if values["tier"]:
            children.append(callout_block(f"Tier: {values['tier']}", "🌱"))
        children.append(divider_block())

        children.append(heading_block(MILESTONES_HEADING))

        children.append(divider_block())
        children.append(heading_block("Deliverables"))
        children.append(
            paragraph_block(
                "Deliverables will appear here as they are added to the project.",
                italic=True,
            )
        )

        return PagePayload(
            properties=to_notion_properties(values, PROJECT_PROPERTY_MAP),
            children=children,
        )

    def build_update_payload(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        values = self._property_values(snapshot)
        return to_notion_properties(
            {k: values[k] for k in _UPDATE_FIELDS}, PROJECT_PROPERTY_MAP
        )

    def map_remote_fields(self, page: PageSnapshot) -> dict[str, Any]:
        data = from_notion_properties(page.properties, PROJECT_PROPERTY_MAP)
        fields: dict[str, Any] = {}
        status = normalize_remote_status(data.get("status"), PROJECT_INBOUND_STATUSES)
        if status:
            fields["status"] = status
        title = get_page_title(page.properties)
        if title != "Untitled":
            fields["name"] = title
        return fields

    def local_fields(self, entity: Any) -> dict[str, Any]:
        return {"name": entity.name, "status": entity.status}

    async def unlinked_dependents(
        self, store: EntityStore, entity_id: str
    ) -> list[tuple[EntityType, str]]:
        milestones = await store.list_milestones(entity_id)
        return [(EntityType.MILESTONE, m.id) for m in milestones if not m.notion_page_id]
