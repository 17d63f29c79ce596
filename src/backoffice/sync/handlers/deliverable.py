"""Deliverable pages in the Notion deliverables database."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from src.backoffice.sync.blocks import (
    bookmark_block,
    bulleted_list_block,
    callout_block,
    heading_block,
    image_block,
    link_to_page_block,
    paragraph_block,
)
from src.backoffice.sync.field_mapping import (
    DELIVERABLE_PROPERTY_MAP,
    file_extension,
    format_file_size,
    get_page_title,
    to_notion_properties,
)
from src.backoffice.sync.handlers.base import EntitySyncHandler, iso
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import EntityType, PagePayload, PageSnapshot

CATEGORY_EMOJI: dict[str, str] = {
    "Document": "📄",
    "Photo": "📷",
    "Drawing": "📐",
    "Plan": "🗺️",
    "Invoice": "🧾",
    "Contract": "📝",
    "Report": "📊",
    "Presentation": "📽️",
    "Video": "🎬",
    "Audio": "🎵",
    "Archive": "📦",
    "Other": "📎",
}

_UPDATE_FIELDS = ("name", "category", "file_type", "file_size", "download_url")


def _file_type(snapshot: dict[str, Any]) -> str | None:
    ext = file_extension(snapshot.get("name"))
    if ext is None and snapshot.get("file_url"):
        ext = file_extension(urlparse(snapshot["file_url"]).path)
    return ext


class DeliverableSyncHandler(EntitySyncHandler):
    entity_type = EntityType.DELIVERABLE

    async def load_snapshot(self, store: EntityStore, entity_id: str) -> dict[str, Any] | None:
        deliverable = await store.get(EntityType.DELIVERABLE, entity_id)
        if deliverable is None:
            return None
        project = await store.get(EntityType.PROJECT, deliverable.project_id)
        client = await store.get_client(project.client_id) if project else None

        return {
            "id": deliverable.id,
            "project_id": deliverable.project_id,
            "name": deliverable.name,
            "description": deliverable.description,
            "category": deliverable.category,
            "file_url": deliverable.file_url,
            "file_size": deliverable.file_size,
            "mime_type": deliverable.mime_type,
            "uploaded_by": deliverable.uploaded_by,
            "created_at": iso(deliverable.created_at),
            "project_name": project.name if project else None,
            "project_notion_page_id": project.notion_page_id if project else None,
            "client_name": (client.name or client.email) if client else None,
            "notion_page_id": deliverable.notion_page_id,
        }

    def _property_values(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        return {
            "name": snapshot["name"],
            "category": snapshot.get("category") or "Other",
            "file_type": _file_type(snapshot),
            "file_size": format_file_size(snapshot.get("file_size")),
            "project": snapshot.get("project_name"),
            "client": snapshot.get("client_name"),
            "uploaded_at": snapshot.get("created_at"),
            "uploaded_by": snapshot.get("uploaded_by"),
            "internal_id": snapshot["id"],
            "download_url": snapshot.get("file_url"),
        }

    def build_create_payload(self, snapshot: dict[str, Any]) -> PagePayload:
        values = self._property_values(snapshot)
        category = values["category"]
        mime_type = snapshot.get("mime_type") or ""
        file_url = snapshot.get("file_url")

        summary = f"{category} · {values['file_size']}"
        if values["file_type"]:
            summary += f" · {values['file_type']}"
        children = [callout_block(summary, CATEGORY_EMOJI.get(category, CATEGORY_EMOJI["Other"]))]

        if snapshot.get("description"):
            children.append(paragraph_block(snapshot["description"]))
        if file_url and mime_type.startswith("image/"):
            children.append(heading_block("Preview", level=3))
            children.append(image_block(file_url))
        if file_url:
            children.append(heading_block("Download", level=3))
            children.append(bookmark_block(file_url, caption=snapshot["name"]))
        if snapshot.get("project_notion_page_id"):
            children.append(heading_block("Project", level=3))
            children.append(link_to_page_block(snapshot["project_notion_page_id"]))

        children.append(heading_block("Details", level=3))
        children.append(bulleted_list_block(f"File path: {file_url or 'N/A'}"))
        children.append(bulleted_list_block(f"MIME type: {mime_type or 'unknown'}"))
        children.append(bulleted_list_block(f"Deliverable ID: {snapshot['id']}"))

        return PagePayload(
            properties=to_notion_properties(values, DELIVERABLE_PROPERTY_MAP),
            children=children,
        )

    def build_update_payload(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        values = self._property_values(snapshot)
        return to_notion_properties(
            {k: values[k] for k in _UPDATE_FIELDS}, DELIVERABLE_PROPERTY_MAP
        )

    def map_remote_fields(self, page: PageSnapshot) -> dict[str, Any]:
        title = get_page_title(page.properties)
        return {"name": title} if title != "Untitled" else {}

    def local_fields(self, entity: Any) -> dict[str, Any]:
        return {"name": entity.name}
