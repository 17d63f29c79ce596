"""Lead pages in the Notion leads database."""

from __future__ import annotations

from typing import Any

from src.backoffice.sync.blocks import (
    bulleted_list_block,
    callout_block,
    divider_block,
    heading_block,
    paragraph_block,
    to_do_block,
)
from src.backoffice.sync.field_mapping import (
    BUDGET_DISPLAY,
    LEAD_INBOUND_STATUSES,
    LEAD_PROPERTY_MAP,
    TIMELINE_DISPLAY,
    from_notion_properties,
    get_page_title,
    normalize_remote_status,
    tier_name,
    to_notion_properties,
)
from src.backoffice.sync.handlers.base import EntitySyncHandler, iso
from src.backoffice.sync.repository import EntityStore
from src.backoffice.sync.schemas import EntityType, PagePayload, PageSnapshot

STATUS_EMOJI: dict[str, str] = {
    "NEW": "🆕",
    "QUALIFIED": "✅",
    "NEEDS_REVIEW": "👀",
    "CONVERTED": "🎉",
    "CLOSED": "❌",
}

_UPDATE_FIELDS = ("name", "status", "tier", "budget", "timeline")


class LeadSyncHandler(EntitySyncHandler):
    entity_type = EntityType.LEAD

    async def load_snapshot(self, store: EntityStore, entity_id: str) -> dict[str, Any] | None:
        lead = await store.get(EntityType.LEAD, entity_id)
        if lead is None:
            return None
        return {
            "id": lead.id,
            "name": lead.name,
            "email": lead.email,
            "phone": lead.phone,
            "project_address": lead.project_address,
            "project_type": lead.project_type,
            "budget_range": lead.budget_range,
            "timeline": lead.timeline,
            "status": lead.status,
            "recommended_tier": lead.recommended_tier,
            "has_survey": lead.has_survey,
            "has_drawings": lead.has_drawings,
            "routing_reason": lead.routing_reason,
            "message": lead.message,
            "created_at": iso(lead.created_at),
            "notion_page_id": lead.notion_page_id,
        }

    def _property_values(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        budget = snapshot.get("budget_range")
        timeline = snapshot.get("timeline")
        return {
            "name": snapshot.get("name") or snapshot["email"],
            "email": snapshot.get("email"),
            "status": snapshot.get("status"),
            "tier": tier_name(snapshot.get("recommended_tier")),
            "budget": BUDGET_DISPLAY.get(budget, budget) if budget else None,
            "timeline": TIMELINE_DISPLAY.get(timeline, timeline) if timeline else None,
            "project_type": snapshot.get("project_type"),
            "address": snapshot.get("project_address"),
            "has_survey": snapshot.get("has_survey", False),
            "has_drawings": snapshot.get("has_drawings", False),
            "created_at": snapshot.get("created_at"),
            "internal_id": snapshot["id"],
        }

    def build_create_payload(self, snapshot: dict[str, Any]) -> PagePayload:
        values = self._property_values(snapshot)
        status = snapshot.get("status") or "NEW"

        children = [
            callout_block(f"Status: {status}", STATUS_EMOJI.get(status, "📋")),
            heading_block("Contact Information"),
            bulleted_list_block(f"Email: {snapshot['email']}"),
            bulleted_list_block(f"Phone: {snapshot.get('phone') or 'Not provided'}"),
            heading_block("Project Details"),
            bulleted_list_block(f"Address: {snapshot.get('project_address') or 'Not provided'}"),
            bulleted_list_block(f"Type: {snapshot.get('project_type') or 'Not specified'}"),
            bulleted_list_block(f"Budget: {values['budget'] or 'Not specified'}"),
            bulleted_list_block(f"Timeline: {values['timeline'] or 'Not specified'}"),
            heading_block("Assets"),
            to_do_block("Survey provided", checked=bool(snapshot.get("has_survey"))),
            to_do_block("Drawings provided", checked=bool(snapshot.get("has_drawings"))),
        ]

        if values["tier"]:
            children.append(divider_block())
            children.append(callout_block(f"Recommended tier: {values['tier']}", "🌱"))
        if snapshot.get("routing_reason"):
            children.append(heading_block("Routing Notes", level=3))
            children.append(paragraph_block(snapshot["routing_reason"]))
        if snapshot.get("message"):
            children.append(heading_block("Message", level=3))
            children.append(paragraph_block(snapshot["message"]))

        return PagePayload(
            properties=to_notion_properties(values, LEAD_PROPERTY_MAP),
            children=children,
        )

    def build_update_payload(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        values = self._property_values(snapshot)
        return to_notion_properties(
            {k: values[k] for k in _UPDATE_FIELDS}, LEAD_PROPERTY_MAP
        )

    def map_remote_fields(self, page: PageSnapshot) -> dict[str, Any]:
        data = from_notion_properties(page.properties, LEAD_PROPERTY_MAP)
        fields: dict[str, Any] = {}
        status = normalize_remote_status(data.get("status"), LEAD_INBOUND_STATUSES)
        if status:
            fields["status"] = status
        title = get_page_title(page.properties)
        if title != "Untitled":
            fields["name"] = title
        return fields

    def local_fields(self, entity: Any) -> dict[str, Any]:
        return {"name": entity.name or entity.email, "status": entity.status}
