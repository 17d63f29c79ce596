"""Notion property mappings and conversions for every synced entity type.

Defines:
- LEAD_PROPERTY_MAP / PROJECT_PROPERTY_MAP / DELIVERABLE_PROPERTY_MAP: internal
  field name -> Notion property name and type.
- Display tables for tiers, budgets, timelines.
- Inbound status whitelists (remote select value -> local enum value).
- to_notion_properties(): internal dict -> Notion API ``properties``.
- from_notion_properties(): Notion ``properties`` -> internal dict.
- get_page_title(): first title property's plain text, or "Untitled".
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


# ── Property Maps ──────────────────────────────────────────────────────────

LEAD_PROPERTY_MAP: dict[str, dict[str, str]] = {
    "name": {"notion_name": "Name", "type": "title"},
    "email": {"notion_name": "Email", "type": "email"},
    "status": {"notion_name": "Status", "type": "select"},
    "tier": {"notion_name": "Recommended Tier", "type": "select"},
    "budget": {"notion_name": "Budget", "type": "select"},
    "timeline": {"notion_name": "Timeline", "type": "select"},
    "project_type": {"notion_name": "Project Type", "type": "select"},
    "address": {"notion_name": "Address", "type": "rich_text"},
    "has_survey": {"notion_name": "Has Survey", "type": "checkbox"},
    "has_drawings": {"notion_name": "Has Drawings", "type": "checkbox"},
    "created_at": {"notion_name": "Created At", "type": "date"},
    "internal_id": {"notion_name": "Internal ID", "type": "rich_text"},
}

PROJECT_PROPERTY_MAP: dict[str, dict[str, str]] = {
    "name": {"notion_name": "Name", "type": "title"},
    "status": {"notion_name": "Status", "type": "select"},
    "tier": {"notion_name": "Tier", "type": "select"},
    "progress": {"notion_name": "Progress", "type": "number"},
    "payment_status": {"notion_name": "Payment Status", "type": "select"},
    "address": {"notion_name": "Address", "type": "rich_text"},
    "client": {"notion_name": "Client", "type": "rich_text"},
    "client_email": {"notion_name": "Client Email", "type": "email"},
    "created_at": {"notion_name": "Created At", "type": "date"},
    "internal_id": {"notion_name": "Internal ID", "type": "rich_text"},
}

DELIVERABLE_PROPERTY_MAP: dict[str, dict[str, str]] = {
    "name": {"notion_name": "Name", "type": "title"},
    "category": {"notion_name": "Category", "type": "select"},
    "file_type": {"notion_name": "File Type", "type": "select"},
    "file_size": {"notion_name": "File Size", "type": "rich_text"},
    "project": {"notion_name": "Project", "type": "rich_text"},
    "client": {"notion_name": "Client", "type": "rich_text"},
    "uploaded_at": {"notion_name": "Uploaded At", "type": "date"},
    "uploaded_by": {"notion_name": "Uploaded By", "type": "rich_text"},
    "internal_id": {"notion_name": "Internal ID", "type": "rich_text"},
    "download_url": {"notion_name": "Download URL", "type": "url"},
}


# ── Display Tables ─────────────────────────────────────────────────────────

TIER_NAMES: dict[int, str] = {
    1: "Seedling",
    2: "Sprout",
    3: "Canopy",
    4: "Legacy",
}

BUDGET_DISPLAY: dict[str, str] = {
    "under_5k": "Under $5,000",
    "5k_15k": "$5,000 - $15,000",
    "15k_50k": "$15,000 - $50,000",
    "50k_plus": "$50,000+",
    "not_sure": "Not Sure",
}

TIMELINE_DISPLAY: dict[str, str] = {
    "asap": "ASAP",
    "1_3_months": "1-3 Months",
    "3_6_months": "3-6 Months",
    "6_12_months": "6-12 Months",
    "planning": "Just Planning",
}


def tier_name(tier: int | None) -> str | None:
    if tier is None:
        return None
    return TIER_NAMES.get(tier, f"Tier {tier}")


def format_file_size(size: int | None) -> str:
    """Human readable byte count, e.g. ``1.5 MB``."""
    if not size:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def file_extension(name: str | None) -> str | None:
    if not name or "." not in name:
        return None
    return name.rsplit(".", 1)[-1].upper()


# ── Inbound Status Whitelists ──────────────────────────────────────────────
# Remote select values accepted as local status changes. Anything else is
# ignored. INTAKE is set only by the intake flow, never from Notion.

PROJECT_INBOUND_STATUSES: frozenset[str] = frozenset(
    {"ONBOARDING", "IN_PROGRESS", "AWAITING_FEEDBACK", "REVISIONS", "DELIVERED", "CLOSED"}
)

LEAD_INBOUND_STATUSES: frozenset[str] = frozenset(
    {"NEW", "QUALIFIED", "NEEDS_REVIEW", "CONVERTED", "CLOSED"}
)


def normalize_remote_status(value: str | None, allowed: frozenset[str]) -> str | None:
    """Map a Notion select value (``In Progress`` or ``IN_PROGRESS``) to a local enum value."""
    if not value:
        return None
    key = value.strip().upper().replace(" ", "_").replace("-", "_")
    return key if key in allowed else None


# ── Conversion Functions ───────────────────────────────────────────────────


def _rich_text(value: Any) -> list[dict[str, Any]]:
    # Notion caps a single text object at 2000 characters
    return [{"text": {"content": str(value)[:2000]}}]


def to_notion_properties(
    data: dict[str, Any],
    property_map: dict[str, dict[str, str]],
) -> dict[str, Any]:
    """Convert internal field dict to Notion API properties format.

    Fields missing from the map, or with a None value, are skipped so that
    partial update payloads only touch the properties they name.

    Args:
        data: Dict of internal field names to values.
        property_map: Entity property map (e.g. PROJECT_PROPERTY_MAP).

    Returns:
        Dict suitable for the Notion API ``properties`` parameter.
    """
    properties: dict[str, Any] = {}

    for field_name, value in data.items():
        if field_name not in property_map or value is None:
            continue

        mapping = property_map[field_name]
        notion_name = mapping["notion_name"]
        prop_type = mapping["type"]

        if prop_type == "title":
            properties[notion_name] = {"title": _rich_text(value)}
        elif prop_type == "rich_text":
            properties[notion_name] = {"rich_text": _rich_text(value)}
        elif prop_type == "number":
            properties[notion_name] = {"number": float(value)}
        elif prop_type == "select":
            properties[notion_name] = {"select": {"name": str(value)}}
        elif prop_type == "date":
            date_str = value.isoformat() if isinstance(value, datetime) else str(value)
            properties[notion_name] = {"date": {"start": date_str}}
        elif prop_type == "email":
            properties[notion_name] = {"email": str(value)}
        elif prop_type == "url":
            properties[notion_name] = {"url": str(value)}
        elif prop_type == "checkbox":
            properties[notion_name] = {"checkbox": bool(value)}

    return properties


def from_notion_properties(
    properties: dict[str, Any],
    property_map: dict[str, dict[str, str]],
) -> dict[str, Any]:
    """Convert Notion page properties to internal field dict.

    Args:
        properties: Notion page ``properties`` dict.
        property_map: Entity property map.

    Returns:
        Dict of internal field names to extracted values (empty values omitted).
    """
    reverse_map: dict[str, tuple[str, str]] = {
        mapping["notion_name"]: (internal_name, mapping["type"])
        for internal_name, mapping in property_map.items()
    }

    result: dict[str, Any] = {}
    for notion_name, prop_value in properties.items():
        if notion_name not in reverse_map:
            continue
        internal_name, prop_type = reverse_map[notion_name]
        extracted = _extract_notion_value(prop_value, prop_type)
        if extracted is not None:
            result[internal_name] = extracted

    return result


def _plain_text(items: list[dict[str, Any]]) -> str | None:
    if not items:
        return None
    parts = []
    for item in items:
        text = item.get("plain_text")
        if text is None:
            text = item.get("text", {}).get("content", "")
        parts.append(text)
    return "".join(parts)


def _extract_notion_value(prop_value: dict[str, Any], prop_type: str) -> Any:
    """Extract a Python value from a Notion property value dict."""
    if prop_type in ("title", "rich_text"):
        return _plain_text(prop_value.get(prop_type, []))

    if prop_type == "select":
        select_val = prop_value.get("select")
        return select_val.get("name") if select_val else None

    if prop_type == "date":
        date_val = prop_value.get("date")
        return date_val.get("start") if date_val else None

    if prop_type in ("number", "email", "url", "checkbox"):
        return prop_value.get(prop_type)

    return None


def get_page_title(properties: dict[str, Any]) -> str:
    """Return the plain text of the first title-typed property, or "Untitled"."""
    for prop_value in properties.values():
        if isinstance(prop_value, dict) and prop_value.get("type") == "title":
            return _plain_text(prop_value.get("title", [])) or "Untitled"
    # Fallback for payloads without ``type`` keys (e.g. echoed create payloads)
    for prop_value in properties.values():
        if isinstance(prop_value, dict) and "title" in prop_value:
            return _plain_text(prop_value["title"]) or "Untitled"
    return "Untitled"
