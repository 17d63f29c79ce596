"""Notion block builders used for page content.

Small constructors for the block types the entity handlers render: headings,
paragraphs, bullets, to-dos, callouts, dividers, image previews, bookmarks
and page links.
"""

from __future__ import annotations

from typing import Any


def _text(content: str, **annotations: Any) -> dict:
    item: dict[str, Any] = {"type": "text", "text": {"content": content[:2000]}}
    if annotations:
        item["annotations"] = annotations
    return item


def heading_block(text: str, level: int = 2) -> dict:
    """Create a Notion heading block.

    Args:
        text: Heading text content.
        level: Heading level (1, 2, or 3).

    Returns:
        Notion heading block dict.
    """
    key = f"heading_{level}"
    return {
        "object": "block",
        "type": key,
        key: {"rich_text": [_text(text)]},
    }


def paragraph_block(text: str, *, italic: bool = False) -> dict:
    annotations = {"italic": True, "color": "gray"} if italic else {}
    return {
        "object": "block",
        "type": "paragraph",
        "paragraph": {"rich_text": [_text(text, **annotations)]},
    }


def bulleted_list_block(text: str) -> dict:
    return {
        "object": "block",
        "type": "bulleted_list_item",
        "bulleted_list_item": {"rich_text": [_text(text)]},
    }


def to_do_block(text: str, checked: bool = False, suffix: str | None = None) -> dict:
    """Create a to-do block; ``suffix`` renders as gray trailing text."""
    rich_text = [_text(text)]
    if suffix:
        rich_text.append(_text(suffix, color="gray"))
    return {
        "object": "block",
        "type": "to_do",
        "to_do": {"rich_text": rich_text, "checked": checked},
    }


def callout_block(text: str, emoji: str = "💡") -> dict:
    return {
        "object": "block",
        "type": "callout",
        "callout": {
            "icon": {"type": "emoji", "emoji": emoji},
            "rich_text": [_text(text)],
        },
    }


def divider_block() -> dict:
    return {"object": "block", "type": "divider", "divider": {}}


def image_block(url: str) -> dict:
    return {
        "object": "block",
        "type": "image",
        "image": {"type": "external", "external": {"url": url}},
    }


def bookmark_block(url: str, caption: str | None = None) -> dict:
    bookmark: dict[str, Any] = {"url": url}
    if caption:
        bookmark["caption"] = [_text(caption)]
    return {"object": "block", "type": "bookmark", "bookmark": bookmark}


def link_to_page_block(page_id: str) -> dict:
    return {
        "object": "block",
        "type": "link_to_page",
        "link_to_page": {"type": "page_id", "page_id": page_id},
    }


def block_plain_text(block: dict) -> str:
    """Concatenate the plain text of a block's rich_text, whatever its type."""
    body = block.get(block.get("type", ""), {}) or {}
    parts = []
    for item in body.get("rich_text", []):
        text = item.get("plain_text")
        if text is None:
            text = item.get("text", {}).get("content", "")
        parts.append(text)
    return "".join(parts)
