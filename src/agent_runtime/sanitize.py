"""
Size caps for history items.

Inline base64 images above a size limit are swapped for a short text
placeholder, in both the Responses shape (``input_image`` parts) and the
Messages shape (``image`` blocks, also nested inside ``tool_result``).
"""

from typing import Any

from .tools.images import clamp_string

IMAGE_PLACEHOLDER = "[image omitted]"
PERSIST_TEXT_MAX_CHARS = 200_000


def _placeholder(filename: Any = None) -> str:
    if isinstance(filename, str) and filename:
        return f"{IMAGE_PLACEHOLDER} ({filename})"
    return IMAGE_PLACEHOLDER


def _scrub_part(part: Any, max_image_chars: int, max_text_chars: int | None) -> tuple[Any, bool]:
    if not isinstance(part, dict):
        return part, False

    part_type = part.get("type")

    if part_type == "input_image":
        url = part.get("image_url")
        if isinstance(url, dict):
            url = url.get("url")
        if isinstance(url, str) and len(url) > max_image_chars:
            return {"type": "input_text", "text": _placeholder(part.get("filename"))}, True
        return part, False

    if part_type == "image":
        source = part.get("source") if isinstance(part.get("source"), dict) else {}
        data = source.get("data")
        if isinstance(data, str) and len(data) > max_image_chars:
            return {"type": "text", "text": IMAGE_PLACEHOLDER}, True
        return part, False

    if part_type == "tool_result" and isinstance(part.get("content"), list):
        content, changed = scrub_content(part["content"], max_image_chars, max_text_chars)
        return ({**part, "content": content}, True) if changed else (part, False)

    if max_text_chars and part_type in ("text", "input_text", "output_text"):
        text = part.get("text")
        if isinstance(text, str) and len(text) > max_text_chars:
            return {**part, "text": clamp_string(text, max_text_chars)}, True

    return part, False


def scrub_content(content: Any, max_image_chars: int, max_text_chars: int | None = None) -> tuple[Any, bool]:
    """Scrub a content value (string or part list). Returns (content, changed)."""
    if isinstance(content, str):
        if max_text_chars and len(content) > max_text_chars:
            return clamp_string(content, max_text_chars), True
        return content, False
    if not isinstance(content, list):
        return content, False

    changed = False
    parts = []
    for part in content:
        new_part, part_changed = _scrub_part(part, max_image_chars, max_text_chars)
        changed = changed or part_changed
        parts.append(new_part)
    return parts, changed


def scrub_item(item: dict[str, Any], max_image_chars: int, max_text_chars: int | None = None) -> dict[str, Any]:
    """Return ``item`` with oversized images replaced; the same object if nothing changed."""
    updates: dict[str, Any] = {}

    if "content" in item:
        content, changed = scrub_content(item["content"], max_image_chars, max_text_chars)
        if changed:
            updates["content"] = content

    if max_text_chars and isinstance(item.get("output"), str) and len(item["output"]) > max_text_chars:
        updates["output"] = clamp_string(item["output"], max_text_chars)

    return {**item, **updates} if updates else item


def scrub_history(
    history: list[dict[str, Any]],
    max_image_chars: int,
    max_text_chars: int | None = None,
) -> list[dict[str, Any]]:
    """Apply scrub_item to every item of a history."""
    return [scrub_item(item, max_image_chars, max_text_chars) for item in history]
