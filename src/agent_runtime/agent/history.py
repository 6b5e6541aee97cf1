"""
History helpers shared by the agent loop, compaction and the summarizer.

Works on both item shapes: Responses-style items (``function_call``,
``function_call_output``, ``reasoning``, ``input_text`` parts) and
Messages-style items (``role`` + content blocks).
"""

import json
from typing import Any, Iterable, Iterator

from ..llm.base import HistoryItem
from ..sanitize import scrub_history, scrub_item

TEXT_PART_TYPES = ("text", "input_text", "output_text")


class TransientItems:
    """Side-table of single-use history items, keyed by object identity.

    A transient item rides along with exactly one request and is then
    removed from the working history. It never reaches the store. A request
    variant replaces a stored item in exactly one request; the stored item
    itself stays in the history unchanged.
    """

    def __init__(self):
        self._ids: set[int] = set()
        self._variants: dict[int, HistoryItem] = {}

    def add(self, items: Iterable[HistoryItem]) -> None:
        for item in items:
            self._ids.add(id(item))

    def add_variants(self, pairs: Iterable[tuple[HistoryItem, HistoryItem]]) -> None:
        for stored, variant in pairs:
            self._variants[id(stored)] = variant

    def is_transient(self, item: HistoryItem) -> bool:
        return id(item) in self._ids

    def variant_for(self, item: HistoryItem) -> HistoryItem | None:
        return self._variants.get(id(item))

    def remove_from(self, history: list[HistoryItem]) -> list[HistoryItem]:
        """Drop transient items from ``history`` and forget them and all variants."""
        self._variants.clear()
        if not self._ids:
            return history
        kept = [item for item in history if id(item) not in self._ids]
        self._ids.clear()
        return kept

    def __len__(self) -> int:
        return len(self._ids) + len(self._variants)


def build_request_history(
    history: list[HistoryItem],
    transients: TransientItems,
    max_image_chars: int,
) -> list[HistoryItem]:
    """History as sent to the provider: stored images over the request cap are dropped."""
    request: list[HistoryItem] = []
    for item in history:
        variant = transients.variant_for(item)
        if variant is not None:
            request.append(variant)
        elif transients.is_transient(item):
            request.append(item)
        else:
            request.append(scrub_item(item, max_image_chars))
    return request


def build_persistable_history(
    history: list[HistoryItem],
    transients: TransientItems,
    max_image_chars: int,
) -> list[HistoryItem]:
    """History as written to the store: no transients, no large inline images."""
    kept = [item for item in history if not transients.is_transient(item)]
    return scrub_history(kept, max_image_chars)


def content_text(content: Any) -> str:
    """Join the text parts of a content value."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = []
    for part in content:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and part.get("type") in TEXT_PART_TYPES:
            texts.append(part.get("text") or "")
    return "\n".join(t for t in texts if t)


def item_text(item: HistoryItem) -> str:
    return content_text(item.get("content"))


def first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}
    return {}


def iter_item_parts(item: HistoryItem) -> Iterator[tuple[str, Any]]:
    """Yield (kind, value) for each meaningful unit of an item.

    Kinds: ``text`` (role, text), ``tool_call`` (name, args dict),
    ``tool_result`` (text), ``reasoning`` (text), ``image``.
    """
    item_type = item.get("type")

    if item_type == "function_call":
        yield "tool_call", (item.get("name") or "", _parse_arguments(item.get("arguments")))
        return
    if item_type == "function_call_output":
        output = item.get("output")
        yield "tool_result", output if isinstance(output, str) else json.dumps(output)
        return
    if item_type == "reasoning":
        summary = "\n".join(
            s.get("text", "") for s in item.get("summary") or [] if isinstance(s, dict)
        )
        yield "reasoning", summary
        return

    role = item.get("role") or "assistant"
    content = item.get("content")
    if isinstance(content, str):
        yield "text", (role, content)
        return

    for part in content or []:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type in TEXT_PART_TYPES:
            yield "text", (role, part.get("text") or "")
        elif part_type in ("input_image", "image"):
            yield "image", part
        elif part_type == "thinking":
            yield "reasoning", part.get("thinking") or ""
        elif part_type == "tool_use":
            yield "tool_call", (part.get("name") or "", _parse_arguments(part.get("input")))
        elif part_type == "tool_result":
            yield "tool_result", content_text(part.get("content"))
