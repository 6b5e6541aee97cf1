"""
Token estimation for conversation histories.

A character-ratio heuristic, not a tokenizer: text costs one token per 3.5
characters, each item and tool exchange pays a fixed overhead, and images
cost a flat amount per provider.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any

from ..llm.base import HistoryItem
from .history import iter_item_parts

CHARS_PER_TOKEN = 3.5
MESSAGE_OVERHEAD = 4
TOOL_CALL_OVERHEAD = 10
TOOL_RESULT_OVERHEAD = 8

OPENAI_IMAGE_TOKENS = 765
OPENAI_LOW_DETAIL_IMAGE_TOKENS = 85
ANTHROPIC_IMAGE_TOKENS = 1000

MAX_WALK_DEPTH = 4
MAX_WALK_ITEMS = 64


@dataclass
class ContextMetrics:
    """Estimated token usage of a history, by category."""

    total: int = 0
    user: int = 0
    assistant: int = 0
    tool_call: int = 0
    tool_result: int = 0
    reasoning: int = 0

    def add(self, category: str, tokens: int) -> None:
        setattr(self, category, getattr(self, category) + tokens)
        self.total += tokens

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def estimate_text_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _walk_chars(value: Any, depth: int = 0) -> int:
    """Approximate the serialized size of a JSON-ish value."""
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value)
    if isinstance(value, (int, float, bool)):
        return len(str(value))
    if depth >= MAX_WALK_DEPTH:
        return 0

    if isinstance(value, dict):
        entries = list(value.items())
        chars = sum(len(str(k)) + _walk_chars(v, depth + 1) for k, v in entries[:MAX_WALK_ITEMS])
    elif isinstance(value, (list, tuple)):
        entries = list(value)
        chars = sum(_walk_chars(v, depth + 1) for v in entries[:MAX_WALK_ITEMS])
    else:
        return len(str(value))

    if len(entries) > MAX_WALK_ITEMS:
        chars += len(f"[+{len(entries) - MAX_WALK_ITEMS} more]")
    return chars


def estimate_value_tokens(value: Any) -> int:
    return math.ceil(_walk_chars(value) / CHARS_PER_TOKEN)


def _image_tokens(part: dict[str, Any], provider: str) -> int:
    if provider == "anthropic":
        return ANTHROPIC_IMAGE_TOKENS
    if part.get("detail") == "low":
        return OPENAI_LOW_DETAIL_IMAGE_TOKENS
    return OPENAI_IMAGE_TOKENS


def _add_item(metrics: ContextMetrics, item: HistoryItem, provider: str) -> None:
    role = item.get("role")
    text_category = "user" if role in ("user", "developer", "system") else "assistant"
    parts = list(iter_item_parts(item))

    only_tool_results = bool(parts) and all(kind == "tool_result" for kind, _ in parts)
    overhead_category = "tool_result" if only_tool_results else text_category
    if item.get("type") == "function_call":
        overhead_category = "tool_call"
    elif item.get("type") == "reasoning":
        overhead_category = "reasoning"

    if item.get("type") not in ("function_call", "function_call_output"):
        metrics.add(overhead_category, MESSAGE_OVERHEAD)

    for kind, value in parts:
        if kind == "text":
            metrics.add(text_category, estimate_text_tokens(value[1]))
        elif kind == "image":
            metrics.add(text_category, _image_tokens(value, provider))
        elif kind == "reasoning":
            metrics.add("reasoning", estimate_text_tokens(value))
        elif kind == "tool_call":
            name, args = value
            metrics.add("tool_call", TOOL_CALL_OVERHEAD + estimate_text_tokens(name) + estimate_value_tokens(args))
        elif kind == "tool_result":
            metrics.add("tool_result", TOOL_RESULT_OVERHEAD + estimate_text_tokens(value))

    # Images inside a tool_result block
    if provider == "anthropic" and isinstance(item.get("content"), list):
        for block in item["content"]:
            if isinstance(block, dict) and block.get("type") == "tool_result" and isinstance(block.get("content"), list):
                images = sum(1 for b in block["content"] if isinstance(b, dict) and b.get("type") == "image")
                if images:
                    metrics.add("tool_result", images * ANTHROPIC_IMAGE_TOKENS)


def estimate_history_tokens(history: list[HistoryItem], provider: str = "openai") -> ContextMetrics:
    """Estimate token usage of a whole history."""
    metrics = ContextMetrics()
    for item in history:
        _add_item(metrics, item, provider)
    return metrics


def estimate_item_tokens(item: HistoryItem, provider: str = "openai") -> int:
    metrics = ContextMetrics()
    _add_item(metrics, item, provider)
    return metrics.total
