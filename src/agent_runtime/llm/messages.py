"""
Anthropic Messages API adapter.
"""

import json
from typing import Any, Callable

import structlog

from ..tools.images import normalize_base64_input
from .base import (
    AdapterResponse,
    HistoryItem,
    ProviderAdapter,
    ReasoningEffort,
    ReasoningPart,
    ShapedToolResults,
    SystemPromptParts,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolDefinition,
    as_dict,
)
from .breaker import is_cache_control_error
from .models import get_api_name, supports_extended_thinking

logger = structlog.get_logger()

THINKING_BUDGETS: dict[str, int] = {
    "low": 1024,
    "medium": 8000,
    "high": 16000,
    "xhigh": 24000,
}

MAX_OUTPUT_TOKENS = 32_000
MIN_OUTPUT_TOKENS = 12_000
EMPTY_ASSISTANT_PLACEHOLDER = "[empty assistant message]"


def thinking_limits(effort: str) -> tuple[int, int]:
    """Get (max_tokens, budget_tokens) for a reasoning effort."""
    budget = THINKING_BUDGETS.get(effort, THINKING_BUDGETS["high"])
    max_tokens = min(MAX_OUTPUT_TOKENS, max(budget + 4096, MIN_OUTPUT_TOKENS))
    budget_tokens = min(budget, max(1024, max_tokens - 1024))
    return max_tokens, budget_tokens


def sanitize_assistant_blocks(blocks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Trim text blocks and drop empty ones; never return an empty list."""
    cleaned = []
    for block in blocks:
        if block.get("type") == "text":
            text = (block.get("text") or "").strip()
            if not text:
                continue
            block = {**block, "text": text}
        cleaned.append(block)
    if not cleaned:
        cleaned.append({"type": "text", "text": EMPTY_ASSISTANT_PLACEHOLDER})
    return cleaned


def _image_block(data_url: str) -> dict[str, Any] | None:
    b64, mime = normalize_base64_input(data_url)
    if not b64:
        return None
    return {"type": "image", "source": {"type": "base64", "media_type": mime, "data": b64}}


def _convert_part(part: Any) -> dict[str, Any] | None:
    """Convert one Responses-shaped content part to a Messages block."""
    if isinstance(part, str):
        return {"type": "text", "text": part}
    if not isinstance(part, dict):
        return None
    part_type = part.get("type")
    if part_type in ("input_text", "output_text"):
        return {"type": "text", "text": part.get("text") or ""}
    if part_type == "input_image":
        image_url = part.get("image_url")
        if isinstance(image_url, dict):
            image_url = image_url.get("url")
        return _image_block(image_url or "") if isinstance(image_url, str) else None
    return part


class MessagesAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API with extended thinking."""

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _system_blocks(self, prompt: SystemPromptParts, cache_hint: bool) -> list[dict[str, Any]]:
        static_block: dict[str, Any] = {"type": "text", "text": prompt.static}
        if cache_hint:
            static_block["cache_control"] = {"type": "ephemeral"}
        blocks = [static_block]
        if prompt.dynamic:
            blocks.append({"type": "text", "text": prompt.dynamic})
        return blocks

    async def _create(self, kwargs: dict[str, Any], prompt: SystemPromptParts) -> Any:
        """Create a message, dropping the cache hint once if the endpoint rejects it."""
        cache_hint = self.cache_breaker.allows
        kwargs["system"] = self._system_blocks(prompt, cache_hint)
        try:
            response = await self._call(lambda: self.client.messages.create(**kwargs))
        except Exception as e:
            if not (cache_hint and is_cache_control_error(e)):
                raise
            logger.warning("Endpoint rejected prompt cache hint, retrying without it", error=str(e))
            self.cache_breaker.trip()
            kwargs["system"] = self._system_blocks(prompt, False)
            return await self._call(lambda: self.client.messages.create(**kwargs))

        if cache_hint:
            self.cache_breaker.record_success()
        return response

    async def request(
        self,
        history: list[HistoryItem],
        prompt: SystemPromptParts,
        tools: list[ToolDefinition],
        reasoning_effort: ReasoningEffort = "high",
        is_stopping: Callable[[], bool] | None = None,
    ) -> AdapterResponse:
        """Send one Messages API request and translate its content blocks."""
        max_tokens, budget_tokens = thinking_limits(reasoning_effort)
        kwargs: dict[str, Any] = {
            "model": get_api_name(self.model),
            "max_tokens": max_tokens,
            "messages": list(history),
        }
        if tools:
            kwargs["tools"] = self._convert_tools(tools)
        if supports_extended_thinking(self.model):
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget_tokens}

        response = await self._create(kwargs, prompt)

        blocks = [as_dict(block) for block in (response.content or [])]
        parts: list[Any] = []
        for block in blocks:
            block_type = block.get("type")
            if block_type == "thinking" and block.get("thinking"):
                parts.append(ReasoningPart(block["thinking"]))
            elif block_type == "text" and (block.get("text") or "").strip():
                parts.append(TextPart(block["text"]))
            elif block_type == "tool_use":
                parts.append(ToolCallPart(ToolCall(
                    id=block.get("id") or "",
                    name=block.get("name") or "",
                    arguments=json.dumps(block.get("input") or {}),
                )))

        message = {"role": "assistant", "content": sanitize_assistant_blocks(blocks)}
        return AdapterResponse(items=[message], parts=parts, raw_response=response)

    def tool_result_items(self, results: list[tuple[ToolCall, Any]]) -> ShapedToolResults:
        """All results of one turn go into a single user message.

        The stored message carries text only. When a result has an inline
        image, a variant with the image block inside its ``tool_result`` is
        sent with the next request only.
        """
        blocks = []
        request_blocks = []
        for call, result in results:
            block: dict[str, Any] = {"type": "tool_result", "tool_use_id": call.id, "content": result.output}
            if not result.success:
                block["is_error"] = True
            blocks.append(block)

            if result.image is not None:
                block = {**block, "content": [
                    {"type": "text", "text": result.output or result.image.label},
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": result.image.mime,
                            "data": result.image.base64_data,
                        },
                    },
                ]}
            request_blocks.append(block)

        if not blocks:
            return ShapedToolResults()
        message = {"role": "user", "content": blocks}
        if request_blocks == blocks:
            return ShapedToolResults(items=[message])
        return ShapedToolResults(
            items=[message],
            request_variants=[(message, {"role": "user", "content": request_blocks})],
        )

    def normalize_history(self, items: list[HistoryItem]) -> tuple[list[HistoryItem], bool]:
        """Convert Responses-shaped items into Messages-shaped ones."""
        normalized: list[HistoryItem] = []
        changed = False

        for item in items:
            item_type = item.get("type")

            if item_type == "reasoning":
                changed = True
                continue

            if item_type == "function_call_output":
                changed = True
                normalized.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": item.get("call_id"),
                        "content": item.get("output") if isinstance(item.get("output"), str) else json.dumps(item.get("output")),
                    }],
                })
                continue

            if item_type == "function_call":
                changed = True
                try:
                    tool_input = json.loads(item.get("arguments") or "{}")
                except json.JSONDecodeError:
                    tool_input = {}
                normalized.append({
                    "role": "assistant",
                    "content": [{
                        "type": "tool_use",
                        "id": item.get("call_id"),
                        "name": item.get("name"),
                        "input": tool_input if isinstance(tool_input, dict) else {},
                    }],
                })
                continue

            content = item.get("content")
            role = item.get("role") or ("assistant" if item_type == "message" else "user")
            if isinstance(content, list):
                blocks = [b for b in (_convert_part(p) for p in content) if b is not None]
                if blocks != content or set(item) - {"role", "content"}:
                    changed = True
                normalized.append({"role": role, "content": blocks})
            elif set(item) - {"role", "content"}:
                changed = True
                normalized.append({"role": role, "content": content or ""})
            else:
                normalized.append(item)

        return normalized, changed

    def is_user_message(self, item: HistoryItem) -> bool:
        if item.get("role") != "user":
            return False
        content = item.get("content")
        if isinstance(content, list) and content:
            return not all(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)
        return True

    def user_text_item(self, text: str) -> HistoryItem:
        return {"role": "user", "content": text}

    async def complete(self, system: str, prompt: str, max_tokens: int = 2000, model: str | None = None) -> str:
        """Run a single tool-free request and return its text."""
        response = await self._call(
            lambda: self.client.messages.create(
                model=get_api_name(model or self.model),
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        )
        texts = []
        for block in response.content or []:
            block = as_dict(block)
            if block.get("type") == "text":
                texts.append(block.get("text") or "")
        return "".join(texts).strip()
