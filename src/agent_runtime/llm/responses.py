"""
OpenAI Responses API adapter.
"""

import asyncio
import random
import time
from typing import Any, Callable

import structlog

from ..errors import EmptyResponseError, ResponseFailedError, ResponsePollTimeoutError
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
    get_field,
)
from .breaker import CacheControlBreaker, get_prompt_cache_breaker, is_prompt_cache_error
from .gate import RequestGate
from .models import get_api_name, supports_reasoning
from .retry import RetryConfig, get_status_code

logger = structlog.get_logger()

SUCCESS_STATES = frozenset({"completed", "succeeded", "success"})
PENDING_STATES = frozenset({"queued", "pending", "in_progress", "processing", "running"})
FAILED_STATES = frozenset({"failed", "cancelled", "canceled", "rejected"})

PROMPT_CACHE_RETENTION = "24h"

# Each poll is retried on its own, with a short budget
POLL_RETRY_CONFIG = RetryConfig(time_budget_ms=30_000, base_delay_ms=250, max_delay_ms=4_000)


def poll_delay_ms() -> float:
    return min(2000 + random.random() * 2000, 8000)


def _failure_message(response: Any) -> str:
    error = get_field(response, "error")
    status = str(get_field(response, "status") or "failed")
    code = get_field(error, "code") if error is not None else None
    detail = get_field(error, "message") if error is not None else None
    if not detail:
        details = get_field(response, "incomplete_details")
        detail = get_field(details, "reason") if details is not None else None
    return f"Request failed ({code or status}): {detail or status}"


class ResponsesAdapter(ProviderAdapter):
    """Adapter for the OpenAI Responses API.

    When ``prompt_cache_key`` is set, requests carry ``prompt_cache_key`` and
    ``prompt_cache_retention`` until the endpoint rejects them once; the
    process-wide ``prompt_cache`` breaker then drops them for good.
    """

    def __init__(
        self,
        model: str,
        client: Any,
        retry_config: RetryConfig | None = None,
        cache_breaker: CacheControlBreaker | None = None,
        poll_timeout_ms: int = 0,
        prompt_cache_key: str | None = None,
        prompt_cache_retention: str | None = PROMPT_CACHE_RETENTION,
        request_gate: RequestGate | None = None,
    ):
        super().__init__(
            model,
            client,
            retry_config,
            cache_breaker or get_prompt_cache_breaker(),
            request_gate,
        )
        self.poll_timeout_ms = poll_timeout_ms
        self.prompt_cache_key = prompt_cache_key
        self.prompt_cache_retention = prompt_cache_retention

    @property
    def provider_name(self) -> str:
        return "openai"

    def _with_prompt_cache(self, kwargs: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        if not self.prompt_cache_key or not self.cache_breaker.allows:
            return kwargs, False
        params = {**kwargs, "prompt_cache_key": self.prompt_cache_key}
        if self.prompt_cache_retention:
            params["prompt_cache_retention"] = self.prompt_cache_retention
        return params, True

    async def _create(self, kwargs: dict[str, Any]) -> Any:
        """Create a response, dropping the prompt cache fields once if the endpoint rejects them."""
        params, cache_hint = self._with_prompt_cache(kwargs)
        try:
            response = await self._call(lambda: self.client.responses.create(**params))
        except Exception as e:
            if not (cache_hint and is_prompt_cache_error(e)):
                raise
            logger.warning("Endpoint rejected prompt cache fields, retrying without them", error=str(e))
            self.cache_breaker.trip()
            return await self._call(lambda: self.client.responses.create(**kwargs))

        if cache_hint:
            self.cache_breaker.record_success()
        return response

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Responses API function tools."""
        return [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            }
            for tool in tools
        ]

    def _build_input(self, history: list[HistoryItem], prompt: SystemPromptParts) -> list[HistoryItem]:
        developer = [{"role": "developer", "content": prompt.static}]
        if prompt.dynamic:
            developer.append({"role": "developer", "content": prompt.dynamic})
        return developer + list(history)

    async def request(
        self,
        history: list[HistoryItem],
        prompt: SystemPromptParts,
        tools: list[ToolDefinition],
        reasoning_effort: ReasoningEffort = "high",
        is_stopping: Callable[[], bool] | None = None,
    ) -> AdapterResponse:
        """Send one Responses API request and translate its output."""
        kwargs: dict[str, Any] = {
            "model": get_api_name(self.model),
            "input": self._build_input(history, prompt),
            "tool_choice": "auto",
            "parallel_tool_calls": True,
        }
        if tools:
            kwargs["tools"] = self._convert_tools(tools)
        if supports_reasoning(self.model):
            kwargs["reasoning"] = {"effort": reasoning_effort, "summary": "auto"}
            kwargs["include"] = ["reasoning.encrypted_content"]

        response = await self._create(kwargs)
        response = await self.wait_for_completion(response, is_stopping)
        return self._parse_response(response)

    def _parse_response(self, response: Any) -> AdapterResponse:
        output = list(get_field(response, "output") or [])
        if not output:
            raise EmptyResponseError("Model returned an empty response")

        reasoning_items: list[HistoryItem] = []
        reasoning_parts: list[ReasoningPart] = []
        other_items: list[HistoryItem] = []
        parts: list[Any] = []

        for raw in output:
            item = as_dict(raw)
            item_type = item.get("type")

            if item_type == "reasoning":
                reasoning_items.append(item)
                summary = "\n".join(
                    s.get("text", "") for s in (item.get("summary") or []) if isinstance(s, dict)
                ).strip()
                if summary:
                    reasoning_parts.append(ReasoningPart(summary))
                continue

            other_items.append(item)

            if item_type == "message":
                for content in item.get("content") or []:
                    if isinstance(content, dict) and content.get("type") == "output_text" and content.get("text"):
                        parts.append(TextPart(content["text"]))
            elif item_type == "function_call":
                parts.append(ToolCallPart(ToolCall(
                    id=item.get("call_id") or item.get("id") or "",
                    name=item.get("name") or "",
                    arguments=item.get("arguments") or "",
                )))

        items = reasoning_items + other_items

        if not any(isinstance(p, TextPart) for p in parts):
            output_text = get_field(response, "output_text")
            if isinstance(output_text, str) and output_text.strip():
                parts.append(TextPart(output_text))
                items.append({
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": output_text}],
                })

        return AdapterResponse(items=items, parts=list(reasoning_parts) + parts, raw_response=response)

    async def wait_for_completion(
        self,
        response: Any,
        is_stopping: Callable[[], bool] | None = None,
    ) -> Any:
        """Poll an asynchronous response until it reaches a terminal state.

        A 404 while polling returns the last response seen instead of
        failing the run.
        """
        current = response
        started = time.monotonic()

        while True:
            status = str(get_field(current, "status") or "").lower()

            if not status or status in SUCCESS_STATES:
                return current
            if status in FAILED_STATES:
                raise ResponseFailedError(_failure_message(current))
            if status not in PENDING_STATES:
                logger.warning("Unknown response status, treating as final", status=status)
                return current

            if is_stopping is not None and is_stopping():
                logger.info("Stopped while polling response", response_id=get_field(current, "id"))
                return current

            elapsed_ms = (time.monotonic() - started) * 1000
            if self.poll_timeout_ms > 0 and elapsed_ms >= self.poll_timeout_ms:
                raise ResponsePollTimeoutError(
                    f"Response {get_field(current, 'id')} did not complete within {self.poll_timeout_ms} ms"
                )

            await asyncio.sleep(poll_delay_ms() / 1000)

            response_id = get_field(current, "id")
            try:
                current = await self._call(
                    lambda: self.client.responses.retrieve(response_id),
                    POLL_RETRY_CONFIG,
                )
            except Exception as e:
                if get_status_code(e) == 404:
                    logger.warning("Response not found while polling, using last known state", response_id=response_id)
                    return current
                raise

    def tool_result_items(self, results: list[tuple[ToolCall, Any]]) -> ShapedToolResults:
        """One function_call_output per call, plus a single-use item per inline image."""
        outputs: list[HistoryItem] = []
        transient: list[HistoryItem] = []
        for call, result in results:
            outputs.append({
                "type": "function_call_output",
                "call_id": call.id,
                "output": result.output,
            })
            if result.image is not None:
                transient.append({
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": result.image.label},
                        {"type": "input_image", "image_url": result.image.data_url, "detail": "low"},
                    ],
                })
        return ShapedToolResults(items=outputs + transient, transient=transient)

    def normalize_history(self, items: list[HistoryItem]) -> tuple[list[HistoryItem], bool]:
        return list(items), False

    def is_user_message(self, item: HistoryItem) -> bool:
        return item.get("role") == "user" and item.get("type") in (None, "message")

    def user_text_item(self, text: str) -> HistoryItem:
        return {"role": "user", "content": text}

    async def complete(self, system: str, prompt: str, max_tokens: int = 2000, model: str | None = None) -> str:
        """Run a single tool-free request and return its text."""
        name = model or self.model
        kwargs: dict[str, Any] = {
            "model": get_api_name(name),
            "input": [
                {"role": "developer", "content": system},
                {"role": "user", "content": prompt},
            ],
            "max_output_tokens": max_tokens,
        }
        if supports_reasoning(name):
            kwargs["reasoning"] = {"effort": "low"}

        response = await self._create(kwargs)
        response = await self.wait_for_completion(response)

        text = get_field(response, "output_text")
        if isinstance(text, str) and text.strip():
            return text.strip()

        chunks = []
        for raw in get_field(response, "output") or []:
            item = as_dict(raw)
            if item.get("type") == "message":
                chunks.extend(
                    c.get("text", "") for c in item.get("content") or []
                    if isinstance(c, dict) and c.get("type") == "output_text"
                )
        return "".join(chunks).strip()
