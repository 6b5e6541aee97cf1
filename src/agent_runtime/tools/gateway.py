"""
Tool execution gateway.

Parses (and if needed repairs) the model's argument JSON, runs the handler
under a CancelToken, and shapes whatever the handler returns into a
ToolResult. Tool failures never raise into the agent loop: a malformed call
or a crashing handler becomes an ``Error: ...`` / ``JSON parse error: ...``
result that the model gets to read.
"""

import copy
import json
from dataclasses import dataclass
from typing import Any

import structlog
from json_repair import repair_json

from ..events import EventSink, ToolExec, ToolResultEvent, ToolStart, discard_event
from .base import Tool, ToolResult
from .cancel import CancelToken
from .images import ToolImageProcessor, clamp_string

logger = structlog.get_logger()

TOOL_PREVIEW_LIMIT = 2_000

SCREENSHOT_TOOLS = frozenset({"screenshot_preview", "visit_url"})
IMAGE_GENERATION_TOOL = "generate_image_tool"


@dataclass
class ParsedArguments:
    """Outcome of parsing a tool call's argument JSON."""

    value: Any
    error: Exception | None = None
    repaired: bool = False
    normalized_source: str | None = None
    original_error: Exception | None = None
    repair_error: Exception | None = None


def parse_tool_arguments(args_json: str) -> ParsedArguments:
    """Parse argument JSON strictly, falling back to a structural repair."""
    if not isinstance(args_json, str) or not args_json.strip():
        return ParsedArguments(value={}, normalized_source="{}")

    try:
        return ParsedArguments(value=json.loads(args_json), normalized_source=args_json)
    except json.JSONDecodeError as e:
        original_error = e

    try:
        repaired_source = repair_json(args_json)
        if not isinstance(repaired_source, str):
            repaired_source = json.dumps(repaired_source)
        value = json.loads(repaired_source)
        if not isinstance(value, dict):
            raise ValueError("Repaired arguments are not a JSON object")
    except (ValueError, TypeError) as e:
        return ParsedArguments(
            value={},
            error=original_error,
            original_error=original_error,
            repair_error=e,
        )

    return ParsedArguments(
        value=value,
        repaired=True,
        normalized_source=repaired_source,
        original_error=original_error,
    )


def _error_info(error: Exception | None) -> dict[str, str] | None:
    if error is None:
        return None
    return {"name": type(error).__name__, "message": str(error)}


def stringify_result(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return ""


class ToolGateway:
    """Runs tool handlers and shapes their results."""

    def __init__(
        self,
        emit: EventSink | None = None,
        image_processor: ToolImageProcessor | None = None,
    ):
        self.emit = emit or discard_event
        self.image_processor = image_processor or ToolImageProcessor()

    async def execute(
        self,
        name: str,
        call_id: str,
        args_json: str,
        tool: Tool,
        cancel_token: CancelToken | None = None,
    ) -> ToolResult:
        """Execute one tool call and return its shaped result."""
        parsed = parse_tool_arguments(args_json)
        args: dict[str, Any] = {}
        if parsed.error is None and isinstance(parsed.value, dict):
            args = parsed.value

        normalized = parsed.normalized_source if parsed.normalized_source is not None else args_json

        await self.emit(ToolStart(id=call_id, name=name))
        await self.emit(ToolExec(
            id=call_id,
            name=name,
            arguments=args_json,
            normalized_arguments=normalized,
            repaired=parsed.repaired,
        ))

        if parsed.repaired and parsed.original_error is not None:
            logger.warning(
                "Automatically repaired tool arguments",
                tool_name=name,
                call_id=call_id,
                original_error=str(parsed.original_error),
                repaired_arguments=clamp_string(normalized or "", TOOL_PREVIEW_LIMIT),
                raw_arguments=clamp_string(args_json or "", TOOL_PREVIEW_LIMIT),
            )

        if parsed.error is not None:
            error_message = f"JSON parse error: {parsed.error}"
            logger.error(
                "Tool argument JSON parse error",
                tool_name=name,
                call_id=call_id,
                error=str(parsed.error),
                raw_arguments=clamp_string(args_json or "", TOOL_PREVIEW_LIMIT),
                repair_error=str(parsed.repair_error) if parsed.repair_error else None,
            )
            data = {
                "ok": False,
                "error": error_message,
                "parse_error": _error_info(parsed.error),
                "raw_arguments": args_json,
                "repair_error": _error_info(parsed.repair_error),
            }
            await self.emit(ToolResultEvent(id=call_id, name=name, result=error_message, data=data))
            return ToolResult(output=error_message, data=data, success=False, error=error_message)

        error: str | None = None
        try:
            logger.info("Executing tool", tool_name=name, call_id=call_id)
            result = await tool.execute(args, cancel_token)
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, call_id=call_id, error=str(e))
            error = str(e)
            result = f"Error: {e}"

        data, text = self._shape(name, result)

        await self.emit(ToolResultEvent(id=call_id, name=name, result=text, data=data))

        tool_result = ToolResult(
            output=text,
            data=data,
            success=error is None,
            error=error,
            repaired=parsed.repaired,
        )

        if error is None and name in SCREENSHOT_TOOLS and isinstance(data, dict) and data.get("data"):
            meta, image = await self.image_processor.process(name, data)
            tool_result.output = stringify_result(meta)
            tool_result.image = image

        return tool_result

    def _shape(self, name: str, result: Any) -> tuple[Any, str]:
        """Turn a handler's return value into (data, text)."""
        if name == IMAGE_GENERATION_TOOL and isinstance(result, dict) and isinstance(result.get("base64"), str):
            mime = result.get("mime") if isinstance(result.get("mime"), str) and result["mime"].strip() else "image/png"
            path = result.get("path") if isinstance(result.get("path"), str) else None
            message = result.get("message") if isinstance(result.get("message"), str) else ""
            error_text = result.get("error") if isinstance(result.get("error"), str) else ""
            data = {
                "ok": bool(result.get("ok")),
                "error": error_text or None,
                "path": path,
                "message": message,
                "base64": result["base64"],
                "mime": mime,
            }
            if error_text:
                text = f"Error: {error_text}"
            else:
                text = message or (f"Image saved to {path}" if path else "Image generated.")
            return data, text

        if name in SCREENSHOT_TOOLS and isinstance(result, dict) and result.get("data"):
            data = {
                "mime": result.get("mime") or "image/png",
                "data": result["data"],
                "filename": result.get("filename"),
            }
            if name == "visit_url":
                data.update(url=result.get("url"), text=result.get("text"), links=result.get("links"))
                return data, f"[Visited URL: {result.get('url') or ''}]"
            return data, "[Screenshot captured]"

        if isinstance(result, str):
            try:
                data = json.loads(result)
            except ValueError:
                data = None
            return data, result

        if isinstance(result, (dict, list)):
            return copy.deepcopy(result), stringify_result(result)

        if result is None:
            return None, ""
        return result, str(result)
