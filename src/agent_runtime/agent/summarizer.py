"""
Summarizers used by compaction.

The LLM summarizer asks the session's own provider for a structured recap.
The fallback summarizer needs no model at all: it keeps a turn count and
snippets of what the user asked for.
"""

from typing import TYPE_CHECKING, Awaitable, Callable

import structlog

from ..llm.base import ProviderAdapter
from .history import iter_item_parts

if TYPE_CHECKING:
    from .compaction import Turn

logger = structlog.get_logger()

SUMMARY_MAX_TOKENS = 2000

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer for a coding assistant. \
Produce a concise summary of the conversation turns you are given so the \
assistant can continue the work without the original messages.

Structure the summary with these sections:
## User Goals
What the user is trying to accomplish, in their own terms.
## Actions Taken
Tools run and changes made, with their outcomes.
## Files Modified
Paths of files created or edited.
## Current State
Where the work stands right now, including open errors.
## Important Context
Decisions, constraints, preferences and facts that must not be forgotten.

Be factual and terse. Do not invent details."""

IMPORTANT_ARG_FIELDS = ("filePath", "path", "command", "url", "query", "pattern", "text")
MAX_FILES_LISTED = 20

Summarizer = Callable[[list["Turn"], str | None], Awaitable[str]]


def _important_args(args: dict) -> str:
    fields = []
    for key in IMPORTANT_ARG_FIELDS:
        value = args.get(key)
        if isinstance(value, str) and value:
            fields.append(f"{key}={value[:200]}")
    return " ".join(fields)


def format_turns_for_summary(turns: list["Turn"]) -> str:
    """Render turns as plain text for the summarizer prompt."""
    sections = []
    for index, turn in enumerate(turns, start=1):
        lines = [f"--- Turn {index} ---", f"USER: {turn.user_text[:500]}"]
        tools_used: list[str] = []
        files: list[str] = []

        for item in turn.items[1:] if not turn.synthetic else turn.items:
            for kind, value in iter_item_parts(item):
                if kind == "text":
                    role, text = value
                    if text.strip():
                        prefix = "USER" if role == "user" else "ASSISTANT"
                        lines.append(f"{prefix}: {text[:800]}")
                elif kind == "tool_call":
                    name, args = value
                    if name and name not in tools_used:
                        tools_used.append(name)
                    for key in ("filePath", "path"):
                        path = args.get(key)
                        if isinstance(path, str) and path and path not in files:
                            files.append(path)
                    detail = _important_args(args)
                    lines.append(f"[Tool Call: {name}] {detail}".rstrip())
                elif kind == "tool_result":
                    lines.append(f"[Tool Result] {value[:300]}")
                elif kind == "reasoning" and value.strip():
                    lines.append(f"[Thinking] {value[:300]}")

        if tools_used:
            lines.append(f"[Tools used: {', '.join(tools_used)}]")
        if files:
            lines.append(f"[Files involved: {', '.join(files[:MAX_FILES_LISTED])}]")
        sections.append("\n".join(lines))

    return "\n\n".join(sections)


def build_summary_prompt(turns: list["Turn"], existing_summary: str | None) -> str:
    prompt = "Please summarize the following conversation turns:\n\n"
    if existing_summary:
        prompt += (
            "[Previous Summary to incorporate]\n"
            f"{existing_summary}\n\n"
            "[New turns to add to summary]\n"
        )
    return prompt + format_turns_for_summary(turns)


def create_llm_summarizer(adapter: ProviderAdapter, model: str | None = None) -> Summarizer:
    """Build a summarizer that calls the session's provider."""

    async def summarize(turns: list["Turn"], existing_summary: str | None) -> str:
        prompt = build_summary_prompt(turns, existing_summary)
        summary = await adapter.complete(
            SUMMARY_SYSTEM_PROMPT,
            prompt,
            max_tokens=SUMMARY_MAX_TOKENS,
            model=model,
        )
        if not summary or not summary.strip():
            raise ValueError("Summarizer returned an empty summary")
        logger.debug("LLM summary generated", provider=adapter.provider_name, chars=len(summary))
        return summary.strip()

    return summarize


def fallback_summary(turns: list["Turn"], existing_summary: str | None = None) -> str:
    """Summarize without a model: turn count plus user request snippets."""
    parts = []
    if existing_summary:
        parts.append(f"[Previous context preserved]\n{existing_summary[:1000]}\n")

    parts.append(f"[Summarized {len(turns)} conversation turns]")

    requests = [
        turn.user_text.strip()
        for turn in turns
        if not turn.synthetic and turn.user_text.strip()
    ]
    if requests:
        parts.append("\nUser requests in summarized turns:")
        for request in requests[:10]:
            parts.append(f"- {request[:100]}")
        if len(requests) > 10:
            parts.append(f"... and {len(requests) - 10} more requests")

    return "\n".join(parts)
