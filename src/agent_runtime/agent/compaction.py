"""
Conversation Compaction - turn-based context summarization.

When the estimated size of a history goes over the model's target budget,
the oldest turns are replaced by one synthetic user message carrying a
summary of them, while the most recent turns are kept verbatim.

Key features:
- Turns are the unit of summarization (a tool exchange never gets split)
- A summary from an earlier compaction is merged, not summarized twice
- The first line of every summarized user message is kept verbatim
- Progressive fallback: LLM summary, then a model-free summary, then no-op
"""

from dataclasses import dataclass, field
from typing import Callable

import structlog

from ..llm.base import HistoryItem
from ..llm.models import MODELS
from .history import first_line, item_text
from .summarizer import Summarizer, fallback_summary
from .tokens import estimate_history_tokens

logger = structlog.get_logger()

SUMMARY_MARKER_PREFIX = "[CONVERSATION SUMMARY - Previous context has been summarized to save space]\n\n"
ORIGINAL_REQUESTS_HEADER = "\n\nOriginal requests:\n"
SYSTEM_INIT_TEXT = "[system initialization]"

DEFAULT_KEEP_RECENT_TURNS = 20

PROVIDER_LIMITS = {
    "openai": (272_000, 180_000),
    "anthropic": (200_000, 100_000),
}


@dataclass
class CompactionConfig:
    """Configuration for conversation compaction."""

    max_context_tokens: int = 272_000
    target_context_tokens: int = 180_000
    keep_recent_turns: int = DEFAULT_KEEP_RECENT_TURNS
    summary_model: str | None = None
    enabled: bool = True


def default_compaction_config(provider: str, model: str | None = None) -> CompactionConfig:
    """Get the compaction budget for a provider, refined by the model catalog."""
    max_tokens, target = PROVIDER_LIMITS.get(provider, PROVIDER_LIMITS["openai"])
    info = MODELS.get(model or "")
    if info is not None:
        max_tokens, target = info.context_window, info.target_context_tokens
    return CompactionConfig(max_context_tokens=max_tokens, target_context_tokens=target)


@dataclass
class Turn:
    """One user message and everything that follows it up to the next one."""

    items: list[HistoryItem] = field(default_factory=list)
    synthetic: bool = False

    @property
    def user_text(self) -> str:
        if self.synthetic or not self.items:
            return SYSTEM_INIT_TEXT
        return item_text(self.items[0])


@dataclass
class CompactionResult:
    """Result of a compaction operation."""

    compacted: bool
    history: list[HistoryItem]
    turns_summarized: int = 0
    original_tokens: int = 0
    new_tokens: int = 0
    summary: str = ""
    used_fallback: bool = False


def default_is_user_message(item: HistoryItem) -> bool:
    """Turn boundary test that understands both item shapes."""
    if item.get("role") != "user" or item.get("type") not in (None, "message"):
        return False
    content = item.get("content")
    if isinstance(content, list) and content:
        return not all(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)
    return True


def segment_into_turns(
    history: list[HistoryItem],
    is_user_message: Callable[[HistoryItem], bool] = default_is_user_message,
) -> list[Turn]:
    """Split a history into turns. Items before the first user message form a synthetic turn."""
    turns: list[Turn] = []
    current: Turn | None = None

    for item in history:
        if is_user_message(item):
            current = Turn(items=[item])
            turns.append(current)
        elif current is None:
            current = Turn(items=[item], synthetic=True)
            turns.append(current)
        else:
            current.items.append(item)

    return turns


def flatten_turns(turns: list[Turn]) -> list[HistoryItem]:
    return [item for turn in turns for item in turn.items]


def is_summary_turn(turn: Turn) -> bool:
    return not turn.synthetic and turn.user_text.startswith(SUMMARY_MARKER_PREFIX)


def _split_summary(text: str) -> tuple[str, list[str]]:
    """Split a summary message into (summary body, original request lines)."""
    body = text[len(SUMMARY_MARKER_PREFIX):]
    summary, _, requests_block = body.partition(ORIGINAL_REQUESTS_HEADER)
    requests = [
        line[2:] for line in requests_block.splitlines() if line.startswith("- ")
    ]
    return summary.strip(), requests


def build_summary_text(summary: str, requests: list[str]) -> str:
    text = SUMMARY_MARKER_PREFIX + summary.strip()
    if requests:
        text += ORIGINAL_REQUESTS_HEADER + "\n".join(f"- {r}" for r in requests)
    return text


def needs_compaction(
    history: list[HistoryItem],
    config: CompactionConfig,
    provider: str = "openai",
) -> bool:
    """Check if the history is over the compaction target."""
    if not config.enabled or not history:
        return False
    return estimate_history_tokens(history, provider).total > config.target_context_tokens


async def compact(
    history: list[HistoryItem],
    config: CompactionConfig,
    summarizer: Summarizer | None,
    provider: str = "openai",
    is_user_message: Callable[[HistoryItem], bool] = default_is_user_message,
    fallback: Callable[[list[Turn], str | None], str] = fallback_summary,
) -> CompactionResult:
    """Replace all but the most recent turns with a summary turn.

    Args:
        history: Full history, in the provider's native shape
        config: Budget and number of recent turns to keep
        summarizer: Async LLM summarizer; None goes straight to the fallback
        provider: Provider name, for token estimation
        is_user_message: Turn boundary test of the provider
        fallback: Model-free summarizer used when the summarizer fails

    Returns:
        The compaction result; ``history`` is unchanged unless ``compacted``
    """
    original_tokens = estimate_history_tokens(history, provider).total
    unchanged = CompactionResult(
        compacted=False,
        history=history,
        original_tokens=original_tokens,
        new_tokens=original_tokens,
    )

    if not config.enabled:
        return unchanged

    turns = segment_into_turns(history, is_user_message)

    existing_summary: str | None = None
    requests: list[str] = []
    if turns and is_summary_turn(turns[0]):
        existing_summary, requests = _split_summary(turns[0].user_text)
        turns = turns[1:]

    keep = max(0, config.keep_recent_turns)
    if len(turns) <= keep:
        return unchanged

    to_summarize = turns[:-keep] if keep else turns
    kept = turns[-keep:] if keep else []

    logger.info(
        "Starting conversation compaction",
        provider=provider,
        turns=len(turns),
        turns_to_summarize=len(to_summarize),
        estimated_tokens=original_tokens,
        target=config.target_context_tokens,
    )

    used_fallback = False
    summary = ""
    if summarizer is not None:
        try:
            summary = await summarizer(to_summarize, existing_summary)
        except Exception as e:
            logger.warning("Summarizer failed, using fallback", error=str(e))

    if not summary:
        used_fallback = True
        try:
            summary = fallback(to_summarize, existing_summary)
        except Exception as e:
            logger.error("Fallback summarizer failed, keeping history", error=str(e))
            return unchanged

    for turn in to_summarize:
        if turn.synthetic:
            continue
        line = first_line(turn.user_text)
        if line:
            requests.append(line)

    summary_item: HistoryItem = {"role": "user", "content": build_summary_text(summary, requests)}
    new_history = [summary_item] + flatten_turns(kept)
    new_tokens = estimate_history_tokens(new_history, provider).total

    if new_tokens >= original_tokens:
        logger.info(
            "Compaction did not reduce size, keeping history",
            original_tokens=original_tokens,
            new_tokens=new_tokens,
        )
        return unchanged

    logger.info(
        "Compaction complete",
        turns_summarized=len(to_summarize),
        original_tokens=original_tokens,
        new_tokens=new_tokens,
        used_fallback=used_fallback,
    )

    return CompactionResult(
        compacted=True,
        history=new_history,
        turns_summarized=len(to_summarize),
        original_tokens=original_tokens,
        new_tokens=new_tokens,
        summary=summary,
        used_fallback=used_fallback,
    )
