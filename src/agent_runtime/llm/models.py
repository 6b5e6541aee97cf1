"""
Model catalog: which provider serves a model and what it supports.
"""

from dataclasses import dataclass
from typing import Literal

Provider = Literal["openai", "anthropic"]


@dataclass(frozen=True)
class ModelInfo:
    """Static facts about a selectable model."""

    name: str
    provider: Provider
    api_name: str
    context_window: int
    target_context_tokens: int
    reasoning: bool = False
    extended_thinking: bool = False


MODELS: dict[str, ModelInfo] = {
    "gpt-5.1-codex-max": ModelInfo(
        name="gpt-5.1-codex-max",
        provider="openai",
        api_name="gpt-5.1-codex-max",
        context_window=272_000,
        target_context_tokens=180_000,
        reasoning=True,
    ),
    "gpt-5.1": ModelInfo(
        name="gpt-5.1",
        provider="openai",
        api_name="gpt-5.1",
        context_window=272_000,
        target_context_tokens=180_000,
        reasoning=True,
    ),
    "gpt-5.2": ModelInfo(
        name="gpt-5.2",
        provider="openai",
        api_name="gpt-5.2",
        context_window=272_000,
        target_context_tokens=180_000,
        reasoning=True,
    ),
    "gpt-5-pro": ModelInfo(
        name="gpt-5-pro",
        provider="openai",
        api_name="gpt-5-pro",
        context_window=272_000,
        target_context_tokens=180_000,
        reasoning=True,
    ),
    "claude-opus-4.5": ModelInfo(
        name="claude-opus-4.5",
        provider="anthropic",
        api_name="claude-opus-4-5-20251101",
        context_window=200_000,
        target_context_tokens=100_000,
        extended_thinking=True,
    ),
    "claude-sonnet-4.5": ModelInfo(
        name="claude-sonnet-4.5",
        provider="anthropic",
        api_name="claude-sonnet-4-5-20250929",
        context_window=200_000,
        target_context_tokens=100_000,
        extended_thinking=True,
    ),
}


def get_model_provider(model: str) -> Provider:
    """Get the provider serving a model. Unknown ``claude-*`` names are Anthropic."""
    info = MODELS.get(model)
    if info is not None:
        return info.provider
    return "anthropic" if model.startswith("claude-") else "openai"


def supports_reasoning(model: str) -> bool:
    info = MODELS.get(model)
    if info is not None:
        return info.reasoning
    return model.startswith("gpt-5")


def supports_extended_thinking(model: str) -> bool:
    info = MODELS.get(model)
    return bool(info and info.extended_thinking)


def get_api_name(model: str) -> str:
    """Get the identifier sent on the wire for a model."""
    info = MODELS.get(model)
    return info.api_name if info else model
