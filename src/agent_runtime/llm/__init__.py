"""
LLM module: provider adapters and the retry engine.

Adapters:
- ResponsesAdapter: OpenAI Responses API (native SDK)
- MessagesAdapter: Anthropic Messages API (native SDK)

Adapters built by create_adapter share one process-wide RequestGate.
"""

from .base import (
    AdapterResponse,
    ProviderAdapter,
    ReasoningPart,
    SystemPromptParts,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolDefinition,
)
from .breaker import CacheControlBreaker, get_cache_control_breaker, get_prompt_cache_breaker
from .factory import create_adapter
from .gate import RequestGate, get_request_gate
from .messages import MessagesAdapter
from .models import get_model_provider
from .responses import ResponsesAdapter
from .retry import RetryConfig, retry

__all__ = [
    "AdapterResponse",
    "ProviderAdapter",
    "ReasoningPart",
    "SystemPromptParts",
    "TextPart",
    "ToolCall",
    "ToolCallPart",
    "ToolDefinition",
    "CacheControlBreaker",
    "get_cache_control_breaker",
    "get_prompt_cache_breaker",
    "create_adapter",
    "RequestGate",
    "get_request_gate",
    "MessagesAdapter",
    "ResponsesAdapter",
    "get_model_provider",
    "RetryConfig",
    "retry",
]
