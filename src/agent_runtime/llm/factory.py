"""
Adapter factory: picks the provider adapter for a model.
"""

from typing import TYPE_CHECKING, Any

import anthropic
import openai

from .base import ProviderAdapter
from .breaker import CacheControlBreaker
from .gate import get_request_gate
from .messages import MessagesAdapter
from .models import get_model_provider
from .responses import ResponsesAdapter

if TYPE_CHECKING:
    from ..config import Settings


def create_adapter(
    model: str,
    settings: "Settings | None" = None,
    client: Any = None,
    cache_breaker: CacheControlBreaker | None = None,
) -> ProviderAdapter:
    """Create the adapter serving ``model``.

    Provider routing:
    - claude-* and catalog Anthropic models -> MessagesAdapter (Anthropic SDK)
    - everything else -> ResponsesAdapter (OpenAI SDK)

    Both share the process-wide request gate sized by
    ``max_concurrent_requests``.
    """
    if settings is None:
        from ..config import get_settings
        settings = get_settings()

    provider = get_model_provider(model)
    request_gate = get_request_gate(settings.max_concurrent_requests)

    if provider == "anthropic":
        if client is None:
            client = anthropic.AsyncAnthropic(
                api_key=settings.api_key_for("anthropic") or None,
                base_url=settings.base_url_for("anthropic"),
            )
        return MessagesAdapter(
            model=model,
            client=client,
            retry_config=settings.retry_config(),
            cache_breaker=cache_breaker,
            request_gate=request_gate,
        )

    if client is None:
        client = openai.AsyncOpenAI(
            api_key=settings.api_key_for("openai") or None,
            base_url=settings.base_url_for("openai"),
        )
    return ResponsesAdapter(
        model=model,
        client=client,
        retry_config=settings.retry_config(),
        cache_breaker=cache_breaker,
        poll_timeout_ms=settings.response_poll_timeout_ms,
        prompt_cache_key=settings.prompt_cache_key(),
        prompt_cache_retention=settings.prompt_cache_retention,
        request_gate=request_gate,
    )
