"""
Configuration management for agent-runtime

Uses pydantic-settings for environment variable parsing and validation.
"""

import hashlib
import tempfile
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Literal

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .llm.retry import RetryConfig
from .tools.images import ImageConfig

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "agent-runtime"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "127.0.0.1"
    port: int = 8080

    # LLM Providers
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openai_base_url: str | None = Field(default=None, description="Override for the OpenAI endpoint")
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    anthropic_base_url: str | None = Field(default=None, description="Override for the Anthropic endpoint")

    # Default model settings
    default_model: str = "gpt-5.1"
    default_reasoning_effort: Literal["low", "medium", "high", "xhigh"] = "high"

    # Retry engine
    retry_budget_ms: int = Field(default=5 * 60 * 1000, description="Wall-clock budget for one retried call")
    retry_base_delay_ms: int = Field(default=1_000, description="Base delay of the exponential backoff")
    retry_max_delay_ms: int = Field(default=60_000, description="Cap for a single backoff delay")
    rate_limit_floor_ms: int = Field(default=5_000, description="Minimum delay after a rate limit without hints")
    rate_limit_max_ms: int = Field(default=60_000, description="Cap for a single rate-limit delay")
    response_poll_timeout_ms: int = Field(default=0, description="Max time to poll an async response (0 = no limit)")
    max_concurrent_requests: int = Field(default=1, ge=0, description="Model requests in flight at once (0 = no limit)")

    # Prompt caching (Responses API)
    prompt_cache_enabled: bool = True
    prompt_cache_retention: str = "24h"
    prompt_cache_seed: str = Field(default="", description="Seed of the prompt cache key; generated and stored when empty")
    prompt_cache_seed_file: Path = Field(
        default=Path("./data/prompt_cache_seed"),
        description="Where the generated prompt cache seed is kept",
    )

    # Tool results
    tool_image_max_dim: int = Field(default=768, description="Longest side of images kept from tools")
    tool_image_max_bytes: int = Field(default=350_000, description="Max encoded bytes of an image sent to the model")
    tool_image_downscale: bool = True
    tool_text_max_chars: int = Field(default=4_000, description="Max page text kept from visit_url")
    tool_link_max: int = Field(default=20, description="Max links kept from visit_url")
    tool_image_dir: Path = Field(
        default=Path(tempfile.gettempdir()) / "agent-runtime" / "tool-images",
        description="Where tool screenshots are written",
    )
    request_image_max_chars: int | None = Field(
        default=None,
        description="Max data URL length inlined into a request (defaults to 1.6x the byte cap)",
    )
    persist_image_max_chars: int = Field(default=20_000, description="Max data URL length kept in stored history")

    # Runtime manager
    max_buffer_events: int = Field(default=500, description="Replay buffer size per run")
    compaction_check_interval: int = Field(default=5, description="Loop iterations between compaction checks")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/agent_runtime.db",
        description="Database connection URL"
    )

    @field_validator("max_buffer_events")
    @classmethod
    def floor_buffer_size(cls, v: int) -> int:
        return max(50, v)

    @property
    def effective_request_image_max_chars(self) -> int:
        """Get the inline image limit for outgoing requests."""
        if self.request_image_max_chars is not None:
            return self.request_image_max_chars
        return max(250_000, round(self.tool_image_max_bytes * 1.6))

    def retry_config(self) -> RetryConfig:
        """Build the retry engine configuration."""
        return RetryConfig(
            time_budget_ms=self.retry_budget_ms,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            rate_limit_floor_ms=self.rate_limit_floor_ms,
            rate_limit_max_ms=self.rate_limit_max_ms,
        )

    def image_config(self) -> ImageConfig:
        """Build the tool image processing configuration."""
        return ImageConfig(
            max_dim=self.tool_image_max_dim,
            max_bytes=self.tool_image_max_bytes,
            downscale=self.tool_image_downscale,
            text_max_chars=self.tool_text_max_chars,
            link_max=self.tool_link_max,
            image_dir=self.tool_image_dir,
            request_max_chars=self.effective_request_image_max_chars,
        )

    def prompt_cache_key(self) -> str | None:
        """Get the stable prompt cache key, or None when prompt caching is off."""
        if not self.prompt_cache_enabled:
            return None
        seed = self.prompt_cache_seed.strip() or load_prompt_cache_seed(self.prompt_cache_seed_file)
        return hashlib.sha256(f"agent-runtime:{seed}".encode("utf-8")).hexdigest()

    def api_key_for(self, provider: str) -> str:
        """Get the API key for a provider."""
        api_key_map = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }
        return api_key_map.get(provider, "")

    def base_url_for(self, provider: str) -> str | None:
        """Get the endpoint override for a provider."""
        base_url_map = {
            "openai": self.openai_base_url,
            "anthropic": self.anthropic_base_url,
        }
        return base_url_map.get(provider)


@lru_cache
def load_prompt_cache_seed(path: Path) -> str:
    """Read the prompt cache seed, creating it on first use."""
    try:
        if path.exists():
            seed = path.read_text(encoding="utf-8").strip()
            if seed:
                return seed
        seed = uuid.uuid4().hex
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(seed, encoding="utf-8")
        return seed
    except OSError as e:
        logger.warning("Could not persist prompt cache seed", path=str(path), error=str(e))
        return uuid.uuid4().hex


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
