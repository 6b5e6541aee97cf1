"""
Circuit breakers for the optional prompt-cache hints.

Some Anthropic-compatible endpoints reject ``cache_control`` on system
blocks, and some OpenAI-compatible endpoints reject ``prompt_cache_key`` /
``prompt_cache_retention``. The first validation error that names the field
trips the breaker and every later request in the process omits the hint.
"""

import structlog

from .retry import get_status_code

logger = structlog.get_logger()

CACHE_CONTROL_SPELLINGS = ("cache_control", "cache control", "cache-control")
PROMPT_CACHE_SPELLINGS = ("prompt_cache_key", "prompt_cache_retention", "prompt cache")

_VALIDATION_WORDS = (
    "unknown",
    "unrecognized",
    "unexpected",
    "invalid",
    "additional properties",
    "not allowed",
)


class CacheControlBreaker:
    """Tracks whether a cache hint field is accepted upstream."""

    def __init__(self, name: str = "cache_control"):
        self.name = name
        self._supported: bool | None = None

    @property
    def allows(self) -> bool:
        """Check whether requests may still carry the hint."""
        return self._supported is not False

    @property
    def confirmed(self) -> bool:
        return self._supported is True

    def record_success(self) -> None:
        """Record that a request carrying the hint was accepted."""
        if self._supported is None:
            self._supported = True

    def trip(self) -> None:
        """Disable the hint for the rest of the process."""
        if self._supported is not False:
            logger.warning("Disabling prompt cache hint", breaker=self.name)
        self._supported = False

    def reset(self) -> None:
        self._supported = None


def _error_message(error: BaseException) -> str:
    parts = [str(error)]
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error")
        if isinstance(inner, dict) and isinstance(inner.get("message"), str):
            parts.append(inner["message"])
        elif isinstance(body.get("message"), str):
            parts.append(body["message"])
    return " ".join(parts).lower()


def is_field_validation_error(error: BaseException, spellings: tuple[str, ...]) -> bool:
    """Check if an error is a 400/422 validation failure naming one of ``spellings``."""
    status = get_status_code(error)
    if status is not None and status not in (400, 422):
        return False

    message = _error_message(error)
    if not any(spelling in message for spelling in spellings):
        return False
    return any(word in message for word in _VALIDATION_WORDS)


def is_cache_control_error(error: BaseException) -> bool:
    """Check if an error is a validation failure caused by ``cache_control``."""
    return is_field_validation_error(error, CACHE_CONTROL_SPELLINGS)


def is_prompt_cache_error(error: BaseException) -> bool:
    """Check if an error is a validation failure caused by the prompt cache fields."""
    return is_field_validation_error(error, PROMPT_CACHE_SPELLINGS)


_default_breaker: CacheControlBreaker | None = None
_prompt_cache_breaker: CacheControlBreaker | None = None


def get_cache_control_breaker() -> CacheControlBreaker:
    """Get or create the process-wide ``cache_control`` breaker."""
    global _default_breaker
    if _default_breaker is None:
        _default_breaker = CacheControlBreaker()
    return _default_breaker


def get_prompt_cache_breaker() -> CacheControlBreaker:
    """Get or create the process-wide breaker for the Responses prompt cache fields."""
    global _prompt_cache_breaker
    if _prompt_cache_breaker is None:
        _prompt_cache_breaker = CacheControlBreaker("prompt_cache")
    return _prompt_cache_breaker
