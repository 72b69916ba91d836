"""Failure classification for model provider calls.

Maps the exceptions raised by LiteLLM, the Anthropic SDK and httpx onto
conductor's error taxonomy so the retry policy can decide what to retry.
"""

import asyncio
import json
import logging
import re
from typing import Any

import anthropic
import httpx
import pydantic

from conductor.core.exceptions import (
    ConductorException,
    ModelRateLimitError,
    ModelRequestError,
    ModelResponseError,
    ModelTimeoutError,
    ModelUnavailableError,
)
from conductor.core.resilience import CircuitBreakerOpen

logger = logging.getLogger(__name__)

_RETRY_AFTER_TEXT = re.compile(
    r"(?:retry[\s_-]*after|try again in)[:\s]*(\d+(?:\.\d+)?)\s*(ms|s|sec|seconds?)?",
    re.IGNORECASE,
)

_TIMEOUT_TYPES: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    httpx.TimeoutException,
    anthropic.APITimeoutError,
)

_CONNECTION_TYPES: tuple[type[BaseException], ...] = (
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    anthropic.APIConnectionError,
)

_USER_STATUS_CODES = {400, 401, 403, 404, 413, 422}


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def _headers(exc: BaseException) -> Any:
    response = getattr(exc, "response", None)
    return getattr(response, "headers", None)


def parse_retry_after(exc: BaseException) -> float | None:
    """Extract a retry-after hint (seconds) from a provider exception.

    Looks at an explicit ``retry_after`` attribute, then ``retry-after-ms``
    / ``retry-after`` response headers, then phrases such as
    "retry after 20s" or "try again in 1.5 seconds" in the message.
    """
    explicit = getattr(exc, "retry_after", None)
    if isinstance(explicit, (int, float)) and explicit > 0:
        return float(explicit)

    headers = _headers(exc)
    if headers is not None:
        try:
            millis = headers.get("retry-after-ms")
            if millis:
                return float(millis) / 1000.0
            seconds = headers.get("retry-after")
            if seconds:
                return float(seconds)
        except (TypeError, ValueError):
            logger.debug("Unparseable retry-after header on %s", type(exc).__name__)

    match = _RETRY_AFTER_TEXT.search(str(exc))
    if match:
        value = float(match.group(1))
        unit = (match.group(2) or "s").lower()
        return value / 1000.0 if unit == "ms" else value
    return None


def classify_failure(exc: BaseException, provider: str) -> ConductorException:
    """Translate a provider exception into a categorized ConductorException.

    Args:
        exc: The exception raised by the provider call.
        provider: Provider name, recorded in the error details.

    Returns:
        A ConductorException whose category drives retry and fallback.
    """
    if isinstance(exc, ConductorException):
        return exc

    if isinstance(exc, CircuitBreakerOpen):
        error = ModelUnavailableError(provider, "circuit breaker open", temporary=False)
        error.retry_after = exc.retry_after
        return error

    if isinstance(exc, (json.JSONDecodeError, pydantic.ValidationError)):
        return ModelResponseError(f"{provider}: malformed response: {exc}")

    name = type(exc).__name__
    status = _status_code(exc)

    if status == 429 or "RateLimit" in name:
        return ModelRateLimitError(provider, retry_after=parse_retry_after(exc))

    # anthropic.APITimeoutError subclasses APIConnectionError, so check it first
    if isinstance(exc, _TIMEOUT_TYPES) or status == 408 or "Timeout" in name:
        return ModelTimeoutError(provider)

    if status is not None and status in _USER_STATUS_CODES:
        return ModelRequestError(provider, str(exc)[:300], status_code=status)

    if status is not None and status >= 500:
        return ModelUnavailableError(provider, f"provider returned {status}")

    if isinstance(exc, _CONNECTION_TYPES) or "Connection" in name or "ServiceUnavailable" in name:
        return ModelUnavailableError(provider, "connection failed")

    logger.warning(
        "Unclassified model provider failure",
        extra={"provider": provider, "exception_type": name},
    )
    return ModelUnavailableError(provider, str(exc)[:300] or name, temporary=False)
