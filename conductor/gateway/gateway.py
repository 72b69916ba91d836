"""Model gateway: one resilient entry point for every model call.

Every call, streaming or not, goes through the same guard:

1. The provider's circuit breaker must admit the call.
2. Failures are classified into the error taxonomy.
3. Temporary and rate-limited failures are retried with exponential
   backoff and jitter (honouring retry-after hints); user and permanent
   failures are raised at once.
4. When a provider stays unavailable the next configured provider is
   tried.
"""

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any

import pydantic

from conductor.core.exceptions import (
    ConductorException,
    ErrorCategory,
    ModelResponseError,
    ModelUnavailableError,
)
from conductor.core.resilience import (
    DEFAULT_RETRY_POLICY,
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitBreakerRegistry,
    RetryPolicy,
    retry_async,
)
from conductor.gateway.base import ModelProvider
from conductor.gateway.errors import classify_failure
from conductor.gateway.types import ModelRequest, ModelResponse, ModelToolCall, StreamChunk

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = "Respond with a single valid JSON object and nothing else."

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

# Failures that trip the breaker; user and permanent errors mean the service answered
_BREAKER_CATEGORIES = (ErrorCategory.TEMPORARY, ErrorCategory.RATE_LIMIT, ErrorCategory.SYSTEM)

# Failures that stop the call outright instead of failing over
_TERMINAL_CATEGORIES = (ErrorCategory.USER, ErrorCategory.PERMANENT)


def extract_json(text: str) -> Any:
    """Parse JSON from model output.

    Accepts bare JSON, JSON wrapped in a Markdown code fence, or a JSON
    object embedded in surrounding prose.

    Raises:
        ModelResponseError: If no JSON value can be parsed.
    """
    candidate = text.strip()
    fenced = _CODE_FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(candidate[start : end + 1])
        except json.JSONDecodeError:
            pass

    raise ModelResponseError("Model response is not valid JSON", raw=text)


class _StreamAccumulator:
    """Assembles streamed chunks into a ModelResponse."""

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.tokens_used = 0
        self.tool_calls: list[ModelToolCall] = []
        self.stop_reason = "end_turn"

    def add(self, chunk: StreamChunk) -> None:
        if chunk.text:
            self.parts.append(chunk.text)
        if chunk.tokens_used is not None:
            self.tokens_used = max(self.tokens_used, chunk.tokens_used)
        if chunk.tool_calls:
            self.tool_calls.extend(chunk.tool_calls)
        if chunk.stop_reason:
            self.stop_reason = chunk.stop_reason

    def build(self, provider: ModelProvider) -> ModelResponse:
        return ModelResponse(
            text="".join(self.parts),
            tool_calls=list(self.tool_calls),
            tokens_used=self.tokens_used,
            model=provider.model,
            provider=provider.name,
            stop_reason=self.stop_reason,
        )


class ModelStream:
    """Async iterator of text chunks; ``response`` is set once exhausted.

    Usage::

        stream = gateway.stream(request)
        async for text in stream:
            send(text)
        final = stream.response
    """

    def __init__(self, gateway: "ModelGateway", request: ModelRequest) -> None:
        self._gateway = gateway
        self._request = request
        self._response: ModelResponse | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        return self._gateway._stream_text(self._request, self)

    @property
    def response(self) -> ModelResponse:
        """Assembled response; only available after iteration completes."""
        if self._response is None:
            raise RuntimeError("Stream has not completed")
        return self._response

    @property
    def done(self) -> bool:
        return self._response is not None


class ModelGateway:
    """Uniform, resilient interface over one or more model providers."""

    def __init__(
        self,
        providers: list[ModelProvider],
        breakers: CircuitBreakerRegistry | None = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float | None = 60.0,
    ) -> None:
        """Initialize the gateway.

        Args:
            providers: Providers in preference order; later ones are
                failover targets.
            breakers: Registry the per-provider breakers are taken from.
            policy: Backoff policy for retryable failures.
            timeout: Deadline for a non-streaming call, in seconds.
        """
        self._providers = list(providers)
        self._breakers = breakers or CircuitBreakerRegistry()
        self._policy = policy
        self._timeout = timeout

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    @property
    def available(self) -> bool:
        return bool(self._providers)

    def _breaker(self, provider: ModelProvider) -> CircuitBreaker:
        return self._breakers.get(f"model:{provider.name}")

    def _admit(self, provider: ModelProvider, breaker: CircuitBreaker) -> None:
        try:
            breaker.check()
        except CircuitBreakerOpen as exc:
            raise classify_failure(exc, provider.name) from exc

    def _failed(
        self, provider: ModelProvider, breaker: CircuitBreaker, exc: Exception
    ) -> ConductorException:
        error = classify_failure(exc, provider.name)
        if error.category in _BREAKER_CATEGORIES:
            breaker.record_failure()
        else:
            breaker.record_success()
        logger.warning(
            "Model call failed",
            extra={
                "provider": provider.name,
                "error_code": error.code,
                "category": error.category.value,
            },
        )
        return error

    def _no_provider_error(self) -> ConductorException:
        return ModelUnavailableError("gateway", "no model provider configured", temporary=False)

    # -- Non-streaming --------------------------------------------------------

    async def _attempt(self, provider: ModelProvider, request: ModelRequest) -> ModelResponse:
        breaker = self._breaker(provider)
        self._admit(provider, breaker)
        try:
            if self._timeout is not None:
                response = await asyncio.wait_for(provider.generate(request), self._timeout)
            else:
                response = await provider.generate(request)
        except Exception as exc:
            raise self._failed(provider, breaker, exc) from exc
        breaker.record_success()
        return response

    async def generate(self, request: ModelRequest) -> ModelResponse:
        """Run a completion with breaker, retry and failover.

        Args:
            request: The generation request.

        Returns:
            The provider's response.

        Raises:
            ConductorException: Categorized failure once retries and
                failover are exhausted.
        """
        last_error: ConductorException | None = None
        for provider in self._providers:
            try:
                response = await retry_async(
                    lambda p=provider: self._attempt(p, request),
                    policy=self._policy,
                    operation=f"model.{provider.name}",
                )
            except ConductorException as exc:
                if exc.category in _TERMINAL_CATEGORIES:
                    raise
                last_error = exc
                logger.warning(
                    "Model provider %s exhausted, trying next provider",
                    provider.name,
                    extra={"error_code": exc.code},
                )
                continue

            logger.info(
                "Model call complete",
                extra={
                    "provider": provider.name,
                    "purpose": request.purpose,
                    "tokens_used": response.tokens_used,
                    "tool_calls": len(response.tool_calls),
                },
            )
            return response

        raise last_error or self._no_provider_error()

    async def generate_json(
        self,
        request: ModelRequest,
        schema: type[pydantic.BaseModel] | None = None,
    ) -> ModelResponse:
        """Run a strict-JSON completion.

        The parsed value (or validated *schema* instance) is stored on
        ``response.parsed``.

        Raises:
            ModelResponseError: If the output is not valid JSON or fails
                schema validation.
        """
        system = f"{request.system}\n\n{JSON_INSTRUCTION}" if request.system else JSON_INSTRUCTION
        json_request = ModelRequest(
            prompt=request.prompt,
            system=system,
            messages=request.messages,
            tools=[],
            tool_choice="none",
            json_mode=True,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            purpose=request.purpose,
        )
        response = await self.generate(json_request)
        data = extract_json(response.text)
        if schema is not None:
            try:
                data = schema.model_validate(data)
            except pydantic.ValidationError as e:
                raise ModelResponseError(
                    f"Model response failed {schema.__name__} validation: {e.error_count()} errors",
                    raw=response.text,
                ) from e
        response.parsed = data
        return response

    # -- Streaming ------------------------------------------------------------

    def stream(self, request: ModelRequest) -> ModelStream:
        """Start a streaming completion; iterate the result for text chunks."""
        return ModelStream(self, request)

    async def _stream_text(self, request: ModelRequest, sink: ModelStream) -> AsyncIterator[str]:
        last_error: ConductorException | None = None
        attempts = max(1, self._policy.max_attempts)

        for provider in self._providers:
            breaker = self._breaker(provider)
            for attempt in range(attempts):
                acc = _StreamAccumulator()
                started = False
                try:
                    self._admit(provider, breaker)
                    async for chunk in provider.stream(request):
                        acc.add(chunk)
                        if chunk.text:
                            started = True
                            yield chunk.text
                except ConductorException as exc:
                    error = exc
                except Exception as exc:
                    error = self._failed(provider, breaker, exc)
                    # Text already delivered cannot be replayed
                    if started:
                        raise error from exc
                else:
                    breaker.record_success()
                    sink._response = acc.build(provider)
                    logger.info(
                        "Model stream complete",
                        extra={
                            "provider": provider.name,
                            "purpose": request.purpose,
                            "tokens_used": acc.tokens_used,
                        },
                    )
                    return

                if error.category in _TERMINAL_CATEGORIES:
                    raise error
                last_error = error
                if not error.retryable or attempt >= attempts - 1:
                    break
                delay = self._policy.delay_for(attempt, error.retry_after)
                logger.warning(
                    "Retry %d/%d for stream %s after %s (waiting %.2fs)",
                    attempt + 1,
                    attempts - 1,
                    provider.name,
                    error.code,
                    delay,
                )
                await asyncio.sleep(delay)

        raise last_error or self._no_provider_error()

    # -- Introspection --------------------------------------------------------

    def health(self) -> dict[str, Any]:
        """Breaker snapshot per provider."""
        return {p.name: self._breaker(p).to_dict() for p in self._providers}
