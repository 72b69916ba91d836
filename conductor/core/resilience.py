"""Failure isolation for model providers and the durable store.

Three tools live here:

- ``CircuitBreaker`` stops calling a dependency that keeps failing and
  lets a bounded number of probe calls through once it has cooled down.
- ``retry_async`` re-runs transient failures with capped exponential
  backoff, honouring any ``retry_after`` hint on the raised error.
- ``GracefulDegradation`` maps a failing service to a fallback value.

Breakers are grouped in a ``CircuitBreakerRegistry`` that is built at
startup and passed to the gateway and the store, so ``/health`` can list
every breaker without module-level state.
"""

import asyncio
import enum
import logging
import random
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")
Fallback = Callable[[Exception], Any]


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """A breaker refused the call.

    ``retry_after`` is the number of seconds until the breaker will admit
    a probe, or 0 when every probe slot of the current window is taken.
    """

    def __init__(self, service_name: str, retry_after: float = 0.0) -> None:
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(f"{service_name} is short-circuited (retry in {retry_after:.1f}s)")


class CircuitBreaker:
    """Consecutive-failure breaker with bounded recovery probes.

    The breaker opens once ``failure_threshold`` failures arrive in a row.
    ``recovery_timeout`` seconds after the last failure it turns half-open
    and admits up to ``half_open_max_calls`` probes. ``success_threshold``
    probe successes close it; a single probe failure opens it again.

    Args:
        service_name: Name used in logs and in the registry.
        failure_threshold: Failures in a row that open the breaker.
        recovery_timeout: Cool-down in seconds before probing.
        success_threshold: Probe successes required to close.
        half_open_max_calls: Probes admitted per half-open window. Never
            lower than ``success_threshold``.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 3,
        half_open_max_calls: int = 3,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.half_open_max_calls = max(half_open_max_calls, success_threshold)

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._probes_admitted = 0
        self._opened_at: float | None = None
        self._lock = threading.Lock()

    def _move_to(self, state: CircuitState, reason: str) -> None:
        previous, self._state = self._state, state
        self._probe_successes = 0
        self._probes_admitted = 0
        if state == CircuitState.CLOSED:
            self._failures = 0
            self._opened_at = None
        logger.warning(
            "Circuit %s -> %s",
            previous.value,
            state.value,
            extra={"service": self.service_name, "reason": reason},
        )

    def _cooldown_left(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self.recovery_timeout - (time.monotonic() - self._opened_at)

    def _current(self) -> CircuitState:
        # Lock must be held.
        if self._state == CircuitState.OPEN and self._cooldown_left() <= 0:
            self._move_to(CircuitState.HALF_OPEN, "cool-down elapsed")
        return self._state

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current()

    def check(self) -> None:
        """Admit one call or raise ``CircuitBreakerOpen``.

        A half-open breaker counts the admitted call against its probe
        budget.
        """
        with self._lock:
            state = self._current()
            if state == CircuitState.CLOSED:
                return
            if state == CircuitState.OPEN:
                raise CircuitBreakerOpen(self.service_name, max(0.0, self._cooldown_left()))
            if self._probes_admitted >= self.half_open_max_calls:
                raise CircuitBreakerOpen(self.service_name, 0.0)
            self._probes_admitted += 1

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.HALF_OPEN:
                self._failures = 0
                return
            self._probe_successes += 1
            if self._probe_successes >= self.success_threshold:
                self._move_to(CircuitState.CLOSED, f"{self._probe_successes} probes succeeded")
            else:
                logger.debug(
                    "Probe succeeded",
                    extra={
                        "service": self.service_name,
                        "successes": self._probe_successes,
                        "needed": self.success_threshold,
                    },
                )

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._opened_at = time.monotonic()
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, "probe failed")
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._move_to(CircuitState.OPEN, f"{self._failures} failures in a row")

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func(*args, **kwargs)`` if the breaker admits it.

        Raises:
            CircuitBreakerOpen: The breaker refused the call.
        """
        self.check()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Close the breaker and forget past failures."""
        with self._lock:
            self._move_to(CircuitState.CLOSED, "manual reset")

    def to_dict(self) -> dict[str, Any]:
        state = self.state
        return {
            "service": self.service_name,
            "state": state.value,
            "consecutive_failures": self._failures,
            "failure_threshold": self.failure_threshold,
            "cooldown_remaining": (
                round(max(0.0, self._cooldown_left()), 2) if state == CircuitState.OPEN else 0.0
            ),
            "half_open_max_calls": self.half_open_max_calls,
        }


class CircuitBreakerRegistry:
    """Breakers keyed by service name, created lazily with shared settings."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, service_name: str) -> CircuitBreaker:
        with self._lock:
            if service_name not in self._breakers:
                self._breakers[service_name] = CircuitBreaker(
                    service_name,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    success_threshold=self.half_open_max_calls,
                    half_open_max_calls=self.half_open_max_calls,
                )
            return self._breakers[service_name]

    def states(self) -> dict[str, str]:
        """Service name to state value, for health reporting."""
        with self._lock:
            breakers = list(self._breakers.items())
        return {name: breaker.state.value for name, breaker in breakers}


# Network-level failures that are transient regardless of who raised them.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait in between.

    Attributes:
        max_attempts: Attempts in total, the first call included.
        initial_delay: Backoff before the first retry, in seconds.
        max_delay: Ceiling for the exponential backoff.
        multiplier: Backoff growth per attempt.
        jitter: Draw the wait uniformly from ``[0, backoff]``.
        max_retry_after: Ceiling for a server-supplied wait.
    """

    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: bool = True
    max_retry_after: float = 60.0

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Wait after failed attempt number ``attempt`` (zero-based)."""
        if retry_after:
            return min(max(retry_after, 0.0), self.max_retry_after)
        backoff = min(self.initial_delay * self.multiplier**attempt, self.max_delay)
        return random.uniform(0, backoff) if self.jitter else backoff  # noqa: S311


DEFAULT_RETRY_POLICY = RetryPolicy()
FAST_RETRY_POLICY = RetryPolicy(initial_delay=0.05, max_delay=1.0)
SLOW_RETRY_POLICY = RetryPolicy(initial_delay=1.0, max_delay=30.0)


def is_transient(exc: BaseException) -> bool:
    """Use the error's own ``retryable`` flag, else its type."""
    flag = getattr(exc, "retryable", None)
    if flag is None:
        return isinstance(exc, TRANSIENT_ERRORS)
    return bool(flag)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    should_retry: Callable[[BaseException], bool] = is_transient,
    operation: str = "",
) -> T:
    """Await ``func()`` until it succeeds or the policy gives up.

    Args:
        func: Zero-argument coroutine factory, called once per attempt.
        policy: Attempt count and backoff.
        should_retry: Decides whether an error is worth another attempt.
            Errors it rejects propagate immediately.
        operation: Label for log records.

    Returns:
        The result of the first attempt that does not raise.
    """
    label = operation or getattr(func, "__qualname__", "call")
    attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as exc:
            attempt += 1
            if attempt >= attempts or not should_retry(exc):
                if attempt > 1:
                    logger.error(
                        "Giving up on %s",
                        label,
                        extra={"attempts": attempt, "error_type": type(exc).__name__},
                    )
                raise
            wait = policy.delay_for(attempt - 1, getattr(exc, "retry_after", None))
            logger.warning(
                "Retrying %s",
                label,
                extra={
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error_type": type(exc).__name__,
                    "wait_seconds": round(wait, 3),
                },
            )
            await asyncio.sleep(wait)


class GracefulDegradation:
    """Per-service fallbacks used when a call raises.

    A fallback is called with the exception and its return value stands in
    for the failed call's result::

        degradation = GracefulDegradation()

        @degradation.register("conversation")
        def canned_reply(error: Exception) -> str:
            return "The assistant is unavailable, try again shortly."

        reply = await degradation.call_with_fallback("conversation", converse, text)
    """

    def __init__(self) -> None:
        self._fallbacks: dict[str, Fallback] = {}

    def register(self, service_name: str) -> Callable[[Fallback], Fallback]:
        """Decorator form of ``set_fallback``."""

        def decorator(fallback: Fallback) -> Fallback:
            self.set_fallback(service_name, fallback)
            return fallback

        return decorator

    def set_fallback(self, service_name: str, fallback: Fallback) -> None:
        self._fallbacks[service_name] = fallback

    def has_fallback(self, service_name: str) -> bool:
        return service_name in self._fallbacks

    async def call_with_fallback(
        self,
        service_name: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T | Any:
        """Await ``func``; on error return the service's fallback value.

        Without a registered fallback the error propagates.
        """
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            fallback = self._fallbacks.get(service_name)
            if fallback is None:
                raise
            logger.warning(
                "Falling back for %s",
                service_name,
                extra={"error_type": type(exc).__name__},
            )
            return fallback(exc)
