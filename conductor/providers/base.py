"""Capability provider contract.

A capability provider is a pluggable worker that exposes a fixed,
introspectable whitelist of actions (``file.read``, ``git.status``...).
The orchestrator and the plan guardrail depend only on this contract;
concrete providers live outside the core.
"""

import inspect
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from conductor.core.values import Value, ValueMap, coerce_map, coerce_value

logger = logging.getLogger(__name__)

# Native tool names are "<provider>_<action>"
TOOL_NAME_SEPARATOR = "_"


@dataclass
class ToolCall:
    """A single request for a provider to perform one action."""

    provider: str
    action: str
    input: ValueMap = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timeout: float | None = None

    @property
    def tool_name(self) -> str:
        """Name used when the call is exposed as a native model tool."""
        return f"{self.provider}{TOOL_NAME_SEPARATOR}{self.action}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize call to dictionary."""
        return {
            "id": self.id,
            "provider": self.provider,
            "action": self.action,
            "input": self.input,
            "timeout": self.timeout,
        }


@dataclass
class ToolResult:
    """Result of a provider executing a ToolCall.

    Captures success/failure status, output data, error information,
    and execution metrics.
    """

    success: bool
    data: Value = None
    error: str | None = None
    duration_ms: int = 0
    tokens_used: int = 0
    call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize result to dictionary.

        Returns:
            Dictionary representation suitable for JSON.
        """
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "tokens_used": self.tokens_used,
            "call_id": self.call_id,
        }


def parse_tool_name(name: str) -> tuple[str, str]:
    """Split a native tool name into (provider, action).

    Splits on the first separator so actions may themselves contain
    underscores (``file_search_replace`` -> ``file``, ``search_replace``).

    Raises:
        ValueError: If the name has no separator.
    """
    provider, sep, action = name.partition(TOOL_NAME_SEPARATOR)
    if not sep or not provider or not action:
        raise ValueError(f"Invalid tool name: {name!r}")
    return provider, action


class CapabilityProvider(ABC):
    """Abstract base class for capability providers.

    Subclasses declare ``name`` and implement ``capabilities`` and
    ``execute``.  ``validate_action`` checks the whitelist.
    """

    name: str
    description: str = ""

    @abstractmethod
    def capabilities(self) -> frozenset[str]:
        """Return the whitelist of actions this provider accepts."""

    def validate_action(self, action: str) -> bool:
        """Check whether *action* is on this provider's whitelist."""
        return action in self.capabilities()

    @abstractmethod
    async def execute(self, call: ToolCall) -> ToolResult:
        """Perform one action.

        Implementations should return a failed ToolResult for expected
        failures and may raise for unexpected ones; the executor converts
        raised exceptions into failed results.
        """


class FunctionProvider(CapabilityProvider):
    """Provider backed by a mapping of action name to callable.

    Handlers receive the call's input map as keyword arguments and may be
    sync or async.  Their return value becomes the result payload.
    """

    def __init__(
        self,
        name: str,
        handlers: dict[str, Callable[..., Any]],
        description: str = "",
    ) -> None:
        self.name = name
        self.description = description
        self._handlers = dict(handlers)
        self._capabilities = frozenset(self._handlers)

    def capabilities(self) -> frozenset[str]:
        return self._capabilities

    async def execute(self, call: ToolCall) -> ToolResult:
        handler = self._handlers.get(call.action)
        if handler is None:
            return ToolResult(
                success=False,
                error=f"Unknown action: {call.action}",
                call_id=call.id,
            )

        start = time.perf_counter()
        # Handle both sync and async handlers
        if inspect.iscoroutinefunction(handler):
            raw = await handler(**call.input)
        else:
            raw = handler(**call.input)

        return ToolResult(
            success=True,
            data=coerce_value(raw),
            duration_ms=int((time.perf_counter() - start) * 1000),
            call_id=call.id,
        )


def tool_call_from_dict(data: dict[str, Any]) -> ToolCall:
    """Build a ToolCall from a decoded JSON object."""
    return ToolCall(
        provider=str(data["provider"]),
        action=str(data["action"]),
        input=coerce_map(data.get("input")),
        id=str(data.get("id") or uuid.uuid4()),
        timeout=data.get("timeout"),
    )
