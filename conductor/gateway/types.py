"""Request and response types for the model gateway.

These are vendor-neutral: provider adapters translate them to and from
LiteLLM (OpenAI format) or the Anthropic SDK.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

ToolChoice = Literal["auto", "none"]


@dataclass
class ModelToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ModelRequest:
    """A single text-generation request.

    ``messages`` holds prior turns in Anthropic message format (string
    content or ``text`` / ``tool_use`` / ``tool_result`` blocks);
    ``prompt``, when set, is appended as a final user turn.
    """

    prompt: str = ""
    system: str | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    tools: list[dict[str, Any]] = field(default_factory=list)
    tool_choice: ToolChoice = "auto"
    json_mode: bool = False
    stream: bool = False
    max_tokens: int = 1024
    temperature: float = 0.7
    purpose: str = "general"

    def conversation(self) -> list[dict[str, Any]]:
        """Prior messages plus the prompt as a trailing user message."""
        messages = list(self.messages)
        if self.prompt:
            messages.append({"role": "user", "content": self.prompt})
        return messages

    def allows_tools(self) -> bool:
        """True when tool definitions should be sent to the provider."""
        return bool(self.tools) and self.tool_choice != "none"


@dataclass
class ModelResponse:
    """Result of a generation call."""

    text: str
    tool_calls: list[ModelToolCall] = field(default_factory=list)
    tokens_used: int = 0
    model: str = ""
    provider: str = ""
    stop_reason: str = "end_turn"
    parsed: Any = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class StreamChunk:
    """Incremental piece of a streamed response.

    The final chunk of a stream may carry only usage or tool calls.
    """

    text: str = ""
    tokens_used: int | None = None
    tool_calls: list[ModelToolCall] = field(default_factory=list)
    stop_reason: str | None = None
