"""Anthropic SDK model provider.

Talks to the Messages API directly through ``anthropic.AsyncAnthropic``;
requests are already in Anthropic format so no translation is needed.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

import anthropic

from conductor.gateway.base import ModelProvider
from conductor.gateway.types import ModelRequest, ModelResponse, ModelToolCall, StreamChunk

logger = logging.getLogger(__name__)


def _strip_router_prefix(model: str) -> str:
    # "anthropic/claude-..." is LiteLLM's routing form; the SDK wants the bare id
    return model.split("/", 1)[1] if model.startswith("anthropic/") else model


def _usage_tokens(usage: Any) -> int:
    if usage is None:
        return 0
    return int((getattr(usage, "input_tokens", 0) or 0) + (getattr(usage, "output_tokens", 0) or 0))


def _parse_content(content: Any) -> tuple[str, list[ModelToolCall]]:
    text_parts: list[str] = []
    tool_calls: list[ModelToolCall] = []
    for block in content or []:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            text_parts.append(getattr(block, "text", ""))
        elif block_type == "tool_use":
            tool_input = getattr(block, "input", None)
            tool_calls.append(
                ModelToolCall(
                    id=getattr(block, "id", ""),
                    name=getattr(block, "name", ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
    return "".join(text_parts), tool_calls


class AnthropicProvider(ModelProvider):
    """ModelProvider backed by the Anthropic Messages API."""

    name = "anthropic"

    def __init__(
        self,
        model: str,
        api_key: str,
        timeout: float = 60.0,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            model: Model id (a LiteLLM-style ``anthropic/`` prefix is stripped).
            api_key: Anthropic API key.
            timeout: Per-call timeout in seconds.
            client: Pre-built client (tests inject a mock here).
        """
        self.model = _strip_router_prefix(model)
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    def _build_kwargs(self, request: ModelRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": request.conversation(),
        }
        if request.system:
            kwargs["system"] = request.system
        if request.allows_tools():
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = {"type": request.tool_choice}
        return kwargs

    async def generate(self, request: ModelRequest) -> ModelResponse:
        kwargs = self._build_kwargs(request)

        logger.debug(
            "Calling model via Anthropic SDK",
            extra={
                "model": self.model,
                "message_count": len(kwargs["messages"]),
                "tool_count": len(kwargs.get("tools", [])),
                "purpose": request.purpose,
            },
        )

        response = await self._client.messages.create(**kwargs)
        text, tool_calls = _parse_content(response.content)
        return ModelResponse(
            text=text,
            tool_calls=tool_calls,
            tokens_used=_usage_tokens(getattr(response, "usage", None)),
            model=getattr(response, "model", None) or self.model,
            provider=self.name,
            stop_reason=getattr(response, "stop_reason", None) or "end_turn",
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        kwargs = self._build_kwargs(request)

        logger.debug(
            "Streaming model response via Anthropic SDK",
            extra={"model": self.model, "purpose": request.purpose},
        )

        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if text:
                    yield StreamChunk(text=text)
            final = await stream.get_final_message()

        _, tool_calls = _parse_content(final.content)
        yield StreamChunk(
            tokens_used=_usage_tokens(getattr(final, "usage", None)),
            tool_calls=tool_calls,
            stop_reason=getattr(final, "stop_reason", None) or "end_turn",
        )
