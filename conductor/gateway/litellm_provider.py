"""LiteLLM model provider.

Requests are built in Anthropic's message and tool shapes, which is what
the rest of conductor speaks. LiteLLM wants the OpenAI shapes, so this
module converts on the way in and back on the way out.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from litellm import acompletion

from conductor.gateway.base import ModelProvider
from conductor.gateway.types import ModelRequest, ModelResponse, ModelToolCall, StreamChunk

logger = logging.getLogger(__name__)

_FINISH_TO_STOP = {None: "end_turn", "stop": "end_turn", "tool_calls": "tool_use"}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a LiteLLM object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _result_text(content: Any) -> str:
    if isinstance(content, list):
        return "\n".join(part.get("text", "") for part in content if isinstance(part, dict))
    return str(content)


def _as_openai_call(block: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": block["id"],
        "type": "function",
        "function": {"name": block["name"], "arguments": json.dumps(block["input"])},
    }


def _split_blocks(role: str, blocks: list[Any]) -> list[dict[str, Any]]:
    """Turn one multi-block message into one or more OpenAI messages."""
    texts: list[str] = []
    calls: list[dict[str, Any]] = []
    results: list[dict[str, Any]] = []
    for block in blocks:
        kind = block.get("type") if isinstance(block, dict) else None
        if kind == "tool_use":
            calls.append(_as_openai_call(block))
        elif kind == "tool_result":
            results.append(
                {
                    "role": "tool",
                    "tool_call_id": block.get("tool_use_id", ""),
                    "content": _result_text(block.get("content", "")),
                }
            )
        elif kind == "text":
            texts.append(block.get("text", ""))
        else:
            texts.append(str(_field(block, "text", block)))

    joined = "\n".join(texts)
    if calls:
        return [{"role": "assistant", "content": joined or None, "tool_calls": calls}]
    if results:
        return results
    return [{"role": role, "content": joined}]


def translate_messages(
    system_prompt: str | None,
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Convert a system prompt plus Anthropic messages to OpenAI messages.

    ``tool_use`` blocks end up as assistant ``tool_calls``; every
    ``tool_result`` block becomes its own ``role: "tool"`` message.
    """
    out: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}] if system_prompt else []
    for message in messages:
        role = message.get("role", "user")
        body = message.get("content")
        if isinstance(body, list):
            out.extend(_split_blocks(role, body))
        elif isinstance(body, str):
            out.append({"role": role, "content": body})
        else:
            out.append({"role": role, "content": "" if body is None else str(body)})
    return out


def anthropic_tools_to_openai(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Wrap each ``{name, description, input_schema}`` as an OpenAI function spec."""
    specs = []
    for tool in tools:
        function = {
            "name": tool["name"],
            "description": tool.get("description", ""),
            "parameters": tool.get("input_schema", {}),
        }
        specs.append({"type": "function", "function": function})
    return specs


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, str):
        decoded = raw
    else:
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
    return decoded if isinstance(decoded, dict) else {"value": decoded}


def openai_tool_calls_to_model(tool_calls: list[Any] | None) -> list[ModelToolCall]:
    """Map OpenAI tool calls (objects or dicts) to ``ModelToolCall``."""
    calls: list[ModelToolCall] = []
    for call in tool_calls or []:
        function = _field(call, "function", {}) or {}
        calls.append(
            ModelToolCall(
                id=_field(call, "id", "") or "",
                name=_field(function, "name", "") or "",
                input=_decode_arguments(_field(function, "arguments", "{}")),
            )
        )
    return calls


def _usage_tokens(usage: Any) -> int:
    if usage is None:
        return 0
    total = getattr(usage, "total_tokens", None)
    if total:
        return int(total)
    prompt = getattr(usage, "prompt_tokens", 0) or 0
    completion = getattr(usage, "completion_tokens", 0) or 0
    return int(prompt + completion)


def _stop_reason(finish_reason: str | None) -> str:
    return _FINISH_TO_STOP.get(finish_reason, finish_reason or "end_turn")


class LiteLLMProvider(ModelProvider):
    """ModelProvider backed by ``litellm.acompletion``."""

    name = "litellm"

    def __init__(self, model: str, api_key: str = "", timeout: float = 60.0) -> None:
        """Initialize the provider.

        Args:
            model: LiteLLM model string, e.g. ``anthropic/claude-sonnet-4-20250514``.
            api_key: API key forwarded to LiteLLM (empty uses its env lookup).
            timeout: Per-call timeout in seconds.
        """
        self.model = model
        self._api_key = api_key
        self._timeout = timeout

    def _build_kwargs(self, request: ModelRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": translate_messages(request.system, request.conversation()),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "timeout": self._timeout,
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if request.allows_tools():
            kwargs["tools"] = anthropic_tools_to_openai(request.tools)
            kwargs["tool_choice"] = request.tool_choice
        return kwargs

    async def generate(self, request: ModelRequest) -> ModelResponse:
        kwargs = self._build_kwargs(request)

        logger.debug(
            "Calling model via LiteLLM",
            extra={
                "model": self.model,
                "message_count": len(kwargs["messages"]),
                "tool_count": len(kwargs.get("tools", [])),
                "purpose": request.purpose,
            },
        )

        response = await acompletion(**kwargs)

        choice = response.choices[0]
        message = choice.message
        return ModelResponse(
            text=str(message.content or ""),
            tool_calls=openai_tool_calls_to_model(getattr(message, "tool_calls", None)),
            tokens_used=_usage_tokens(getattr(response, "usage", None)),
            model=getattr(response, "model", None) or self.model,
            provider=self.name,
            stop_reason=_stop_reason(getattr(choice, "finish_reason", None)),
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        kwargs = self._build_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        logger.debug(
            "Streaming model response via LiteLLM",
            extra={"model": self.model, "purpose": request.purpose},
        )

        response = await acompletion(**kwargs)

        # Tool call fragments arrive keyed by index and must be stitched together
        partial_calls: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None

        async for chunk in response:
            usage = getattr(chunk, "usage", None)
            if usage is not None:
                yield StreamChunk(tokens_used=_usage_tokens(usage))

            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            finish_reason = getattr(choice, "finish_reason", None) or finish_reason
            delta = choice.delta
            if delta is None:
                continue

            for tc in getattr(delta, "tool_calls", None) or []:
                slot = partial_calls.setdefault(
                    getattr(tc, "index", 0) or 0, {"id": "", "name": "", "arguments": ""}
                )
                if getattr(tc, "id", None):
                    slot["id"] = tc.id
                func = getattr(tc, "function", None)
                if func is not None:
                    slot["name"] += getattr(func, "name", None) or ""
                    slot["arguments"] += getattr(func, "arguments", None) or ""

            if delta.content:
                yield StreamChunk(text=delta.content)

        tool_calls = openai_tool_calls_to_model(
            [
                {"id": slot["id"], "function": {"name": slot["name"], "arguments": slot["arguments"] or "{}"}}
                for _, slot in sorted(partial_calls.items())
            ]
        )
        yield StreamChunk(tool_calls=tool_calls, stop_reason=_stop_reason(finish_reason))
