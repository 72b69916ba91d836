"""Tests for the model gateway, failure classification and LiteLLM translation."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from pydantic import BaseModel

from conductor.core.exceptions import (
    ErrorCategory,
    ModelRateLimitError,
    ModelRequestError,
    ModelResponseError,
    ModelTimeoutError,
    ModelUnavailableError,
)
from conductor.core.resilience import CircuitBreakerOpen, CircuitBreakerRegistry, RetryPolicy
from conductor.gateway import (
    ModelGateway,
    ModelRequest,
    ModelResponse,
    ModelToolCall,
    classify_failure,
    extract_json,
    parse_retry_after,
)
from conductor.gateway.litellm_provider import (
    LiteLLMProvider,
    anthropic_tools_to_openai,
    openai_tool_calls_to_model,
    translate_messages,
)

NO_WAIT = RetryPolicy(max_attempts=2, initial_delay=0.0, max_delay=0.0, jitter=False)


class _StatusError(Exception):
    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(message or f"status {status_code}")
        self.status_code = status_code


class TestExtractJson:
    """Tests for extract_json."""

    def test_bare_json(self) -> None:
        """Test plain JSON parses."""
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_code_fence(self) -> None:
        """Test fenced JSON parses."""
        assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_in_prose(self) -> None:
        """Test an object surrounded by text parses."""
        assert extract_json('Here you go: {"a": [1, 2]} hope that helps') == {"a": [1, 2]}

    def test_invalid_raises(self) -> None:
        """Test unparseable output raises ModelResponseError."""
        with pytest.raises(ModelResponseError):
            extract_json("no json here")


class TestClassifyFailure:
    """Tests for classify_failure."""

    def test_rate_limit_with_header(self) -> None:
        """Test 429 maps to a rate-limit error with the header's hint."""
        response = httpx.Response(429, headers={"retry-after": "12"})
        exc = httpx.HTTPStatusError("limited", request=httpx.Request("POST", "https://x"), response=response)

        error = classify_failure(exc, "litellm")

        assert isinstance(error, ModelRateLimitError)
        assert error.retry_after == 12.0

    def test_timeout(self) -> None:
        """Test timeouts map to ModelTimeoutError."""
        assert isinstance(classify_failure(TimeoutError(), "litellm"), ModelTimeoutError)

    def test_auth_failure_is_user_error(self) -> None:
        """Test 401 is a user error that is never retried."""
        error = classify_failure(_StatusError(401, "invalid key"), "anthropic")
        assert isinstance(error, ModelRequestError)
        assert error.category == ErrorCategory.USER

    def test_server_error_is_temporary(self) -> None:
        """Test 5xx is a temporary outage."""
        error = classify_failure(_StatusError(503), "anthropic")
        assert isinstance(error, ModelUnavailableError)
        assert error.category == ErrorCategory.TEMPORARY

    def test_connection_error(self) -> None:
        """Test transport failures are temporary outages."""
        error = classify_failure(ConnectionError("reset"), "litellm")
        assert error.retryable is True

    def test_open_circuit(self) -> None:
        """Test an open breaker is a system failure carrying its wait."""
        error = classify_failure(CircuitBreakerOpen("model:litellm", retry_after=4.0), "litellm")
        assert error.category == ErrorCategory.SYSTEM
        assert error.retry_after == 4.0

    def test_parse_retry_after_from_message(self) -> None:
        """Test hints in the message text are understood."""
        assert parse_retry_after(Exception("Please try again in 1.5 seconds")) == 1.5
        assert parse_retry_after(Exception("retry after 250ms")) == 0.25
        assert parse_retry_after(Exception("nothing useful")) is None


class TestModelGateway:
    """Tests for ModelGateway."""

    @pytest.mark.asyncio
    async def test_generate_returns_response(self, gateway: ModelGateway, model_provider) -> None:
        """Test a successful call passes the response through."""
        model_provider.queue("hello")

        response = await gateway.generate(ModelRequest(prompt="hi"))

        assert response.text == "hello"
        assert model_provider.requests[0].prompt == "hi"

    @pytest.mark.asyncio
    async def test_retries_temporary_failure(self, gateway: ModelGateway, model_provider) -> None:
        """Test a 5xx is retried on the same provider."""
        model_provider.queue(_StatusError(503), "recovered")

        response = await gateway.generate(ModelRequest(prompt="hi"))

        assert response.text == "recovered"
        assert len(model_provider.requests) == 2

    @pytest.mark.asyncio
    async def test_user_failure_not_retried(self, gateway: ModelGateway, model_provider) -> None:
        """Test a 401 surfaces immediately."""
        model_provider.queue(_StatusError(401, "bad key"), "unused")

        with pytest.raises(ModelRequestError):
            await gateway.generate(ModelRequest(prompt="hi"))

        assert len(model_provider.requests) == 1

    @pytest.mark.asyncio
    async def test_fails_over_to_next_provider(self, make_model_provider) -> None:
        """Test an exhausted provider hands over to the next one."""
        primary = make_model_provider([_StatusError(503), _StatusError(503)], name="primary")
        backup = make_model_provider(["from backup"], name="backup")
        gateway = ModelGateway([primary, backup], policy=NO_WAIT, timeout=None)

        response = await gateway.generate(ModelRequest(prompt="hi"))

        assert response.text == "from backup"

    @pytest.mark.asyncio
    async def test_no_providers_unavailable(self) -> None:
        """Test a gateway without providers fails as a system error."""
        gateway = ModelGateway([])
        assert gateway.available is False

        with pytest.raises(ModelUnavailableError) as exc_info:
            await gateway.generate(ModelRequest(prompt="hi"))

        assert exc_info.value.category == ErrorCategory.SYSTEM

    @pytest.mark.asyncio
    async def test_breaker_opens_and_blocks(self, make_model_provider) -> None:
        """Test repeated outages open the provider's breaker."""
        provider = make_model_provider([_StatusError(503)] * 2, name="flaky")
        breakers = CircuitBreakerRegistry(failure_threshold=2)
        gateway = ModelGateway([provider], breakers=breakers, policy=NO_WAIT, timeout=None)

        with pytest.raises(ModelUnavailableError):
            await gateway.generate(ModelRequest(prompt="hi"))

        assert breakers.states()["model:flaky"] == "open"
        with pytest.raises(ModelUnavailableError):
            await gateway.generate(ModelRequest(prompt="hi"))
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_generate_json_validates_schema(self, gateway: ModelGateway, model_provider) -> None:
        """Test strict JSON output is parsed into the schema."""

        class Answer(BaseModel):
            value: int

        model_provider.queue('{"value": 3}')

        response = await gateway.generate_json(ModelRequest(prompt="give"), schema=Answer)

        assert response.parsed == Answer(value=3)
        sent = model_provider.requests[0]
        assert sent.json_mode is True
        assert sent.tool_choice == "none"

    @pytest.mark.asyncio
    async def test_generate_json_schema_mismatch(self, gateway: ModelGateway, model_provider) -> None:
        """Test schema failures raise ModelResponseError."""

        class Answer(BaseModel):
            value: int

        model_provider.queue('{"other": "x"}')

        with pytest.raises(ModelResponseError):
            await gateway.generate_json(ModelRequest(prompt="give"), schema=Answer)

    @pytest.mark.asyncio
    async def test_stream_assembles_response(self, gateway: ModelGateway, model_provider) -> None:
        """Test streamed chunks arrive in order and the response is assembled."""
        model_provider.queue(ModelResponse(text="one two", tokens_used=7))

        stream = gateway.stream(ModelRequest(prompt="hi"))
        chunks = [chunk async for chunk in stream]

        assert chunks == ["one ", "two "]
        assert stream.response.text == "one two "
        assert stream.response.tokens_used == 7

    @pytest.mark.asyncio
    async def test_stream_response_before_completion(self, gateway: ModelGateway) -> None:
        """Test the response is unavailable until the stream is consumed."""
        stream = gateway.stream(ModelRequest(prompt="hi"))
        with pytest.raises(RuntimeError):
            stream.response


class TestLiteLLMTranslation:
    """Tests for Anthropic-to-OpenAI translation."""

    def test_translate_messages_with_tools(self) -> None:
        """Test tool_use and tool_result blocks become OpenAI tool messages."""
        messages = [
            {"role": "user", "content": "read it"},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Reading"},
                    {"type": "tool_use", "id": "t1", "name": "file_read", "input": {"path": "a"}},
                ],
            },
            {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "data"}],
            },
        ]

        translated = translate_messages("sys", messages)

        assert translated[0] == {"role": "system", "content": "sys"}
        assert translated[1] == {"role": "user", "content": "read it"}
        assert translated[2]["tool_calls"][0]["function"] == {
            "name": "file_read",
            "arguments": '{"path": "a"}',
        }
        assert translated[3] == {"role": "tool", "tool_call_id": "t1", "content": "data"}

    def test_tools_to_openai(self) -> None:
        """Test tool definitions become function specs."""
        tools = anthropic_tools_to_openai(
            [{"name": "file_read", "description": "Read", "input_schema": {"type": "object"}}]
        )
        assert tools == [
            {
                "type": "function",
                "function": {"name": "file_read", "description": "Read", "parameters": {"type": "object"}},
            }
        ]

    def test_openai_tool_calls_to_model(self) -> None:
        """Test dict tool calls parse, bad arguments are kept raw."""
        calls = openai_tool_calls_to_model(
            [
                {"id": "a", "function": {"name": "file_read", "arguments": '{"path": "x"}'}},
                {"id": "b", "function": {"name": "file_list", "arguments": "not json"}},
            ]
        )
        assert calls == [
            ModelToolCall(id="a", name="file_read", input={"path": "x"}),
            ModelToolCall(id="b", name="file_list", input={"raw": "not json"}),
        ]

    @pytest.mark.asyncio
    async def test_generate_calls_acompletion(self) -> None:
        """Test the provider forwards tools and maps the response."""
        completion = SimpleNamespace(
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(content="done", tool_calls=None),
                    finish_reason="stop",
                )
            ],
            usage=SimpleNamespace(total_tokens=42),
            model="anthropic/claude",
        )
        provider = LiteLLMProvider("anthropic/claude", api_key="k")
        tools = [{"name": "file_read", "description": "", "input_schema": {}}]

        with patch(
            "conductor.gateway.litellm_provider.acompletion",
            new=AsyncMock(return_value=completion),
        ) as mock_completion:
            response = await provider.generate(ModelRequest(prompt="hi", tools=tools))

        assert response.text == "done"
        assert response.tokens_used == 42
        assert response.stop_reason == "end_turn"
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["api_key"] == "k"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_tool_choice_none_drops_tools(self) -> None:
        """Test synthesis requests never send tool definitions."""
        provider = LiteLLMProvider("anthropic/claude")
        kwargs = provider._build_kwargs(
            ModelRequest(prompt="hi", tools=[{"name": "file_read"}], tool_choice="none")
        )
        assert "tools" not in kwargs
