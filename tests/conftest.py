"""Shared fixtures for conductor tests."""

from collections.abc import AsyncIterator
from typing import Any

import pytest

from conductor.core.resilience import CircuitBreakerRegistry, RetryPolicy
from conductor.gateway import ModelGateway, ModelProvider, ModelRequest, ModelResponse, StreamChunk
from conductor.providers import FunctionProvider, ProviderRegistry
from conductor.storage import InMemoryStore

NO_WAIT = RetryPolicy(max_attempts=2, initial_delay=0.0, max_delay=0.0, jitter=False)


class ScriptedModelProvider(ModelProvider):
    """Model provider that replays queued responses or exceptions.

    Every request is recorded in ``requests`` so tests can assert on
    what was sent.
    """

    def __init__(self, responses: list[Any] | None = None, name: str = "scripted") -> None:
        self.name = name
        self.model = f"{name}-model"
        self.responses: list[Any] = list(responses or [])
        self.requests: list[ModelRequest] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def _next(self) -> ModelResponse:
        if not self.responses:
            raise AssertionError("ScriptedModelProvider ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return ModelResponse(text=item, tokens_used=10, model=self.model, provider=self.name)
        return item

    async def generate(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        return self._next()

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        response = self._next()
        for word in response.text.split(" "):
            yield StreamChunk(text=word + " ")
        yield StreamChunk(
            tokens_used=response.tokens_used,
            tool_calls=response.tool_calls,
            stop_reason=response.stop_reason,
        )


def _read(path: str = "", **kwargs: Any) -> dict[str, Any]:
    return {"path": path, "content": f"contents of {path}"}


def _list(path: str = ".", **kwargs: Any) -> list[str]:
    return ["main.go", "README.md"]


def _search(path: str = ".", pattern: str = "", **kwargs: Any) -> list[str]:
    return [f"{path}:1:{pattern}"]


def _replace(path: str = "", search: str = "", replace: str = "", **kwargs: Any) -> dict[str, Any]:
    return {"path": path, "replaced": 1}


def _create_task(title: str = "", **kwargs: Any) -> dict[str, Any]:
    return {"id": 1, "title": title}


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def file_provider() -> FunctionProvider:
    return FunctionProvider(
        "file",
        {"read": _read, "list": _list, "search": _search, "replace": _replace},
        description="Local filesystem",
    )


@pytest.fixture
def registry(file_provider: FunctionProvider) -> ProviderRegistry:
    return ProviderRegistry(
        [file_provider, FunctionProvider("task", {"create": _create_task, "list": lambda: []})]
    )


@pytest.fixture
def model_provider() -> ScriptedModelProvider:
    return ScriptedModelProvider()


@pytest.fixture
def make_model_provider() -> type[ScriptedModelProvider]:
    return ScriptedModelProvider


@pytest.fixture
def gateway(model_provider: ScriptedModelProvider) -> ModelGateway:
    return ModelGateway(
        [model_provider],
        breakers=CircuitBreakerRegistry(),
        policy=NO_WAIT,
        timeout=5.0,
    )
