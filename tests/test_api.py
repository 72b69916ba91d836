"""Tests for the HTTP API."""

import json
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from conductor.agents.executor import StepExecutor
from conductor.agents.orchestrator import GREETING_REPLY, Orchestrator
from conductor.api import create_app
from conductor.classifier import IntentClassifier
from conductor.core.config import Settings
from conductor.core.resilience import CircuitBreakerRegistry
from conductor.providers import FunctionProvider, ProviderRegistry

TEST_SETTINGS = Settings(_env_file=None, ANTHROPIC_API_KEY="", STORE_BACKEND="memory")


@pytest.fixture
def orchestrator(registry: ProviderRegistry) -> Orchestrator:
    return Orchestrator(
        classifier=IntentClassifier(),
        registry=registry,
        executor=StepExecutor(registry),
        breakers=CircuitBreakerRegistry(),
    )


@pytest.fixture
def client(orchestrator: Orchestrator) -> Iterator[TestClient]:
    """Create a test client around a pre-built orchestrator."""
    with TestClient(
        create_app(orchestrator=orchestrator, settings=TEST_SETTINGS),
        raise_server_exceptions=False,
    ) as test_client:
        yield test_client


def _events(body: str) -> list[str]:
    return [line[len("data: "):] for line in body.splitlines() if line.startswith("data: ")]


class TestProcess:
    """Tests for POST /process."""

    def test_greeting(self, client: TestClient) -> None:
        """Test a greeting returns the local reply and its trace."""
        response = client.post("/process", json={"message": "hi"})

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == GREETING_REPLY
        assert data["route"] == "local_reply"
        assert data["tokens_used"] == 0
        assert data["state_trace"] == ["received", "local_reply", "responded"]
        assert "execution_trace" not in data

    def test_direct_call_has_execution_trace(self, client: TestClient) -> None:
        """Test capability results are reported in execution_trace."""
        response = client.post(
            "/process",
            json={"message": "read main.go", "thread_id": "t1"},
        )

        data = response.json()
        assert data["route"] == "direct_call"
        assert data["intent"]["category"] == "file"
        assert data["execution_trace"]["tool_results"][0]["success"] is True

    def test_degraded_conversation(self, client: TestClient) -> None:
        """Test a conversation with no model is still a 200."""
        response = client.post("/process", json={"message": "tell me a joke"})

        assert response.status_code == 200
        assert response.json()["degraded"] is True

    def test_empty_message_rejected(self, client: TestClient) -> None:
        """Test request validation."""
        assert client.post("/process", json={"message": ""}).status_code == 422
        assert client.post("/process", json={"message": "hi", "timeout": 0}).status_code == 422
        response = client.post(
            "/process",
            json={"message": "hi", "history": [{"role": "system", "content": "x"}]},
        )
        assert response.status_code == 422


class TestProcessStream:
    """Tests for POST /process/stream."""

    def test_stream_events(self, client: TestClient) -> None:
        """Test the stream carries chunks, a result and the terminator."""
        response = client.post("/process/stream", json={"message": "hello"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response.text)
        assert events[-1] == "[DONE]"
        payloads = [json.loads(e) for e in events[:-1]]
        assert payloads[0] == {"type": "chunk", "text": GREETING_REPLY}
        assert payloads[-1]["type"] == "result"
        assert payloads[-1]["response"]["route"] == "local_reply"


class TestHealth:
    """Tests for the health endpoints."""

    def test_health_degraded_without_model(self, client: TestClient) -> None:
        """Test health is degraded while no model is configured."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["model_available"] is False
        assert data["providers"]["task"] == ["create", "list"]
        assert "uptime_seconds" in data

    def test_ping(self, client: TestClient) -> None:
        """Test the lightweight ping."""
        response = client.get("/health/ping")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


def test_not_started_returns_503() -> None:
    """Test requests before startup are rejected."""
    client = TestClient(create_app(settings=TEST_SETTINGS))

    response = client.post("/process", json={"message": "hi"})

    assert response.status_code == 503


def test_orchestrator_wired_from_settings() -> None:
    """Test startup builds an orchestrator when none is given."""
    provider = FunctionProvider("file", {"read": lambda path="": f"contents of {path}"})
    app = create_app(settings=TEST_SETTINGS, providers=[provider])

    with TestClient(app) as client:
        data = client.post("/process", json={"message": "read main.go"}).json()
        health = client.get("/health").json()

    assert data["message"] == "contents of main.go"
    assert health["providers"] == {"file": ["read"]}
    assert health["memory_ingestion"]["running"] is True
