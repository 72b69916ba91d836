"""Tests for the Orchestrator request state machine."""

import asyncio
import time
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from conductor.agents.executor import StepExecutor
from conductor.agents.orchestrator import (
    DEGRADED_REPLY,
    GREETING_REPLY,
    Orchestrator,
    OrchestratorState,
    ThreadContext,
    format_tool_result,
    has_required_inputs,
)
from conductor.classifier import IntentClassifier
from conductor.core.resilience import CircuitBreakerRegistry
from conductor.gateway import ModelGateway, ModelResponse, ModelToolCall
from conductor.memory import MemoryIngestionQueue, MemoryRetriever, MemoryStore
from conductor.plans import Plan, PlanCache, PlanStep
from conductor.providers import FunctionProvider, ProviderRegistry, ToolResult
from conductor.storage import InMemoryStore
from conductor.storage.supabase import SupabaseStore

S = OrchestratorState


def _plan_generator(*plans: Plan) -> MagicMock:
    generator = MagicMock()
    generator.available = True
    generator.generate = AsyncMock(side_effect=[(plan, 50) for plan in plans])
    return generator


def _list_plan(provider: str = "file") -> Plan:
    return Plan.new(
        intent="code.run_tests",
        description="List the test directory",
        steps=[PlanStep(1, provider, "list", {"path": "tests"})],
    )


@pytest.fixture
def build(store: InMemoryStore, registry: ProviderRegistry):
    def _build(
        gateway: ModelGateway | None = None,
        generator: MagicMock | None = None,
        registry_override: ProviderRegistry | None = None,
        **kwargs: Any,
    ) -> Orchestrator:
        reg = registry_override or registry
        return Orchestrator(
            classifier=IntentClassifier(),
            registry=reg,
            executor=StepExecutor(reg),
            gateway=gateway,
            plans=PlanCache(store, reg, generator),
            **kwargs,
        )

    return _build


class TestLocalReply:
    """Tests for greetings answered without any provider call."""

    @pytest.mark.asyncio
    async def test_greeting(self, build, gateway: ModelGateway, model_provider) -> None:
        """Test "hi" is answered locally with no tokens and no calls."""
        ingestion = MagicMock()
        orchestrator = build(gateway=gateway, ingestion=ingestion)

        response = await orchestrator.process("hi")

        assert response.message == GREETING_REPLY
        assert response.route == S.LOCAL_REPLY
        assert response.state_trace == [S.RECEIVED, S.LOCAL_REPLY, S.RESPONDED]
        assert response.tokens_used == 0
        assert response.intent.source == "local"
        assert model_provider.requests == []
        ingestion.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_acknowledgement_and_empty(self, build) -> None:
        """Test acknowledgements and blank input are local too."""
        orchestrator = build()
        assert (await orchestrator.process("thank you so much")).route == S.LOCAL_REPLY
        assert (await orchestrator.process("   ")).route == S.LOCAL_REPLY


class TestDirectCall:
    """Tests for deterministic single-action requests."""

    @pytest.mark.asyncio
    async def test_read_file(self, build) -> None:
        """Test "read main.go" calls the provider once and caches no plan."""
        orchestrator = build()

        response = await orchestrator.process("read main.go")

        assert response.route == S.DIRECT_CALL
        assert response.state_trace == [S.RECEIVED, S.CLASSIFIED, S.DIRECT_CALL, S.RESPONDED]
        assert len(response.tool_results) == 1
        assert response.tool_results[0].success
        assert "contents of main.go" in response.message
        assert response.execution is None
        assert await orchestrator._plans.list_patterns() == []

    @pytest.mark.asyncio
    async def test_direct_call_queues_ingestion(self, build, store: InMemoryStore) -> None:
        """Test completed turns are handed to memory ingestion."""
        ingestion = MemoryIngestionQueue(MemoryStore(store))
        orchestrator = build(ingestion=ingestion)

        response = await orchestrator.process("read main.go", ThreadContext(thread_id="t1"))

        assert S.MEMORY_INGESTION in response.state_trace
        assert ingestion.pending == 1

    def test_required_inputs(self) -> None:
        """Test direct calls need their inputs."""
        assert has_required_inputs("file", "read", {"path": "a"})
        assert not has_required_inputs("file", "read", {})
        assert not has_required_inputs("research", "fetch_url", {"query": "x"})
        assert has_required_inputs("code", "git_op", {})

    def test_format_tool_result(self) -> None:
        """Test results render as plain text."""
        assert format_tool_result(ToolResult(success=True, data="ok")) == "ok"
        assert format_tool_result(ToolResult(success=True)) == "Done."
        assert format_tool_result(ToolResult(success=False, error="nope")) == "Error: nope"


class TestPlanExecution:
    """Tests for the plan route."""

    @pytest.mark.asyncio
    async def test_plan_cached_after_first_success(self, build) -> None:
        """Test the generated plan runs, is stored and is reused without regeneration."""
        generator = _plan_generator(_list_plan())
        orchestrator = build(generator=generator)

        first = await orchestrator.process("run the tests")
        second = await orchestrator.process("run the tests")

        assert first.route == S.PLAN_EXECUTION
        assert first.execution.succeeded
        assert first.tokens_used == 50
        assert first.message.startswith("Plan completed successfully:")
        assert second.execution.plan_id == first.execution.plan_id
        assert second.tokens_used == 0
        assert generator.generate.await_count == 1
        assert len(await orchestrator._plans.list_patterns("code.run_tests")) == 1

    @pytest.mark.asyncio
    async def test_guardrail_rejection_surfaces_error(self, build) -> None:
        """Test a plan naming an unknown capability never executes."""
        orchestrator = build(generator=_plan_generator(_list_plan(provider="shell")))

        response = await orchestrator.process("run the tests")

        assert response.execution is None
        assert response.degraded is False
        assert response.error["code"] == "PLAN_VALIDATION_FAILED"
        assert await orchestrator._plans.list_patterns() == []

    @pytest.mark.asyncio
    async def test_execution_saved_while_running(self, build) -> None:
        """Test a running record is stored before the plan finishes and updated after."""
        entered = asyncio.Event()
        release = asyncio.Event()

        async def _blocking_list(**kwargs: Any) -> list[str]:
            entered.set()
            await release.wait()
            return ["test_a.py"]

        registry = ProviderRegistry([FunctionProvider("file", {"list": _blocking_list})])
        plan = _list_plan()
        orchestrator = build(generator=_plan_generator(plan), registry_override=registry)

        task = asyncio.create_task(orchestrator.process("run the tests"))
        await asyncio.wait_for(entered.wait(), timeout=1.0)
        running = await orchestrator._plans.execution_history(plan.id)
        release.set()
        response = await task
        finished = await orchestrator._plans.execution_history(plan.id)

        assert [r.status.value for r in running] == ["running"]
        assert [r.id for r in finished] == [running[0].id]
        assert finished[0].status.value == "completed"
        assert finished[0].id == response.execution.id

    @pytest.mark.asyncio
    async def test_synthesis_denies_tools(
        self, build, gateway: ModelGateway, model_provider
    ) -> None:
        """Test the final summary call is made with tool access disabled."""
        model_provider.queue(ModelResponse(text="Two files in tests.", tokens_used=20))
        orchestrator = build(gateway=gateway, generator=_plan_generator(_list_plan()))

        response = await orchestrator.process("run the tests")

        assert response.message == "Two files in tests."
        assert response.tokens_used == 70
        request = model_provider.requests[-1]
        assert request.tool_choice == "none"
        assert request.tools == []
        assert request.purpose == "synthesis"


class TestConversation:
    """Tests for conversational replies and the native tool loop."""

    @pytest.mark.asyncio
    async def test_degraded_without_model(self, build) -> None:
        """Test conversation with no model returns the degraded reply."""
        response = await build().process("tell me a joke")

        assert response.route == S.CONVERSATION
        assert response.message == DEGRADED_REPLY
        assert response.degraded is True
        assert response.error["code"] == "MODEL_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_plain_reply(self, build, gateway: ModelGateway, model_provider) -> None:
        """Test a reply without tool calls is returned as-is."""
        model_provider.queue(ModelResponse(text="  Why did the chicken...  ", tokens_used=12))

        response = await build(gateway=gateway).process(
            "tell me a joke",
            ThreadContext(history=[{"role": "user", "content": "earlier"}]),
        )

        assert response.message == "Why did the chicken..."
        assert response.tokens_used == 12
        assert model_provider.requests[0].messages[0] == {"role": "user", "content": "earlier"}

    @pytest.mark.asyncio
    async def test_tool_loop(self, build, gateway: ModelGateway, model_provider) -> None:
        """Test tool calls run and their results feed the next round."""
        model_provider.queue(
            ModelResponse(
                text="",
                tool_calls=[ModelToolCall("tc1", "file_read", {"path": "a.go"})],
                tokens_used=15,
            ),
            ModelResponse(text="a.go looks fine.", tokens_used=10),
        )

        response = await build(gateway=gateway).process("tell me about penguins")

        assert response.message == "a.go looks fine."
        assert response.tokens_used == 25
        assert [r.success for r in response.tool_results] == [True]
        follow_up = model_provider.requests[1].messages[-1]
        assert follow_up["content"][0]["tool_use_id"] == "tc1"
        assert follow_up["content"][0]["is_error"] is False

    @pytest.mark.asyncio
    async def test_tool_round_limit_forces_answer(
        self, build, gateway: ModelGateway, model_provider
    ) -> None:
        """Test hitting the round limit ends with a tool-less summary."""
        model_provider.queue(
            ModelResponse(text="", tool_calls=[ModelToolCall("tc1", "file_list", {})]),
            ModelResponse(text="Here is what I found."),
        )

        orchestrator = build(gateway=gateway, max_tool_rounds=1)
        response = await orchestrator.process("tell me about penguins")

        assert response.message == "Here is what I found."
        assert model_provider.requests[-1].tool_choice == "none"

    @pytest.mark.asyncio
    async def test_run_tool_calls_isolates_unknown(self, build) -> None:
        """Test three tool calls with one unknown: the other two complete."""
        calls = [
            ModelToolCall("1", "file_read", {"path": "a.go"}),
            ModelToolCall("2", "shell_exec", {"cmd": "ls"}),
            ModelToolCall("3", "file_list", {}),
        ]

        pairs = await build().run_tool_calls(calls)

        assert [c.id for c, _ in pairs] == ["1", "2", "3"]
        assert [r.success for _, r in pairs] == [True, False, True]

    @pytest.mark.asyncio
    async def test_malformed_tool_name(self, build) -> None:
        """Test tool names without a provider prefix fail individually."""
        pairs = await build().run_tool_calls(
            [ModelToolCall("1", "bogus", {}), ModelToolCall("2", "file_list", {})]
        )
        assert [r.success for _, r in pairs] == [False, True]


class TestMemory:
    """Tests for memory ingestion and retrieval through the orchestrator."""

    @pytest.mark.asyncio
    async def test_name_remembered_across_turns(
        self, build, store: InMemoryStore, gateway: ModelGateway, model_provider
    ) -> None:
        """Test a stated name is ingested in the background and recalled later."""
        memory = MemoryStore(store)
        ingestion = MemoryIngestionQueue(memory, workers=1)
        orchestrator = build(
            gateway=gateway,
            ingestion=ingestion,
            retriever=MemoryRetriever(memory),
        )
        model_provider.queue("Nice to meet you, Dana.", "Your name is Dana.")
        await orchestrator.start()
        try:
            first = await orchestrator.process("my name is Dana")
            await ingestion.join()
            second = await orchestrator.process("what's my name")
        finally:
            await orchestrator.stop()

        assert first.state_trace == [
            S.RECEIVED,
            S.CLASSIFIED,
            S.CONVERSATION,
            S.MEMORY_INGESTION,
            S.RESPONDED,
        ]
        assert await memory.get_profile_value("name") == "Dana"
        assert second.message == "Your name is Dana."
        assert "- name: Dana" in model_provider.requests[1].system

    @pytest.mark.asyncio
    async def test_slow_memory_dropped(self, build) -> None:
        """Test memory context past its deadline is skipped."""

        async def _slow(*args: Any, **kwargs: Any) -> str:
            await asyncio.sleep(1)
            return "late"

        retriever = MagicMock()
        retriever.context_for = _slow
        orchestrator = build(retriever=retriever, memory_context_timeout=0.01)

        assert await orchestrator.memory_context("what's my name") == ""

    @pytest.mark.asyncio
    async def test_slow_supabase_bounded_by_deadline(self, build) -> None:
        """Test a blocking database call cannot hold memory context past its deadline."""
        client = MagicMock()
        client.table.side_effect = lambda name: (time.sleep(0.5), MagicMock())[1]
        store = SupabaseStore("https://example.supabase.co", "service-key", client=client)
        orchestrator = build(
            retriever=MemoryRetriever(MemoryStore(store)), memory_context_timeout=0.05
        )

        started = time.monotonic()
        context = await orchestrator.memory_context("what's my name")

        assert context == ""
        assert time.monotonic() - started < 0.4

    @pytest.mark.asyncio
    async def test_retrieval_skipped_without_memory_marker(self, build) -> None:
        """Test requests that never mention memory do not query it."""
        retriever = MagicMock()
        retriever.context_for = AsyncMock(return_value="## Relevant Memories")
        orchestrator = build(retriever=retriever)

        assert await orchestrator.memory_context("list the files in src") == ""
        retriever.context_for.assert_not_awaited()
        assert await orchestrator.memory_context("remember my workflow") == "## Relevant Memories"


class TestStreaming:
    """Tests for process_stream."""

    @pytest.mark.asyncio
    async def test_conversation_chunks_then_result(
        self, build, gateway: ModelGateway, model_provider
    ) -> None:
        """Test reply text streams before the final result event."""
        model_provider.queue(ModelResponse(text="Hello there", tokens_used=8))

        events = [e async for e in build(gateway=gateway).process_stream("tell me a joke")]

        assert [e.type for e in events] == ["chunk", "chunk", "result"]
        assert "".join(e.text for e in events[:-1]) == "Hello there "
        assert events[-1].response.message == "Hello there"
        assert events[-1].to_dict()["response"]["route"] == "conversation"

    @pytest.mark.asyncio
    async def test_local_reply_streams_once(self, build) -> None:
        """Test a local reply arrives as one chunk."""
        events = [e async for e in build().process_stream("hello")]

        assert [e.type for e in events] == ["chunk", "result"]
        assert events[0].text == GREETING_REPLY

    @pytest.mark.asyncio
    async def test_plan_progress_events(self, build) -> None:
        """Test plan steps report progress while streaming."""
        orchestrator = build(generator=_plan_generator(_list_plan()))

        events = [e async for e in orchestrator.process_stream("run the tests")]

        progress = [e.progress.status for e in events if e.type == "progress"]
        assert progress == ["starting", "complete"]
        assert events[-1].type == "result"


class TestLifecycle:
    """Tests for deadlines and status."""

    @pytest.mark.asyncio
    async def test_request_deadline(self, build) -> None:
        """Test an expired request deadline cancels the work."""

        async def _slow_read(**kwargs: Any) -> str:
            await asyncio.sleep(1)
            return "late"

        slow = ProviderRegistry([FunctionProvider("file", {"read": _slow_read})])
        orchestrator = build(registry_override=slow)

        with pytest.raises(TimeoutError):
            await orchestrator.process("read main.go", timeout=0.01)

    @pytest.mark.asyncio
    async def test_status(
        self, build, store: InMemoryStore, gateway: ModelGateway, model_provider
    ) -> None:
        """Test status reports plans, providers, model and background state."""
        model_provider.queue("Two files.")
        orchestrator = build(
            gateway=gateway,
            generator=_plan_generator(_list_plan()),
            ingestion=MemoryIngestionQueue(MemoryStore(store)),
            breakers=CircuitBreakerRegistry(),
        )
        await orchestrator.process("run the tests")

        status = await orchestrator.status()

        assert status["plans_count"] == 1
        assert status["active_plans"] == 1
        assert status["providers"]["file"] == ["list", "read", "replace", "search"]
        assert status["model_available"] is True
        assert status["model_providers"] == ["scripted"]
        assert status["memory_ingestion"]["submitted"] == 1
        assert "circuit_breakers" in status
