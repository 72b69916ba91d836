"""Orchestrator: the top-level request state machine.

Every request follows one path::

    RECEIVED -> LOCAL_REPLY                                  -> RESPONDED
    RECEIVED -> CLASSIFIED -> DIRECT_CALL     -> MEMORY_INGESTION -> RESPONDED
    RECEIVED -> CLASSIFIED -> PLAN_EXECUTION  -> MEMORY_INGESTION -> RESPONDED
    RECEIVED -> CLASSIFIED -> CONVERSATION    -> MEMORY_INGESTION -> RESPONDED

Greetings and acknowledgements are answered locally with no provider or
model call.  Deterministic single-action requests (a tier-0 pattern match
with all required inputs and a live provider) go straight to the
provider, bypassing the plan cache.  Intents that need capabilities run
a cached or generated plan and finish with a synthesis call that is
denied tool access.  Everything else is a conversational reply with
native tool calling, bounded to a fixed number of rounds.

Memory context is fetched under a short deadline and dropped when it
expires.  Memory ingestion is queued after the reply is final and never
affects it.
"""

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from conductor.agents.executor import ProgressUpdate, StepExecutor
from conductor.classifier import Intent, IntentClassifier
from conductor.core.config import Settings
from conductor.core.exceptions import (
    ConductorException,
    ErrorCategory,
    ModelUnavailableError,
    PlanGenerationError,
    PlanValidationError,
)
from conductor.core.resilience import CircuitBreakerRegistry, GracefulDegradation
from conductor.core.values import Value, coerce_map
from conductor.gateway import ModelGateway, ModelRequest, ModelResponse, ModelToolCall, build_gateway
from conductor.memory import (
    IngestionJob,
    LLMMemoryExtractor,
    MemoryIngestionQueue,
    MemoryRetriever,
    MemoryRouter,
    MemoryStore,
)
from conductor.plans import (
    ExecutionRecord,
    Plan,
    PlanCache,
    PlanGenerator,
    PlanSelection,
    bind_variables,
    plan_allowed,
)
from conductor.providers import (
    CapabilityProvider,
    ProviderRegistry,
    ToolCall,
    ToolResult,
    parse_tool_name,
)
from conductor.storage import Store, build_store

logger = logging.getLogger(__name__)

GREETINGS = ("hi", "hello", "hey", "yo", "sup", "good morning", "good afternoon", "good evening")
ACKNOWLEDGEMENTS = ("thanks", "thank you", "thx", "ok", "okay", "got it", "cool")

GREETING_REPLY = "Hey! How can I help?"
ACKNOWLEDGEMENT_REPLY = "Got it."
DEFAULT_LOCAL_REPLY = "I'm here. How can I help?"
DEGRADED_REPLY = (
    "I'm having trouble reaching the services I need right now. Please try again in a moment."
)

# Intents in these categories always need capabilities
PLAN_CATEGORIES = frozenset({"code", "file", "task", "calendar", "system"})
TOOL_VERBS = (
    "run", "execute", "open", "read", "write", "edit", "search", "look up",
    "find", "fetch", "summarize", "browse", "install", "delete", "remove",
)

DEGRADATION_SERVICE = "orchestrator"
_DEGRADABLE = (ErrorCategory.SYSTEM, ErrorCategory.TEMPORARY)

DEFAULT_MEMORY_CONTEXT_TIMEOUT = 0.5
DEFAULT_MEMORY_CONTEXT_LIMIT = 5
DEFAULT_TOOL_ROUNDS = 4
HISTORY_LIMIT = 10

SYSTEM_PROMPT = """You are a concise, helpful assistant with access to local capabilities.
Call a tool only when the request needs one; otherwise answer directly.
Keep replies short and concrete."""

SYNTHESIS_PROMPT = """The user asked:
{message}

These actions were carried out:
{results}

Write the final answer for the user based on these results. Mention any action that failed.
Do not request further actions."""


class OrchestratorState(str, Enum):
    """States a request passes through."""

    RECEIVED = "received"
    CLASSIFIED = "classified"
    LOCAL_REPLY = "local_reply"
    DIRECT_CALL = "direct_call"
    PLAN_EXECUTION = "plan_execution"
    CONVERSATION = "conversation"
    MEMORY_INGESTION = "memory_ingestion"
    RESPONDED = "responded"


@dataclass
class ThreadContext:
    """Conversation thread a request belongs to.

    ``history`` holds prior turns as ``{"role": ..., "content": ...}``
    dicts, oldest first.
    """

    thread_id: str | None = None
    history: list[dict[str, str]] = field(default_factory=list)

    def messages(self, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        """The most recent user/assistant turns in model message format."""
        turns = [
            {"role": turn["role"], "content": turn["content"]}
            for turn in self.history
            if turn.get("role") in ("user", "assistant") and turn.get("content")
        ]
        return turns[-limit:] if limit > 0 else turns


@dataclass
class OrchestratorResponse:
    """Structured result of one processed request."""

    message: str
    intent: Intent | None
    duration_ms: int
    tier: int
    tokens_used: int = 0
    execution: ExecutionRecord | None = None
    tool_results: list[ToolResult] = field(default_factory=list)
    state_trace: list[OrchestratorState] = field(default_factory=list)
    degraded: bool = False
    error: dict[str, Any] | None = None

    @property
    def route(self) -> OrchestratorState | None:
        """The path taken: local reply, direct call, plan or conversation."""
        for state in self.state_trace:
            if state in (
                OrchestratorState.LOCAL_REPLY,
                OrchestratorState.DIRECT_CALL,
                OrchestratorState.PLAN_EXECUTION,
                OrchestratorState.CONVERSATION,
            ):
                return state
        return None

    @property
    def succeeded(self) -> bool:
        if self.execution is not None:
            return self.execution.succeeded
        return self.error is None and not self.degraded

    def execution_trace(self) -> dict[str, Any] | None:
        """Plan execution record, or the individual tool results."""
        if self.execution is not None:
            return self.execution.to_dict()
        if self.tool_results:
            return {"tool_results": [r.to_dict() for r in self.tool_results]}
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "message": self.message,
            "intent": self.intent.to_dict() if self.intent else None,
            "duration_ms": self.duration_ms,
            "tier": self.tier,
            "tokens_used": self.tokens_used,
            "route": self.route.value if self.route else None,
            "state_trace": [s.value for s in self.state_trace],
            "degraded": self.degraded,
        }
        trace = self.execution_trace()
        if trace is not None:
            data["execution_trace"] = trace
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class StreamEvent:
    """One event of a streamed response.

    ``chunk`` events carry reply text, ``progress`` events carry plan
    step updates and the single final ``result`` event carries the full
    response.
    """

    type: str
    text: str = ""
    progress: ProgressUpdate | None = None
    response: OrchestratorResponse | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.type == "chunk":
            data["text"] = self.text
        elif self.type == "progress" and self.progress is not None:
            data["progress"] = asdict(self.progress)
        elif self.type == "result" and self.response is not None:
            data["response"] = self.response.to_dict()
        return data


@dataclass
class _Outcome:
    message: str
    tokens_used: int = 0
    execution: ExecutionRecord | None = None
    tool_results: list[ToolResult] = field(default_factory=list)
    streamed: bool = False
    degraded: bool = False
    error: dict[str, Any] | None = None


Emit = Callable[[str], Awaitable[None]]
Progress = Callable[[ProgressUpdate], None]


def _matches_phrase(msg: str, phrases: Iterable[str]) -> bool:
    return any(msg == p or msg.startswith(p + " ") for p in phrases)


def is_greeting(text: str) -> bool:
    return _matches_phrase(text.strip().lower(), GREETINGS)


def is_acknowledgement(text: str) -> bool:
    return _matches_phrase(text.strip().lower(), ACKNOWLEDGEMENTS)


def has_tool_verbs(text: str) -> bool:
    msg = text.lower()
    return any(verb in msg for verb in TOOL_VERBS)


def has_required_inputs(category: str, action: str, variables: dict[str, str]) -> bool:
    """Whether *variables* carry what a direct (category, action) call needs."""
    if category == "code" and action in ("explain", "refactor"):
        return "target" in variables or "path" in variables
    if category == "file" and action in ("read", "write", "search", "delete", "info", "move", "copy"):
        return "path" in variables
    if category == "research":
        if action == "web_search":
            return "query" in variables
        if action == "fetch_url":
            return "url" in variables
    if category == "task":
        if action == "create":
            return "title" in variables or "task" in variables
        if action in ("complete", "delete", "update"):
            return "id" in variables
    return True


def _render(data: Value) -> str:
    if isinstance(data, str):
        return data
    return json.dumps(data, indent=2, default=str)


def format_tool_result(result: ToolResult) -> str:
    """User-facing text for a single capability result."""
    if not result.success:
        if result.error:
            return f"Error: {result.error}"
        return "I couldn't complete that."
    if result.data is None:
        return "Done."
    return _render(result.data)


def format_execution(record: ExecutionRecord) -> str:
    """User-facing summary of a plan execution."""
    if not record.succeeded:
        return f"I encountered an error: {record.error}"

    parts = [
        f"• Step {r.step_id}: {_render(r.data)}"
        for r in record.results
        if r.success and r.data is not None
    ]
    if not parts:
        return "Done!"
    return "Plan completed successfully:\n" + "\n".join(parts)


def format_step_outputs(plan: Plan, record: ExecutionRecord) -> str:
    """Step results as prompt text for the synthesis call."""
    lines = []
    for result in record.results:
        step = plan.step(result.step_id)
        name = step.capability if step else f"step {result.step_id}"
        if result.success:
            lines.append(f"- {name}: OK\n{_render(result.data)}")
        else:
            lines.append(f"- {name}: FAILED ({result.error})")
    return "\n".join(lines) or "(no steps ran)"


def format_tool_outputs(pairs: list[tuple[ModelToolCall, ToolResult]]) -> str:
    lines = []
    for call, result in pairs:
        if result.success:
            lines.append(f"- {call.name}: OK\n{_render(result.data)}")
        else:
            lines.append(f"- {call.name}: FAILED ({result.error})")
    return "\n".join(lines) or "(no actions ran)"


def _tool_result_block(call: ModelToolCall, result: ToolResult) -> dict[str, Any]:
    content = _render(result.data) if result.success else f"Error: {result.error}"
    return {
        "type": "tool_result",
        "tool_use_id": call.id,
        "content": content,
        "is_error": not result.success,
    }


def _assistant_turn(response: ModelResponse) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = []
    if response.text:
        blocks.append({"type": "text", "text": response.text})
    blocks.extend(
        {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.input}
        for tc in response.tool_calls
    )
    return {"role": "assistant", "content": blocks}


class Orchestrator:
    """Routes each request to a local reply, a direct call, a plan or a conversation."""

    def __init__(
        self,
        classifier: IntentClassifier,
        registry: ProviderRegistry,
        executor: StepExecutor,
        gateway: ModelGateway | None = None,
        plans: PlanCache | None = None,
        retriever: MemoryRetriever | None = None,
        ingestion: MemoryIngestionQueue | None = None,
        memory_router: MemoryRouter | None = None,
        store: Store | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        degradation: GracefulDegradation | None = None,
        memory_context_timeout: float = DEFAULT_MEMORY_CONTEXT_TIMEOUT,
        memory_context_limit: int = DEFAULT_MEMORY_CONTEXT_LIMIT,
        max_tool_rounds: int = DEFAULT_TOOL_ROUNDS,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            classifier: Intent classifier.
            registry: Live capability providers.
            executor: Executor for capability calls and plans.
            gateway: Model gateway; None disables model-backed paths.
            plans: Plan cache; None disables plan execution.
            retriever: Memory retriever for prompt context.
            ingestion: Queue completed turns are submitted to.
            memory_router: Decides which requests pull in memory context.
            store: Durable store, closed on ``stop``.
            breakers: Circuit breakers reported by ``status``.
            degradation: Fallback registry for system failures.
            memory_context_timeout: Deadline for memory retrieval, in seconds.
            memory_context_limit: Maximum memories injected into a prompt.
            max_tool_rounds: Native tool-call rounds before a forced summary.
        """
        self._classifier = classifier
        self._registry = registry
        self._executor = executor
        self._gateway = gateway
        self._plans = plans
        self._retriever = retriever
        self._ingestion = ingestion
        self._memory_router = memory_router or MemoryRouter()
        self._store = store
        self._breakers = breakers
        self._degradation = degradation or GracefulDegradation()
        if not self._degradation.has_fallback(DEGRADATION_SERVICE):
            self._degradation.set_fallback(DEGRADATION_SERVICE, self._degraded_outcome)
        self.memory_context_timeout = memory_context_timeout
        self.memory_context_limit = memory_context_limit
        self.max_tool_rounds = max(1, max_tool_rounds)

    @property
    def model_available(self) -> bool:
        return self._gateway is not None and self._gateway.available

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        if self._ingestion is not None:
            await self._ingestion.start()

    async def stop(self) -> None:
        if self._ingestion is not None:
            await self._ingestion.stop()
        if self._store is not None:
            await self._store.close()

    # -- Routing --------------------------------------------------------------

    def local_reply(self, text: str) -> str | None:
        """Canned reply for empty text, greetings and acknowledgements, else None."""
        msg = text.strip().lower()
        if not msg:
            return DEFAULT_LOCAL_REPLY
        if is_greeting(msg):
            return GREETING_REPLY
        if is_acknowledgement(msg):
            return ACKNOWLEDGEMENT_REPLY
        return None

    def match_direct_call(self, text: str) -> tuple[Intent, ToolCall] | None:
        """Recognize a deterministic single-action request.

        Returns:
            The pattern intent and the call to make, or None when the text
            needs classification or planning.
        """
        intent = self._classifier.match_pattern(text)
        if intent is None or intent.tier != 0:
            return None
        if intent.confidence < self._classifier.min_confidence:
            return None
        if not self._registry.has_action(intent.category, intent.subcategory):
            return None
        if not has_required_inputs(intent.category, intent.subcategory, intent.variables):
            return None

        call_input: dict[str, Value] = dict(intent.variables)
        if intent.category == "task" and intent.variables.get("task"):
            call_input.setdefault("title", intent.variables["task"])
        return intent, ToolCall(
            provider=intent.category,
            action=intent.subcategory,
            input=call_input,
        )

    def route(self, intent: Intent, text: str) -> OrchestratorState:
        """Choose between plan execution and a conversational reply."""
        if intent.category in PLAN_CATEGORIES or has_tool_verbs(text):
            return OrchestratorState.PLAN_EXECUTION
        return OrchestratorState.CONVERSATION

    # -- Entry points ---------------------------------------------------------

    async def process(
        self,
        text: str,
        context: ThreadContext | None = None,
        timeout: float | None = None,
    ) -> OrchestratorResponse:
        """Handle one request.

        Args:
            text: The user's message.
            context: Thread the message belongs to.
            timeout: Optional request deadline in seconds; every
                downstream call is cancelled when it expires.

        Returns:
            The structured response.

        Raises:
            TimeoutError: If the request deadline expires.
        """
        context = context or ThreadContext()
        if timeout:
            async with asyncio.timeout(timeout):
                return await self._run(text, context)
        return await self._run(text, context)

    async def process_stream(
        self, text: str, context: ThreadContext | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Handle one request, yielding reply chunks as they arrive.

        Yields ``chunk`` and ``progress`` events, then exactly one
        ``result`` event carrying the same response ``process`` returns.
        """
        context = context or ThreadContext()
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

        async def _emit(chunk: str) -> None:
            await queue.put(StreamEvent(type="chunk", text=chunk))

        def _progress(update: ProgressUpdate) -> None:
            queue.put_nowait(StreamEvent(type="progress", progress=update))

        async def _produce() -> None:
            try:
                response = await self._run(text, context, emit=_emit, progress=_progress)
                await queue.put(StreamEvent(type="result", response=response))
            finally:
                await queue.put(None)

        task = asyncio.create_task(_produce())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            # Re-raise anything the producer failed with
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    # -- State machine --------------------------------------------------------

    async def _run(
        self,
        text: str,
        context: ThreadContext,
        emit: Emit | None = None,
        progress: Progress | None = None,
    ) -> OrchestratorResponse:
        start = time.perf_counter()
        trace = [OrchestratorState.RECEIVED]
        message = text.strip()

        local = self.local_reply(message)
        if local is not None:
            trace.append(OrchestratorState.LOCAL_REPLY)
            intent = Intent(
                category="chat",
                subcategory="greeting" if is_greeting(message) else "local",
                confidence=1.0,
                tier=0,
                source="local",
            )
            outcome = _Outcome(local)
        else:
            direct = self.match_direct_call(message)
            if direct is not None:
                intent, call = direct
                trace += [OrchestratorState.CLASSIFIED, OrchestratorState.DIRECT_CALL]
                outcome = await self._direct_call(call)
            else:
                intent = await self._classifier.classify(message)
                state = self.route(intent, message)
                trace += [OrchestratorState.CLASSIFIED, state]
                outcome = await self._guarded(state, intent, message, context, emit, progress)
                outcome.tokens_used += intent.tokens_used

            if self._ingestion is not None:
                trace.append(OrchestratorState.MEMORY_INGESTION)
                self._ingestion.submit(
                    IngestionJob(
                        user_message=message,
                        assistant_message=outcome.message,
                        thread_id=context.thread_id,
                    )
                )

        if emit is not None and not outcome.streamed:
            await emit(outcome.message)
        trace.append(OrchestratorState.RESPONDED)

        response = OrchestratorResponse(
            message=outcome.message,
            intent=intent,
            duration_ms=int((time.perf_counter() - start) * 1000),
            tier=intent.tier,
            tokens_used=outcome.tokens_used,
            execution=outcome.execution,
            tool_results=outcome.tool_results,
            state_trace=trace,
            degraded=outcome.degraded,
            error=outcome.error,
        )
        logger.info(
            "Request processed",
            extra={
                "route": response.route.value if response.route else None,
                "intent": intent.key,
                "tier": response.tier,
                "tokens_used": response.tokens_used,
                "duration_ms": response.duration_ms,
                "thread_id": context.thread_id,
                "degraded": response.degraded,
            },
        )
        return response

    async def _guarded(
        self,
        state: OrchestratorState,
        intent: Intent,
        text: str,
        context: ThreadContext,
        emit: Emit | None,
        progress: Progress | None,
    ) -> _Outcome:
        handler = self._execute_plan if state == OrchestratorState.PLAN_EXECUTION else self._converse
        try:
            return await self._degradation.call_with_fallback(
                DEGRADATION_SERVICE, handler, intent, text, context, emit, progress
            )
        except ConductorException as e:
            logger.warning(
                "Request failed",
                extra={"intent": intent.key, "error_code": e.code, "category": e.category.value},
            )
            return _Outcome(e.user_message(), error=e.to_dict())

    def _degraded_outcome(self, exc: Exception) -> _Outcome:
        if isinstance(exc, ConductorException) and exc.category not in _DEGRADABLE:
            raise exc
        if isinstance(exc, ConductorException):
            logger.warning(
                "Serving degraded reply",
                extra={"error_code": exc.code, "category": exc.category.value},
            )
            error = exc.to_dict()
        else:
            logger.error("Unexpected orchestration failure", exc_info=exc)
            error = {"code": "INTERNAL_ERROR", "message": "unexpected failure"}
        return _Outcome(DEGRADED_REPLY, degraded=True, error=error)

    async def _direct_call(self, call: ToolCall) -> _Outcome:
        result = await self._executor.execute_step(call)
        logger.info(
            "Direct capability call",
            extra={"provider": call.provider, "action": call.action, "success": result.success},
        )
        return _Outcome(
            format_tool_result(result),
            tokens_used=result.tokens_used,
            tool_results=[result],
        )

    async def _execute_plan(
        self,
        intent: Intent,
        text: str,
        context: ThreadContext,
        emit: Emit | None,
        progress: Progress | None,
    ) -> _Outcome:
        if self._plans is None:
            raise PlanGenerationError(intent.key, "plan cache not configured")

        memory = await self.memory_context(text)
        selection = await self._plans.get_or_create(intent, text, memory)
        plan = selection.plan
        if not plan_allowed(intent.category, text, plan):
            raise PlanValidationError(
                [f"research steps are not allowed for a {intent.key} request without an explicit search"],
                plan_id=plan.id,
            )

        variables = bind_variables(plan, intent.variables)
        record = ExecutionRecord.for_plan(plan, variables)
        record.pattern_id = selection.pattern_id
        await self._executor.execute_plan(
            plan, variables, record, on_progress=progress, on_checkpoint=self._save_execution
        )
        await self._record_outcome(selection, record)

        outcome = _Outcome(
            format_execution(record),
            tokens_used=selection.tokens_used + record.total_tokens,
            execution=record,
        )
        if not record.succeeded or not self.model_available:
            return outcome

        try:
            response, streamed = await self._synthesize(
                text, format_step_outputs(plan, record), memory, emit
            )
        except ConductorException as e:
            # Step results stand on their own when the summary call fails
            logger.warning(
                "Synthesis failed, returning step results",
                extra={"plan_id": plan.id, "error_code": e.code},
            )
            return outcome

        outcome.message = response.text.strip() or outcome.message
        outcome.tokens_used += response.tokens_used
        outcome.streamed = streamed
        return outcome

    async def _save_execution(self, record: ExecutionRecord) -> None:
        """Persist a running record; the plan keeps going if the write fails."""
        assert self._plans is not None
        try:
            await self._plans.save_execution(record)
        except ConductorException as e:
            logger.warning(
                "Failed to save execution progress",
                extra={"execution_id": record.id, "error_code": e.code},
            )

    async def _record_outcome(self, selection: PlanSelection, record: ExecutionRecord) -> None:
        assert self._plans is not None
        try:
            await self._plans.record_outcome(selection, record)
            await self._plans.save_execution(record)
        except ConductorException as e:
            logger.warning(
                "Failed to record plan outcome",
                extra={"plan_id": record.plan_id, "error_code": e.code},
            )

    async def _converse(
        self,
        intent: Intent,
        text: str,
        context: ThreadContext,
        emit: Emit | None,
        progress: Progress | None,
    ) -> _Outcome:
        if not self.model_available:
            raise ModelUnavailableError("gateway", "no model provider configured", temporary=False)

        memory = await self.memory_context(text)
        system = self._system_prompt(memory)
        messages = context.messages()
        messages.append({"role": "user", "content": text})
        tools = self._registry.tool_definitions()

        tokens = 0
        streamed = False
        pairs: list[tuple[ModelToolCall, ToolResult]] = []
        for round_index in range(self.max_tool_rounds):
            response, chunked = await self._generate(
                ModelRequest(
                    system=system,
                    messages=list(messages),
                    tools=tools,
                    tool_choice="auto",
                    purpose="conversation",
                ),
                emit,
            )
            tokens += response.tokens_used
            streamed = streamed or chunked
            if not response.has_tool_calls:
                return _Outcome(
                    response.text.strip(),
                    tokens_used=tokens,
                    tool_results=[r for _, r in pairs],
                    streamed=streamed,
                )

            round_pairs = await self.run_tool_calls(response.tool_calls)
            pairs.extend(round_pairs)
            messages.append(_assistant_turn(response))
            messages.append(
                {"role": "user", "content": [_tool_result_block(c, r) for c, r in round_pairs]}
            )
            logger.debug(
                "Tool round complete",
                extra={"round": round_index + 1, "calls": len(round_pairs)},
            )

        logger.info(
            "Tool round limit reached, forcing final answer",
            extra={"rounds": self.max_tool_rounds, "intent": intent.key},
        )
        response, chunked = await self._synthesize(text, format_tool_outputs(pairs), memory, emit)
        return _Outcome(
            response.text.strip(),
            tokens_used=tokens + response.tokens_used,
            tool_results=[r for _, r in pairs],
            streamed=streamed or chunked,
        )

    async def run_tool_calls(
        self, tool_calls: list[ModelToolCall]
    ) -> list[tuple[ModelToolCall, ToolResult]]:
        """Execute model-requested tool calls as one concurrent batch.

        Malformed tool names and unknown capabilities become failed
        results; the remaining calls still run.
        """
        failed: dict[str, ToolResult] = {}
        calls: list[ToolCall] = []
        for tc in tool_calls:
            try:
                provider, action = parse_tool_name(tc.name)
                calls.append(ToolCall(provider=provider, action=action, input=coerce_map(tc.input), id=tc.id))
            except (ValueError, ConductorException) as e:
                failed[tc.id] = ToolResult(success=False, error=str(e), call_id=tc.id)

        batch = await self._executor.execute_batch(calls)
        by_id = {r.call_id: r for r in batch.results}
        by_id.update(failed)
        return [
            (tc, by_id.get(tc.id) or ToolResult(success=False, error="no result", call_id=tc.id))
            for tc in tool_calls
        ]

    # -- Model helpers --------------------------------------------------------

    def _system_prompt(self, memory: str) -> str:
        if memory:
            return f"{SYSTEM_PROMPT}\n\n{memory}"
        return SYSTEM_PROMPT

    async def _generate(
        self, request: ModelRequest, emit: Emit | None
    ) -> tuple[ModelResponse, bool]:
        """Run *request*, streaming text through *emit* when given.

        Returns:
            The response and whether any text was emitted.
        """
        assert self._gateway is not None
        if emit is None:
            return await self._gateway.generate(request), False

        emitted = False
        stream = self._gateway.stream(request)
        async for chunk in stream:
            emitted = True
            await emit(chunk)
        return stream.response, emitted

    async def _synthesize(
        self, text: str, results: str, memory: str, emit: Emit | None
    ) -> tuple[ModelResponse, bool]:
        """Final summary call with tool access denied."""
        return await self._generate(
            ModelRequest(
                system=self._system_prompt(memory),
                prompt=SYNTHESIS_PROMPT.format(message=text, results=results),
                tools=[],
                tool_choice="none",
                purpose="synthesis",
            ),
            emit,
        )

    async def memory_context(self, text: str) -> str:
        """Relevant memories as prompt text, or "" when none arrive in time.

        Requests without a memory marker ("remember", "my name", ...) skip
        retrieval entirely.
        """
        if self._retriever is None or not self._memory_router.should_retrieve(text):
            return ""
        try:
            return await asyncio.wait_for(
                self._retriever.context_for(text, limit=self.memory_context_limit),
                timeout=self.memory_context_timeout,
            )
        except TimeoutError:
            logger.info(
                "Memory context timed out, continuing without it",
                extra={"timeout": self.memory_context_timeout},
            )
        except Exception as e:
            logger.warning(
                "Memory context unavailable",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
        return ""

    # -- Introspection --------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        """Plan count, providers, model availability and background state."""
        plans_count = 0
        active_plans = 0
        if self._plans is not None:
            try:
                patterns = await self._plans.list_patterns()
                plans_count = len(patterns)
                active_plans = sum(1 for p in patterns if p.active)
            except ConductorException as e:
                logger.warning("Failed to count plans", extra={"error_code": e.code})

        data: dict[str, Any] = {
            "plans_count": plans_count,
            "active_plans": active_plans,
            "providers": self._registry.capability_map(),
            "model_available": self.model_available,
            "model_providers": self._gateway.provider_names if self._gateway else [],
        }
        if self._ingestion is not None:
            data["memory_ingestion"] = {
                "running": self._ingestion.running,
                "pending": self._ingestion.pending,
                **asdict(self._ingestion.stats),
            }
        if self._breakers is not None:
            data["circuit_breakers"] = self._breakers.states()
        return data


def build_orchestrator(
    settings: Settings,
    providers: Iterable[CapabilityProvider] = (),
) -> Orchestrator:
    """Wire every component from settings.

    Components are constructed once here and passed by reference; nothing
    is held in module state.

    Args:
        settings: Application settings.
        providers: Capability providers to register.

    Returns:
        An orchestrator that has not been started.
    """
    breakers = CircuitBreakerRegistry(
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_RECOVERY_SECONDS,
        half_open_max_calls=settings.CIRCUIT_HALF_OPEN_TRIALS,
    )
    store = build_store(settings, breakers)
    gateway = build_gateway(settings, breakers)
    model = gateway if gateway.available else None
    registry = ProviderRegistry(providers)

    generator = None
    if model is not None:
        generator = PlanGenerator(
            model,
            registry,
            max_steps=settings.PLAN_MAX_STEPS,
            max_tokens=settings.PLAN_GENERATION_MAX_TOKENS,
        )
    plans = PlanCache(
        store,
        registry,
        generator,
        max_steps=settings.PLAN_MAX_STEPS,
        min_success_rate=settings.PLAN_CACHE_MIN_SUCCESS_RATE,
        retirement_threshold=settings.PLAN_RETIREMENT_THRESHOLD,
        retirement_min_uses=settings.PLAN_RETIREMENT_MIN_USES,
    )

    memory = MemoryStore(store)
    memory_router = MemoryRouter()
    extractor = LLMMemoryExtractor(model, settings.MEMORY_EXTRACTION_THRESHOLD) if model else None
    ingestion = MemoryIngestionQueue(
        memory,
        extractor=extractor,
        router=memory_router,
        workers=settings.MEMORY_INGEST_WORKERS,
        timeout=settings.MEMORY_INGEST_TIMEOUT_SECONDS,
        maxsize=settings.MEMORY_INGEST_QUEUE_SIZE,
        threshold=settings.MEMORY_EXTRACTION_THRESHOLD,
    )

    logger.info(
        "Orchestrator wired",
        extra={
            "providers": registry.names(),
            "model_available": model is not None,
            "store": type(store).__name__,
        },
    )
    return Orchestrator(
        classifier=IntentClassifier(model, min_confidence=settings.CLASSIFIER_MIN_CONFIDENCE),
        registry=registry,
        executor=StepExecutor(
            registry,
            max_concurrent=settings.EXECUTOR_MAX_CONCURRENT,
            default_timeout=settings.STEP_DEFAULT_TIMEOUT_SECONDS,
            timeout_ceiling=settings.STEP_TIMEOUT_CEILING_SECONDS,
        ),
        gateway=gateway,
        plans=plans,
        retriever=MemoryRetriever(memory),
        ingestion=ingestion,
        memory_router=memory_router,
        store=store,
        breakers=breakers,
        memory_context_timeout=settings.MEMORY_CONTEXT_TIMEOUT_SECONDS,
        memory_context_limit=settings.MEMORY_CONTEXT_LIMIT,
        max_tool_rounds=settings.TOOL_LOOP_MAX_ROUNDS,
    )
