"""Step executor for capability calls and plans.

Runs single calls, concurrent batches and DAG-ordered plans against the
provider registry.  Every call is bounded by a timeout clamped to the
system ceiling, and every failure (unknown provider or action, timeout,
provider exception) becomes a failed result rather than an exception,
so one failing call never cancels its siblings.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from conductor.core.exceptions import ConductorException, StepTimeoutError
from conductor.core.values import ValueMap, fill_placeholders
from conductor.plans.models import COST_PER_TOKEN, ExecutionRecord, Plan, PlanStep, StepResult
from conductor.providers.base import ToolCall, ToolResult
from conductor.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 4
DEFAULT_STEP_TIMEOUT = 300.0  # 5 minutes
DEFAULT_TIMEOUT_CEILING = 120.0

STEP_OUTPUT_PREFIX = "step_"


@dataclass
class BatchResult:
    """Outcome of a concurrent batch, one result per call in call order."""

    calls: list[ToolCall]
    results: list[ToolResult]
    total_tokens: int
    duration_ms: int

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)

    def pairs(self) -> list[tuple[ToolCall, ToolResult]]:
        return list(zip(self.calls, self.results, strict=True))


@dataclass
class ProgressUpdate:
    """Progress notification emitted while a plan runs."""

    step_id: int
    capability: str
    status: str  # "starting", "complete", "failed"
    total_steps: int
    message: str


class StepExecutor:
    """Executes capability calls with bounded concurrency and timeouts."""

    def __init__(
        self,
        registry: ProviderRegistry,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        default_timeout: float = DEFAULT_STEP_TIMEOUT,
        timeout_ceiling: float | None = DEFAULT_TIMEOUT_CEILING,
    ) -> None:
        """Initialize the executor.

        Args:
            registry: Providers calls are dispatched to.
            max_concurrent: Maximum calls in flight within one batch.
            default_timeout: Timeout for calls that do not set one.
            timeout_ceiling: Upper bound applied to every timeout; None or
                0 disables it.
        """
        self._registry = registry
        self.max_concurrent = max(1, max_concurrent)
        self.default_timeout = default_timeout
        self.timeout_ceiling = timeout_ceiling

    def clamp_timeout(self, timeout: float | None) -> float:
        """Effective timeout for a call requesting *timeout* seconds."""
        effective = timeout if timeout and timeout > 0 else self.default_timeout
        if self.timeout_ceiling:
            effective = min(effective, self.timeout_ceiling)
        return effective

    async def execute_step(self, call: ToolCall) -> ToolResult:
        """Run one call; failures are returned, never raised.

        Args:
            call: The capability call.

        Returns:
            The provider's result, or a failed result describing why the
            call could not complete.
        """
        start = time.perf_counter()

        try:
            provider = self._registry.require(call.provider, call.action)
        except ConductorException as e:
            logger.warning(
                "Rejected capability call",
                extra={"provider": call.provider, "action": call.action, "error_code": e.code},
            )
            return ToolResult(success=False, error=e.message, call_id=call.id)

        timeout = self.clamp_timeout(call.timeout)
        try:
            result = await asyncio.wait_for(provider.execute(call), timeout=timeout)
        except TimeoutError:
            error = StepTimeoutError(call.provider, call.action, timeout)
            logger.warning(
                "Capability call timed out",
                extra={"provider": call.provider, "action": call.action, "timeout": timeout},
            )
            result = ToolResult(success=False, error=error.message)
        except Exception as e:
            logger.warning(
                "Capability call raised",
                extra={
                    "provider": call.provider,
                    "action": call.action,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            result = ToolResult(success=False, error=str(e) or type(e).__name__)

        if not result.duration_ms:
            result.duration_ms = int((time.perf_counter() - start) * 1000)
        result.call_id = call.id
        return result

    async def execute_batch(self, calls: list[ToolCall]) -> BatchResult:
        """Run *calls* concurrently, at most ``max_concurrent`` at a time.

        All calls run to completion regardless of sibling failures.
        """
        if not calls:
            return BatchResult(calls=[], results=[], total_tokens=0, duration_ms=0)

        start = time.perf_counter()
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def _bounded(call: ToolCall) -> ToolResult:
            async with semaphore:
                return await self.execute_step(call)

        raw_results = await asyncio.gather(*(_bounded(c) for c in calls), return_exceptions=True)

        results: list[ToolResult] = []
        for call, raw in zip(calls, raw_results, strict=True):
            if isinstance(raw, BaseException):
                results.append(ToolResult(success=False, error=str(raw), call_id=call.id))
            else:
                results.append(raw)

        batch = BatchResult(
            calls=list(calls),
            results=results,
            total_tokens=sum(r.tokens_used for r in results),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            "Batch execution complete",
            extra={
                "call_count": len(calls),
                "success_count": batch.success_count,
                "failed_count": batch.failed_count,
                "duration_ms": batch.duration_ms,
            },
        )
        return batch

    async def execute_plan(
        self,
        plan: Plan,
        variables: ValueMap | None = None,
        record: ExecutionRecord | None = None,
        on_progress: Callable[[ProgressUpdate], None] | None = None,
        on_checkpoint: Callable[[ExecutionRecord], Awaitable[None]] | None = None,
    ) -> ExecutionRecord:
        """Run *plan* in dependency order.

        Steps whose dependencies have all succeeded run together as one
        concurrent wave.  Each step's output is bound as ``{{step_N}}``
        for later steps.  When any step in a wave fails, the remaining
        steps are not started and the record fails with the first failed
        step; results of completed steps are kept.

        Args:
            plan: A validated plan.
            variables: Placeholder bindings for step inputs.
            record: Record to fill in; a new one is created if omitted.
            on_progress: Optional callback for progress updates.
            on_checkpoint: Awaited with the record once it is running and
                again after every wave, so it can be persisted as it fills.

        Returns:
            The completed or failed execution record.
        """
        bindings: ValueMap = dict(variables or {})
        record = record or ExecutionRecord.for_plan(plan, bindings)
        record.step_count = len(plan.steps)
        record.start()
        if on_checkpoint is not None:
            await on_checkpoint(record)

        total = len(plan.steps)
        succeeded: set[int] = set()
        pending: list[PlanStep] = list(plan.steps)

        logger.info(
            "Executing plan",
            extra={"plan_id": plan.id, "intent": plan.intent, "steps": total},
        )

        while pending:
            ready = [s for s in pending if all(d in succeeded for d in s.depends)]
            if not ready:
                record.fail(
                    "Unresolvable step dependencies",
                    failed_step=pending[0].id,
                )
                break

            calls = [
                ToolCall(
                    provider=step.provider,
                    action=step.action,
                    input=_as_map(fill_placeholders(step.input, bindings)),
                    timeout=step.timeout,
                )
                for step in ready
            ]
            for step in ready:
                _notify(on_progress, step, "starting", total, f"Running {step.capability}")

            batch = await self.execute_batch(calls)

            failed: list[tuple[PlanStep, ToolResult]] = []
            for step, result in zip(ready, batch.results, strict=True):
                record.add_result(
                    StepResult(
                        step_id=step.id,
                        success=result.success,
                        data=result.data,
                        error=result.error,
                        tokens_used=result.tokens_used,
                        cost=result.tokens_used * COST_PER_TOKEN,
                        duration_ms=result.duration_ms,
                    )
                )
                if result.success:
                    succeeded.add(step.id)
                    bindings[f"{STEP_OUTPUT_PREFIX}{step.id}"] = result.data
                    _notify(on_progress, step, "complete", total, f"{step.capability} complete")
                else:
                    failed.append((step, result))
                    _notify(on_progress, step, "failed", total, result.error or "failed")

            pending = [s for s in pending if s not in ready]

            if failed:
                step, result = min(failed, key=lambda pair: pair[0].id)
                record.fail(
                    f"Step {step.id} ({step.capability}) failed: {result.error}",
                    failed_step=step.id,
                )
                break
            if pending and on_checkpoint is not None:
                await on_checkpoint(record)

        if record.status.value == "running":
            record.complete()

        logger.info(
            "Plan execution finished",
            extra={
                "plan_id": plan.id,
                "status": record.status.value,
                "steps_completed": record.steps_completed,
                "failed_step": record.failed_step,
                "duration_ms": record.duration_ms,
            },
        )
        return record


def _as_map(value: object) -> ValueMap:
    return value if isinstance(value, dict) else {}


def _notify(
    on_progress: Callable[[ProgressUpdate], None] | None,
    step: PlanStep,
    status: str,
    total: int,
    message: str,
) -> None:
    if on_progress is None:
        return
    try:
        on_progress(
            ProgressUpdate(
                step_id=step.id,
                capability=step.capability,
                status=status,
                total_steps=total,
                message=message,
            )
        )
    except Exception:
        logger.warning("Progress callback failed", exc_info=True)
