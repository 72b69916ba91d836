"""Plan, pattern and execution record models.

A Plan is an ordered set of capability calls for one intent key.  Steps
form a DAG through their ``depends`` lists; step ids are 1-based and
sequential.  A PlanPattern carries the usage statistics of one stored
plan, and an ExecutionRecord captures a single attempt at running it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from conductor.core.values import Value, ValueMap, coerce_map, coerce_value

DEFAULT_STEP_TIMEOUT = 120.0

# $0.50 per 1M tokens
COST_PER_TOKEN = 0.5 / 1_000_000


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ExecutionStatus(str, Enum):
    """Lifecycle of an execution record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PlanStep:
    """One capability call inside a plan."""

    id: int
    provider: str
    action: str
    input: ValueMap = field(default_factory=dict)
    depends: list[int] = field(default_factory=list)
    timeout: float = DEFAULT_STEP_TIMEOUT

    @property
    def capability(self) -> str:
        return f"{self.provider}.{self.action}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "action": self.action,
            "input": self.input,
            "depends": list(self.depends),
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanStep":
        # Older rows and some model output call the provider "subagent"
        provider = data.get("provider") or data.get("subagent") or ""
        return cls(
            id=int(data["id"]),
            provider=str(provider),
            action=str(data.get("action", "")),
            input=coerce_map(data.get("input")),
            depends=[int(d) for d in data.get("depends") or []],
            timeout=float(data.get("timeout") or DEFAULT_STEP_TIMEOUT),
        )


@dataclass
class PlanVariable:
    """A ``{{name}}`` placeholder a plan expects to be bound at run time."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Value = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
            "default": self.default,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanVariable":
        return cls(
            name=str(data.get("name", "")),
            type=str(data.get("type") or "string"),
            description=str(data.get("description") or ""),
            required=bool(data.get("required", False)),
            default=coerce_value(data.get("default")),
        )


@dataclass
class Plan:
    """A reusable set of capability calls for an intent key.

    Steps are immutable once the plan is stored; only the owning
    pattern's statistics change afterwards.
    """

    id: str
    intent: str
    description: str
    steps: list[PlanStep] = field(default_factory=list)
    variables: list[PlanVariable] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def new(
        cls,
        intent: str,
        description: str,
        steps: list[PlanStep] | None = None,
        variables: list[PlanVariable] | None = None,
    ) -> "Plan":
        """Create an unsaved plan with a fresh id."""
        now = datetime.now(UTC)
        return cls(
            id=str(uuid.uuid4()),
            intent=intent,
            description=description,
            steps=list(steps or []),
            variables=list(variables or []),
            created_at=now,
            updated_at=now,
        )

    def step(self, step_id: int) -> PlanStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def providers(self) -> set[str]:
        """Names of every provider the plan touches."""
        return {step.provider for step in self.steps}

    def to_dict(self) -> dict[str, Any]:
        """Serialize plan to a dictionary.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "id": self.id,
            "intent": self.intent,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "variables": [v.to_dict() for v in self.variables],
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        """Create a Plan instance from a dictionary.

        Args:
            data: Dictionary containing plan data.

        Returns:
            Plan instance with restored state.
        """
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            intent=str(data.get("intent", "")),
            description=str(data.get("description", "")),
            steps=[PlanStep.from_dict(s) for s in data.get("steps") or []],
            variables=[PlanVariable.from_dict(v) for v in data.get("variables") or []],
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
        )

    def format(self) -> str:
        """Human-readable summary with a cost estimate."""
        lines = [f"Plan: {self.intent}", f"Description: {self.description}"]
        if self.variables:
            lines.append("")
            lines.append("Variables:")
            for v in self.variables:
                required = " (required)" if v.required else ""
                lines.append(f"  - {v.name}: {v.type}{required}")
        lines.append("")
        lines.append("Steps:")
        for index, step in enumerate(self.steps, start=1):
            line = f"  {index}. {step.capability}"
            if step.timeout > 0:
                line += f" (timeout: {step.timeout:g}s)"
            if step.depends:
                line += f" [depends on: {step.depends}]"
            lines.append(line)
        estimate = estimate_cost(self)
        lines.append("")
        lines.append(
            f"Estimated: {estimate.estimated_tokens} tokens, ${estimate.estimated_cost:.4f}"
        )
        return "\n".join(lines)


@dataclass
class StepResult:
    """Outcome of one plan step."""

    step_id: int
    success: bool
    data: Value = None
    error: str | None = None
    tokens_used: int = 0
    cost: float = 0.0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        return cls(
            step_id=int(data["step_id"]),
            success=bool(data.get("success", False)),
            data=coerce_value(data.get("data")),
            error=data.get("error"),
            tokens_used=int(data.get("tokens_used") or 0),
            cost=float(data.get("cost") or 0.0),
            duration_ms=int(data.get("duration_ms") or 0),
        )


@dataclass
class ExecutionRecord:
    """One attempt at running a plan.

    Results are appended as steps finish; ``steps_completed`` never
    exceeds ``step_count``.
    """

    plan_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    pattern_id: str | None = None
    variables: ValueMap = field(default_factory=dict)
    results: list[StepResult] = field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: str | None = None
    failed_step: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    step_count: int = 0
    steps_completed: int = 0

    @classmethod
    def for_plan(cls, plan: Plan, variables: ValueMap | None = None) -> "ExecutionRecord":
        return cls(
            plan_id=plan.id,
            variables=dict(variables or {}),
            step_count=len(plan.steps),
        )

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def start(self) -> None:
        self.status = ExecutionStatus.RUNNING
        self.started_at = datetime.now(UTC)

    def add_result(self, result: StepResult) -> None:
        """Append a step result and roll its usage into the totals."""
        self.results.append(result)
        self.total_tokens += result.tokens_used
        self.total_cost += result.cost
        if result.success:
            self.steps_completed = min(self.steps_completed + 1, self.step_count)

    def result_for(self, step_id: int) -> StepResult | None:
        for result in self.results:
            if result.step_id == step_id:
                return result
        return None

    def _finish(self, status: ExecutionStatus) -> None:
        self.status = status
        self.completed_at = datetime.now(UTC)
        if self.started_at is not None:
            self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)

    def complete(self) -> None:
        self._finish(ExecutionStatus.COMPLETED)

    def fail(self, error: str, failed_step: int | None = None) -> None:
        self.error = error
        if failed_step is not None and self.failed_step is None:
            self.failed_step = failed_step
        self._finish(ExecutionStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize execution record to a dictionary.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "pattern_id": self.pattern_id,
            "variables": self.variables,
            "results": [r.to_dict() for r in self.results],
            "status": self.status.value,
            "error": self.error,
            "failed_step": self.failed_step,
            "started_at": _format_time(self.started_at),
            "completed_at": _format_time(self.completed_at),
            "duration_ms": self.duration_ms,
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "step_count": self.step_count,
            "steps_completed": self.steps_completed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        return cls(
            id=str(data["id"]),
            plan_id=str(data["plan_id"]),
            pattern_id=data.get("pattern_id"),
            variables=coerce_map(data.get("variables")),
            results=[StepResult.from_dict(r) for r in data.get("results") or []],
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            error=data.get("error"),
            failed_step=data.get("failed_step"),
            started_at=_parse_time(data.get("started_at")),
            completed_at=_parse_time(data.get("completed_at")),
            duration_ms=int(data.get("duration_ms") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
            total_cost=float(data.get("total_cost") or 0.0),
            step_count=int(data.get("step_count") or 0),
            steps_completed=int(data.get("steps_completed") or 0),
        )


@dataclass
class PlanPattern:
    """Usage statistics for one stored plan.

    Retired patterns (``active=False``) are skipped by best-pattern
    lookup but remain listable.
    """

    id: str
    intent: str
    plan_id: str
    usage_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    active: bool = True
    last_used: datetime | None = None
    last_succeeded: datetime | None = None
    last_failed: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def compute_success_rate(self) -> float:
        """Success rate between 0.0 and 1.0, or 0.0 if never used."""
        if self.usage_count == 0:
            return 0.0
        return self.success_count / self.usage_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "intent": self.intent,
            "plan_id": self.plan_id,
            "usage_count": self.usage_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "active": self.active,
            "last_used": _format_time(self.last_used),
            "last_succeeded": _format_time(self.last_succeeded),
            "last_failed": _format_time(self.last_failed),
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanPattern":
        return cls(
            id=str(data["id"]),
            intent=str(data["intent"]),
            plan_id=str(data["plan_id"]),
            usage_count=int(data.get("usage_count") or 0),
            success_count=int(data.get("success_count") or 0),
            failure_count=int(data.get("failure_count") or 0),
            success_rate=float(data.get("success_rate") or 0.0),
            active=bool(data.get("active", True)),
            last_used=_parse_time(data.get("last_used")),
            last_succeeded=_parse_time(data.get("last_succeeded")),
            last_failed=_parse_time(data.get("last_failed")),
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
        )


@dataclass
class CostEstimate:
    """Rough token and dollar cost of running a plan."""

    total_steps: int
    estimated_tokens: int
    estimated_cost: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_steps": self.total_steps,
            "estimated_tokens": self.estimated_tokens,
            "estimated_cost": self.estimated_cost,
        }


def _estimate_step_tokens(step: PlanStep) -> int:
    # 100 base, ~4 chars per token for strings, flat rates for containers
    tokens = 100
    for value in step.input.values():
        if isinstance(value, str):
            tokens += len(value) // 4
        elif isinstance(value, dict):
            tokens += 200
        elif isinstance(value, list):
            tokens += 50 * len(value)
    return tokens


def estimate_cost(plan: Plan) -> CostEstimate:
    """Estimate the token usage and dollar cost of running *plan*."""
    tokens = sum(_estimate_step_tokens(step) for step in plan.steps)
    return CostEstimate(
        total_steps=len(plan.steps),
        estimated_tokens=tokens,
        estimated_cost=tokens * COST_PER_TOKEN,
    )
