"""Plan cache: reusable plans keyed by intent, with success tracking.

Lookup order for an intent key:

1. The best active pattern, if its success rate clears the threshold.
2. The newest active plan stored for the key.
3. A built-in template whose required variables are available.
4. A freshly generated plan.

Every candidate passes the guardrail before it is returned.  Template
and generated plans are only written to the store after their first
successful run; a pattern whose rolling success rate falls below the
retirement threshold is deactivated but stays listable.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from conductor.core.exceptions import PlanGenerationError, PlanValidationError
from conductor.plans.generator import PlanGenerator
from conductor.plans.models import ExecutionRecord, Plan, PlanPattern
from conductor.plans.templates import get_template, missing_variables
from conductor.plans.validation import DEFAULT_MAX_STEPS, validate_plan
from conductor.providers.registry import ProviderRegistry
from conductor.storage.base import Store

if TYPE_CHECKING:
    from conductor.classifier.classifier import Intent

logger = logging.getLogger(__name__)

PLANS_TABLE = "plans"
PATTERNS_TABLE = "plan_patterns"
EXECUTIONS_TABLE = "plan_executions"

PlanSource = Literal["pattern", "cached", "template", "generated"]


@dataclass
class PlanSelection:
    """A validated plan and where it came from."""

    plan: Plan
    source: PlanSource
    pattern_id: str | None = None
    tokens_used: int = 0

    @property
    def stored(self) -> bool:
        """True when the plan already lives in the cache."""
        return self.pattern_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan.id,
            "intent": self.plan.intent,
            "source": self.source,
            "pattern_id": self.pattern_id,
            "tokens_used": self.tokens_used,
        }


class PlanCache:
    """Service class for plan lookup, storage and outcome tracking."""

    def __init__(
        self,
        store: Store,
        registry: ProviderRegistry,
        generator: PlanGenerator | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        min_success_rate: float = 0.7,
        retirement_threshold: float = 0.3,
        retirement_min_uses: int = 3,
        use_templates: bool = True,
    ) -> None:
        """Initialize the plan cache.

        Args:
            store: Durable store holding plans, patterns and executions.
            registry: Live provider registry for guardrail validation.
            generator: Plan generator; None disables generation.
            max_steps: Step ceiling applied by the guardrail.
            min_success_rate: A pattern must exceed this to be reused.
            retirement_threshold: Patterns below this rate are retired.
            retirement_min_uses: Uses required before retirement applies.
            use_templates: Whether built-in templates are consulted.
        """
        self._store = store
        self._registry = registry
        self._generator = generator
        self.max_steps = max_steps
        self.min_success_rate = min_success_rate
        self.retirement_threshold = retirement_threshold
        self.retirement_min_uses = retirement_min_uses
        self.use_templates = use_templates

    # -- Lookup ---------------------------------------------------------------

    async def get_or_create(
        self, intent: "Intent", message: str, context: str = ""
    ) -> PlanSelection:
        """Find or build a validated plan for *intent*.

        Args:
            intent: The classified intent; ``intent.key`` is the cache key.
            message: The user's message, passed to generation.
            context: Optional prompt context for generation.

        Returns:
            The selected plan and its source.

        Raises:
            PlanValidationError: If a generated plan fails the guardrail.
            PlanGenerationError: If no plan exists and none can be generated.
            ConductorException: If the generation call fails.
        """
        key = intent.key

        pattern = await self.best_pattern(key)
        if pattern is not None and pattern.success_rate > self.min_success_rate:
            plan = await self._load_valid(pattern.plan_id)
            if plan is not None:
                logger.info(
                    "Plan cache hit (pattern)",
                    extra={"intent": key, "plan_id": plan.id, "success_rate": pattern.success_rate},
                )
                return PlanSelection(plan=plan, source="pattern", pattern_id=pattern.id)

        rows = await self._store.scan(PLANS_TABLE, filters={"intent": key, "active": True})
        for row in rows:
            plan = self._validated(Plan.from_dict(row))
            if plan is not None:
                logger.info("Plan cache hit (stored)", extra={"intent": key, "plan_id": plan.id})
                return PlanSelection(plan=plan, source="cached", pattern_id=row.get("pattern_id"))

        if self.use_templates:
            template = get_template(key)
            if template is not None and not missing_variables(template, intent.variables):
                plan = self._validated(template)
                if plan is not None:
                    logger.info("Using built-in plan template", extra={"intent": key})
                    return PlanSelection(plan=plan, source="template")

        if self._generator is None or not self._generator.available:
            raise PlanGenerationError(key, "no stored plan and no generator configured")

        generated, tokens = await self._generator.generate(intent, message, context)
        plan = validate_plan(generated, self._registry, self.max_steps)
        return PlanSelection(plan=plan, source="generated", tokens_used=tokens)

    def _validated(self, plan: Plan) -> Plan | None:
        # Stored plans can go stale when providers are removed
        try:
            return validate_plan(plan, self._registry, self.max_steps)
        except PlanValidationError as e:
            logger.warning(
                "Skipping plan that no longer validates",
                extra={"plan_id": plan.id, "problems": e.problems},
            )
            return None

    async def _load_valid(self, plan_id: str) -> Plan | None:
        plan = await self.get_plan(plan_id)
        return self._validated(plan) if plan is not None else None

    async def best_pattern(self, intent: str) -> PlanPattern | None:
        """Highest success-rate active pattern with at least one success.

        Patterns whose rate is under the retirement threshold are skipped
        even before they have enough uses to be retired.
        """
        rows = await self._store.scan(PATTERNS_TABLE, filters={"intent": intent, "active": True})
        candidates = [PlanPattern.from_dict(r) for r in rows]
        candidates = [
            p
            for p in candidates
            if p.success_count > 0 and p.success_rate >= self.retirement_threshold
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: (p.success_rate, p.usage_count))

    async def get_plan(self, plan_id: str) -> Plan | None:
        row = await self._store.get(PLANS_TABLE, plan_id)
        return Plan.from_dict(row) if row else None

    async def get_pattern(self, pattern_id: str) -> PlanPattern | None:
        row = await self._store.get(PATTERNS_TABLE, pattern_id)
        return PlanPattern.from_dict(row) if row else None

    async def list_patterns(self, intent: str | None = None) -> list[PlanPattern]:
        """All patterns, retired ones included, most used first."""
        rows = await self._store.scan(
            PATTERNS_TABLE,
            filters={"intent": intent} if intent else None,
            order_by="usage_count",
        )
        return [PlanPattern.from_dict(r) for r in rows]

    # -- Writes ---------------------------------------------------------------

    async def store_plan(self, plan: Plan) -> PlanPattern:
        """Persist *plan* and create its pattern with zeroed statistics.

        Returns:
            The new pattern.
        """
        now = datetime.now(UTC)
        pattern = PlanPattern(
            id=str(uuid.uuid4()),
            intent=plan.intent,
            plan_id=plan.id,
            created_at=now,
            updated_at=now,
        )
        plan.updated_at = now
        if plan.created_at is None:
            plan.created_at = now

        row = plan.to_dict()
        row.update({"pattern_id": pattern.id, "active": True})
        await self._store.upsert(PLANS_TABLE, plan.id, row)
        await self._store.upsert(PATTERNS_TABLE, pattern.id, pattern.to_dict())

        logger.info(
            "Stored plan",
            extra={"plan_id": plan.id, "pattern_id": pattern.id, "intent": plan.intent},
        )
        return pattern

    async def record_outcome(
        self, selection: PlanSelection, record: ExecutionRecord
    ) -> PlanPattern | None:
        """Update statistics after *selection* ran, storing new plans on success.

        A plan that is not yet stored is written only if this run
        succeeded; a failed first run discards it.

        Returns:
            The updated pattern, or None if the plan was discarded.
        """
        success = record.succeeded
        pattern_id = selection.pattern_id

        if pattern_id is None:
            if not success:
                logger.info(
                    "Discarding plan after failed first run",
                    extra={"plan_id": selection.plan.id, "source": selection.source},
                )
                return None
            pattern = await self.store_plan(selection.plan)
            pattern_id = pattern.id
            selection.pattern_id = pattern_id

        record.pattern_id = pattern_id
        deltas = {"usage_count": 1, "success_count" if success else "failure_count": 1}
        row = await self._store.increment(PATTERNS_TABLE, pattern_id, deltas)
        if row is None:
            logger.warning("Pattern missing while recording outcome", extra={"pattern_id": pattern_id})
            return None

        pattern = PlanPattern.from_dict(row)
        now = datetime.now(UTC)
        pattern.success_rate = pattern.compute_success_rate()
        pattern.last_used = now
        pattern.updated_at = now
        if success:
            pattern.last_succeeded = now
        else:
            pattern.last_failed = now

        if (
            pattern.active
            and pattern.usage_count >= self.retirement_min_uses
            and pattern.success_rate < self.retirement_threshold
        ):
            pattern.active = False
            await self._deactivate_plan(pattern.plan_id)
            logger.info(
                "Retired plan pattern",
                extra={
                    "pattern_id": pattern.id,
                    "intent": pattern.intent,
                    "success_rate": pattern.success_rate,
                    "usage_count": pattern.usage_count,
                },
            )

        await self._store.upsert(PATTERNS_TABLE, pattern.id, pattern.to_dict())

        logger.info(
            "Recorded plan outcome",
            extra={
                "pattern_id": pattern.id,
                "success": success,
                "usage_count": pattern.usage_count,
                "success_rate": pattern.success_rate,
            },
        )
        return pattern

    async def _deactivate_plan(self, plan_id: str) -> None:
        row = await self._store.get(PLANS_TABLE, plan_id)
        if row is None:
            return
        row["active"] = False
        row["updated_at"] = datetime.now(UTC).isoformat()
        await self._store.upsert(PLANS_TABLE, plan_id, row)

    async def save_execution(self, record: ExecutionRecord) -> None:
        """Append or update an execution record."""
        await self._store.upsert(EXECUTIONS_TABLE, record.id, record.to_dict())

    async def execution_history(self, plan_id: str, limit: int = 10) -> list[ExecutionRecord]:
        """Most recent executions of *plan_id*."""
        rows = await self._store.scan(
            EXECUTIONS_TABLE,
            filters={"plan_id": plan_id},
            order_by="started_at",
            limit=limit,
        )
        return [ExecutionRecord.from_dict(r) for r in rows]
