"""Plan validation and capability guardrail.

Every plan, whether generated, templated or loaded from the cache, is
checked here before it runs.  Structural problems and capabilities
missing from the live registry are collected and reported together;
an oversized plan is trimmed to the step ceiling instead of rejected.
"""

import logging
from dataclasses import replace

from conductor.core.exceptions import PlanValidationError
from conductor.core.values import find_placeholders
from conductor.plans.models import Plan, PlanStep
from conductor.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 8

# Providers that reach outside the machine; chat turns only get them on request
RESEARCH_PROVIDERS = frozenset({"research"})
EXPLICIT_SEARCH_MARKERS = ("search", "look up", "google", "browse")


def _check_steps(steps: list[PlanStep], registry: ProviderRegistry | None) -> list[str]:
    problems: list[str] = []
    seen: set[int] = set()
    for index, step in enumerate(steps, start=1):
        label = f"step {index}"
        if step.id != index:
            problems.append(f"{label}: id {step.id} is out of sequence")
        if step.id in seen:
            problems.append(f"duplicate step id: {step.id}")

        if not step.provider:
            problems.append(f"{label}: provider cannot be empty")
        if not step.action:
            problems.append(f"{label}: action cannot be empty")
        if step.provider and step.action and registry is not None:
            if step.provider not in registry:
                problems.append(f"{label}: unknown provider '{step.provider}'")
            elif not registry.has_action(step.provider, step.action):
                problems.append(
                    f"{label}: action '{step.action}' is not allowed for provider '{step.provider}'"
                )

        if step.timeout < 0:
            problems.append(f"{label}: timeout cannot be negative")

        for dep in step.depends:
            if dep >= step.id:
                problems.append(f"{label}: dependency on step {dep} creates a cycle")
            elif dep not in seen:
                problems.append(f"{label}: invalid dependency on step {dep}")
        seen.add(step.id)
    return problems


def validate_plan(
    plan: Plan,
    registry: ProviderRegistry | None,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> Plan:
    """Validate *plan* against structure rules and the live registry.

    Args:
        plan: Plan to check.
        registry: Live provider registry; None skips the capability check.
        max_steps: Step ceiling; longer plans are trimmed to it.

    Returns:
        The plan, trimmed to *max_steps* if it was longer.

    Raises:
        PlanValidationError: Listing every problem found.
    """
    problems: list[str] = []
    if not plan.intent:
        problems.append("plan intent cannot be empty")
    if not plan.description:
        problems.append("plan description cannot be empty")
    if not plan.steps:
        problems.append("plan must have at least one step")

    steps = plan.steps
    if max_steps > 0 and len(steps) > max_steps:
        logger.warning(
            "Plan exceeds step ceiling, trimming",
            extra={"plan_id": plan.id, "steps": len(steps), "max_steps": max_steps},
        )
        steps = steps[:max_steps]

    problems.extend(_check_steps(steps, registry))

    names: set[str] = set()
    for index, variable in enumerate(plan.variables, start=1):
        if not variable.name:
            problems.append(f"variable {index}: name cannot be empty")
        elif variable.name in names:
            problems.append(f"duplicate variable name: {variable.name}")
        names.add(variable.name)

    if problems:
        logger.warning(
            "Plan rejected",
            extra={"plan_id": plan.id, "intent": plan.intent, "problems": problems},
        )
        raise PlanValidationError(problems, plan_id=plan.id)

    used: set[str] = set()
    for step in steps:
        used |= find_placeholders(step.input)
    unused = sorted(names - used)
    if unused:
        logger.warning(
            "Plan declares unused variables",
            extra={"plan_id": plan.id, "variables": unused},
        )

    if steps is plan.steps:
        return plan
    return replace(plan, steps=list(steps))


def plan_allowed(intent_category: str, message: str, plan: Plan) -> bool:
    """Check that a plan fits the request that produced it.

    Conversational intents may not use research providers unless the user
    explicitly asked for a search.
    """
    msg = message.lower()
    explicit_search = any(marker in msg for marker in EXPLICIT_SEARCH_MARKERS)
    if intent_category.startswith("chat") and not explicit_search:
        return not any(step.provider in RESEARCH_PROVIDERS for step in plan.steps)
    return True
