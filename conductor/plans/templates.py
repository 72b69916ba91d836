"""Built-in plan templates and variable binding.

Templates cover common intents so they run without a generation call.
Placeholders of the form ``{{name}}`` are bound from the intent's
variables at execution time; ``{{step_N}}`` placeholders are bound by
the executor to earlier step outputs.
"""

import logging

from conductor.core.exceptions import PlanValidationError
from conductor.core.values import Value, ValueMap
from conductor.plans.models import DEFAULT_STEP_TIMEOUT, Plan, PlanStep, PlanVariable

logger = logging.getLogger(__name__)


class PlanBuilder:
    """Fluent construction of a plan, numbering steps as they are added."""

    def __init__(self, intent: str, description: str) -> None:
        self._intent = intent
        self._description = description
        self._steps: list[PlanStep] = []
        self._variables: list[PlanVariable] = []

    def step(
        self,
        provider: str,
        action: str,
        input: ValueMap | None = None,
        depends: list[int] | None = None,
        timeout: float = DEFAULT_STEP_TIMEOUT,
    ) -> "PlanBuilder":
        self._steps.append(
            PlanStep(
                id=len(self._steps) + 1,
                provider=provider,
                action=action,
                input=dict(input or {}),
                depends=list(depends or []),
                timeout=timeout,
            )
        )
        return self

    def variable(
        self,
        name: str,
        type: str = "string",
        description: str = "",
        required: bool = False,
        default: Value = None,
    ) -> "PlanBuilder":
        self._variables.append(
            PlanVariable(
                name=name,
                type=type,
                description=description,
                required=required,
                default=default,
            )
        )
        return self

    def build(self) -> Plan:
        return Plan.new(
            intent=self._intent,
            description=self._description,
            steps=list(self._steps),
            variables=list(self._variables),
        )


def _fix_tests() -> Plan:
    return (
        PlanBuilder("code.fix_tests", "Fix failing tests in a codebase")
        .variable("dir", "file_path", "Path to the repository", default=".")
        .variable("test", "string", "Test pattern to run", default="all")
        .step("code", "git_status", {"path": "{{dir}}"}, timeout=30)
        .step("code", "run_tests", {"path": "{{dir}}", "pattern": "{{test}}"}, timeout=300)
        .step("code", "analyze_failures", {"path": "{{dir}}", "output": "{{step_2}}"},
              depends=[2], timeout=120)
        .build()
    )


def _analyze() -> Plan:
    return (
        PlanBuilder("code.analyze", "Analyze a codebase structure and dependencies")
        .variable("dir", "file_path", "Path to analyze", default=".")
        .step("file", "list", {"path": "{{dir}}", "recursive": True}, timeout=60)
        .step("code", "analyze_structure", {"path": "{{dir}}", "files": "{{step_1}}"},
              depends=[1], timeout=180)
        .build()
    )


def _fetch_url() -> Plan:
    return (
        PlanBuilder("research.fetch_url", "Fetch and summarize a URL")
        .variable("url", "string", "URL to fetch", required=True)
        .step("research", "fetch_url", {"url": "{{url}}"}, timeout=60)
        .step("research", "summarize", {"content": "{{step_1}}"}, depends=[1], timeout=60)
        .build()
    )


def _search_replace() -> Plan:
    return (
        PlanBuilder("file.search_replace", "Search for text and replace in files")
        .variable("path", "file_path", "File or directory path", required=True)
        .variable("search", "string", "Text to search for", required=True)
        .variable("replace", "string", "Replacement text", required=True)
        .step("file", "search", {"path": "{{path}}", "pattern": "{{search}}"}, timeout=60)
        .step("file", "replace",
              {"path": "{{path}}", "search": "{{search}}", "replace": "{{replace}}"},
              timeout=60)
        .build()
    )


_TEMPLATES = {
    "code.fix_tests": _fix_tests,
    "code.analyze": _analyze,
    "research.fetch_url": _fetch_url,
    "file.search_replace": _search_replace,
}


def list_templates() -> list[str]:
    """Intent keys that have a built-in template."""
    return list(_TEMPLATES)


def get_template(intent: str) -> Plan | None:
    """Return a fresh copy of the template for *intent*, or None."""
    factory = _TEMPLATES.get(intent)
    return factory() if factory else None


def missing_variables(plan: Plan, provided: ValueMap) -> list[str]:
    """Required variables with no provided value."""
    return [
        v.name
        for v in plan.variables
        if v.required and provided.get(v.name) in (None, "")
    ]


def bind_variables(plan: Plan, provided: ValueMap) -> ValueMap:
    """Resolve the bindings a plan runs with.

    Declared defaults fill in for absent variables; extra provided
    values are passed through so free-form placeholders still bind.

    Raises:
        PlanValidationError: If a required variable has no value.
    """
    missing = missing_variables(plan, provided)
    if missing:
        raise PlanValidationError(
            [f"required variable '{name}' not provided" for name in missing],
            plan_id=plan.id,
        )

    bindings: ValueMap = {}
    for variable in plan.variables:
        if variable.default is not None:
            bindings[variable.name] = variable.default
    bindings.update({k: v for k, v in provided.items() if v not in (None, "")})
    return bindings

