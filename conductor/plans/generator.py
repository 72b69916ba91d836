"""Plan generation through the model gateway.

The prompt enumerates the providers and actions that are live in the
registry and fixes the JSON shape; the model's output is validated with
pydantic before it becomes a Plan.  Guardrail checks against the
registry happen afterwards in ``validate_plan``.
"""

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from conductor.core.exceptions import ModelResponseError, PlanGenerationError
from conductor.gateway.types import ModelRequest
from conductor.plans.models import DEFAULT_STEP_TIMEOUT, Plan, PlanStep, PlanVariable
from conductor.providers.registry import ProviderRegistry

if TYPE_CHECKING:
    from conductor.classifier.classifier import Intent
    from conductor.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_MAX_TOKENS = 800

PLAN_GENERATION_PROMPT = """You are a plan generator for an AI assistant.

Generate a JSON execution plan for the following request:

Intent: {intent}
Known variables: {variables}
Context:
{context}
User Message: {message}

Return ONLY a JSON object with this format:
{{
  "intent": "category.subcategory",
  "description": "Brief description of what the plan does",
  "steps": [
    {{
      "id": 1,
      "provider": "provider_name",
      "action": "action_name",
      "input": {{"key": "value"}},
      "depends": [],
      "timeout": 60
    }}
  ],
  "variables": [
    {{
      "name": "var_name",
      "type": "string|file_path|number",
      "description": "What this variable is for",
      "required": true,
      "default": "default_value"
    }}
  ]
}}

Rules:
- Use at most {max_steps} steps, numbered from 1.
- "depends" may only list ids of earlier steps.
- Refer to a variable as {{{{var_name}}}} and to an earlier step's output as {{{{step_N}}}}.
- Use ONLY these providers and actions:
{providers}

Respond with ONLY the JSON object."""


class GeneratedStep(BaseModel):
    id: int = Field(ge=1)
    provider: str
    action: str
    input: dict[str, Any] = Field(default_factory=dict)
    depends: list[int] = Field(default_factory=list)
    timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, ge=0)

    @model_validator(mode="before")
    @classmethod
    def accept_subagent(cls, data: Any) -> Any:
        if isinstance(data, dict) and "provider" not in data and "subagent" in data:
            data = {**data, "provider": data["subagent"]}
        return data

    @field_validator("provider", "action")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("input", mode="before")
    @classmethod
    def default_input(cls, v: Any) -> Any:
        return v if v is not None else {}

    @field_validator("depends", mode="before")
    @classmethod
    def default_depends(cls, v: Any) -> Any:
        return v if v is not None else []


class GeneratedVariable(BaseModel):
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None


class GeneratedPlan(BaseModel):
    """Expected shape of a generated plan."""

    intent: str = ""
    description: str
    steps: list[GeneratedStep] = Field(min_length=1)
    variables: list[GeneratedVariable] = Field(default_factory=list)

    @field_validator("variables", mode="before")
    @classmethod
    def default_variables(cls, v: Any) -> Any:
        return v if v is not None else []

    def to_plan(self, intent_key: str) -> Plan:
        return Plan.new(
            # The classified intent is the cache key, whatever the model echoed back
            intent=intent_key,
            description=self.description,
            steps=[PlanStep.from_dict(s.model_dump()) for s in self.steps],
            variables=[PlanVariable.from_dict(v.model_dump()) for v in self.variables],
        )


class PlanGenerator:
    """Produces fresh plans for intents with no cached or template plan."""

    def __init__(
        self,
        gateway: "ModelGateway",
        registry: ProviderRegistry,
        max_steps: int = 8,
        max_tokens: int = DEFAULT_GENERATION_MAX_TOKENS,
    ) -> None:
        """Initialize the generator.

        Args:
            gateway: Model gateway used for the generation call.
            registry: Live registry whose capabilities the prompt lists.
            max_steps: Step ceiling stated in the prompt.
            max_tokens: Token budget for one generation call.
        """
        self._gateway = gateway
        self._registry = registry
        self._max_steps = max_steps
        self._max_tokens = max_tokens

    @property
    def available(self) -> bool:
        return self._gateway.available

    def build_prompt(self, intent: "Intent", message: str, context: str = "") -> str:
        variables = ", ".join(f"{k}={v}" for k, v in sorted(intent.variables.items()))
        return PLAN_GENERATION_PROMPT.format(
            intent=intent.key,
            variables=variables or "none",
            context=context or "None.",
            message=message,
            max_steps=self._max_steps,
            providers=self._registry.describe() or "- (none)",
        )

    async def generate(
        self, intent: "Intent", message: str, context: str = ""
    ) -> tuple[Plan, int]:
        """Generate an unvalidated plan for *intent*.

        Args:
            intent: Classified intent; its key becomes the plan's intent.
            message: The user's message.
            context: Optional memory or graph context for the prompt.

        Returns:
            The plan and the tokens spent producing it.

        Raises:
            PlanGenerationError: If the model output is not a usable plan.
            ConductorException: If the gateway call itself fails.
        """
        request = ModelRequest(
            prompt=self.build_prompt(intent, message, context),
            max_tokens=self._max_tokens,
            temperature=0.2,
            purpose="plan_generation",
        )
        try:
            response = await self._gateway.generate_json(request, schema=GeneratedPlan)
        except ModelResponseError as e:
            raise PlanGenerationError(intent.key, e.message) from e

        generated: GeneratedPlan = response.parsed
        plan = generated.to_plan(intent.key)

        logger.info(
            "Generated plan",
            extra={
                "plan_id": plan.id,
                "intent": plan.intent,
                "steps": len(plan.steps),
                "tokens_used": response.tokens_used,
            },
        )
        return plan, response.tokens_used
