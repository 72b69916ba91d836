"""Model-based memory extraction.

Asks the gateway for a strict JSON object of profile and action facts
found in a completed turn, validates it with pydantic and drops any fact
below the confidence threshold.
"""

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator

from conductor.core.exceptions import ModelUnavailableError
from conductor.gateway.types import ModelRequest
from conductor.memory.models import FactSource, MemoryFact

if TYPE_CHECKING:
    from conductor.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

DEFAULT_EXTRACTION_THRESHOLD = 0.7

EXTRACTION_PROMPT = """You are a memory extraction system. Extract ONLY durable, useful user information.

Return JSON with these fields:
{{
  "profile": [
    {{"field": "name|timezone|language|location|role|company|preference|dislike", "value": "extracted value", "confidence": 0.0-1.0, "overwrite": false}}
  ],
  "actions": [
    {{"trigger": "exact phrase user uses", "action": "what user wants to happen", "confidence": 0.0-1.0, "overwrite": false}}
  ]
}}

Rules:
- ONLY extract facts that are likely to be useful in FUTURE conversations
- Preferences: things the user likes/dislikes, their style, formatting preferences
- Personal info: name, role, location, timezone, language
- Actions: recurring patterns like "when I say X, do Y"
- Set "overwrite": true if the user is correcting a previous statement ("actually", "no, I mean", "wait")
- Ignore: transient questions, one-off requests, temporary context
- Minimum confidence: {threshold}
- If nothing qualifies, return {{"profile": [], "actions": []}}

Conversation turn:
{turn}"""


class ExtractedProfileFact(BaseModel):
    field: str
    value: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    overwrite: bool = False

    @field_validator("field", "value")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()


class ExtractedActionFact(BaseModel):
    trigger: str
    action: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    overwrite: bool = False

    @field_validator("trigger", "action")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()


class ExtractionResult(BaseModel):
    """Expected shape of the model's extraction JSON."""

    profile: list[ExtractedProfileFact] = Field(default_factory=list)
    actions: list[ExtractedActionFact] = Field(default_factory=list)

    @field_validator("profile", "actions", mode="before")
    @classmethod
    def default_list(cls, v: Any) -> Any:
        return v if v is not None else []


def format_turn(user_message: str, assistant_message: str = "") -> str:
    lines = [f"USER: {user_message}"]
    if assistant_message:
        lines.append(f"ASSISTANT: {assistant_message}")
    return "\n".join(lines)


class LLMMemoryExtractor:
    """Extracts memory facts from a conversation turn with the model."""

    def __init__(
        self,
        gateway: "ModelGateway | None",
        threshold: float = DEFAULT_EXTRACTION_THRESHOLD,
    ) -> None:
        self._gateway = gateway
        self.threshold = threshold if threshold > 0 else DEFAULT_EXTRACTION_THRESHOLD

    @property
    def available(self) -> bool:
        return self._gateway is not None and self._gateway.available

    def to_facts(self, result: ExtractionResult) -> list[MemoryFact]:
        """Convert a validated result, dropping empty or low-confidence facts."""
        facts: list[MemoryFact] = []
        for p in result.profile:
            if p.field and p.value and p.confidence >= self.threshold:
                facts.append(
                    MemoryFact.profile(
                        p.field.lower(), p.value, p.confidence, p.overwrite, FactSource.MODEL
                    )
                )
        for a in result.actions:
            if a.trigger and a.action and a.confidence >= self.threshold:
                facts.append(
                    MemoryFact.action(
                        a.trigger, a.action, a.confidence, a.overwrite, FactSource.MODEL
                    )
                )
        return facts

    async def extract(self, user_message: str, assistant_message: str = "") -> list[MemoryFact]:
        """Extract durable facts from one turn.

        Args:
            user_message: What the user said.
            assistant_message: The reply, if any.

        Returns:
            Facts at or above the confidence threshold.

        Raises:
            ModelUnavailableError: If no gateway is configured.
            ConductorException: If the model call or validation fails.
        """
        if not self.available:
            raise ModelUnavailableError("memory", "no model configured for extraction", temporary=False)
        if not user_message.strip():
            return []

        assert self._gateway is not None
        response = await self._gateway.generate_json(
            ModelRequest(
                prompt=EXTRACTION_PROMPT.format(
                    threshold=self.threshold,
                    turn=format_turn(user_message, assistant_message),
                ),
                max_tokens=400,
                temperature=0.0,
                purpose="memory_extraction",
            ),
            schema=ExtractionResult,
        )
        facts = self.to_facts(response.parsed)

        logger.debug(
            "Extracted memory facts with model",
            extra={"fact_count": len(facts), "tokens_used": response.tokens_used},
        )
        return facts
