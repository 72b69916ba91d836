"""Intent classification.

Classification flow:

1. Rule-based patterns (instant, free, deterministic).
2. One strict-JSON model call when no pattern clears the minimum
   confidence and a gateway is configured.
3. A generic low-confidence ``chat.general`` intent otherwise.

``classify`` never raises; any model failure degrades to step 3.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator

from conductor.classifier.extractor import extract_variables
from conductor.classifier.patterns import DEFAULT_PATTERNS, IntentPattern, match_first
from conductor.gateway.types import ModelRequest

if TYPE_CHECKING:
    from conductor.gateway.gateway import ModelGateway

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.7
FALLBACK_CATEGORY = "chat"
FALLBACK_SUBCATEGORY = "general"
FALLBACK_CONFIDENCE = 0.5
FALLBACK_TIER = 2

CLASSIFICATION_PROMPT = """Classify the user's intent. Return ONLY a JSON object with this exact format:
{{"category": "code|file|research|task|calendar|system|chat", "subcategory": "specific_action", "confidence": 0.0-1.0, "tier": 0-3, "variables": {{"name": "value"}}}}

Categories and examples:
- code: fix_tests, analyze, refactor, write, explain, run_tests, git_op
- file: read, write, search, delete, list
- research: web_search, fetch_url, compare, summarize
- task: create, list, complete, delete
- calendar: check, schedule, cancel
- system: status, cost, help
- chat: general, question, creative

Tiers: 0 = deterministic rule, 1 = small local model, 2 = larger local model, 3 = cloud model.
"variables" holds any arguments in the message (path, url, query, time, title...); use {{}} if none.

User message: {message}

Respond with ONLY the JSON object, no other text."""


@dataclass
class Intent:
    """Structured classification of a request."""

    category: str
    subcategory: str
    confidence: float
    tier: int
    variables: dict[str, str] = field(default_factory=dict)
    source: str = "pattern"
    pattern_id: str | None = None
    tokens_used: int = 0

    @property
    def key(self) -> str:
        """Cache key in ``category.subcategory`` form."""
        if self.subcategory:
            return f"{self.category}.{self.subcategory}"
        return self.category

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "subcategory": self.subcategory,
            "confidence": self.confidence,
            "tier": self.tier,
            "variables": dict(self.variables),
            "source": self.source,
            "key": self.key,
        }


class ModelClassification(BaseModel):
    """Expected shape of the model's classification JSON."""

    category: str
    subcategory: str = FALLBACK_SUBCATEGORY
    confidence: float = Field(default=FALLBACK_CONFIDENCE, ge=0.0, le=1.0)
    tier: int = Field(default=FALLBACK_TIER, ge=0, le=3)
    variables: dict[str, str] = Field(default_factory=dict)

    @field_validator("category", "subcategory")
    @classmethod
    def normalize(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("variables", mode="before")
    @classmethod
    def stringify_variables(cls, v: Any) -> dict[str, str]:
        if not isinstance(v, dict):
            return {}
        return {str(k): str(val) for k, val in v.items() if val is not None and val != ""}


def fallback_intent(text: str = "") -> Intent:
    """Generic low-confidence intent used when classification is inconclusive."""
    return Intent(
        category=FALLBACK_CATEGORY,
        subcategory=FALLBACK_SUBCATEGORY,
        confidence=FALLBACK_CONFIDENCE,
        tier=FALLBACK_TIER,
        variables=extract_variables(text, FALLBACK_CATEGORY) if text else {},
        source="fallback",
    )


class IntentClassifier:
    """Maps free text to an Intent via patterns first, the gateway second."""

    def __init__(
        self,
        gateway: "ModelGateway | None" = None,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        patterns: list[IntentPattern] | None = None,
    ) -> None:
        """Initialize the classifier.

        Args:
            gateway: Model gateway for low-confidence requests, or None to
                classify with patterns only.
            min_confidence: Pattern confidence needed to skip the model.
            patterns: Ordered pattern list (defaults to DEFAULT_PATTERNS).
        """
        self._gateway = gateway
        self.min_confidence = min_confidence
        self._patterns: list[IntentPattern] = list(patterns or DEFAULT_PATTERNS)

    @property
    def patterns(self) -> tuple[IntentPattern, ...]:
        return tuple(self._patterns)

    def add_pattern(self, pattern: IntentPattern) -> None:
        """Append a custom pattern after the existing ones."""
        self._patterns.append(pattern)

    def match_pattern(self, text: str) -> Intent | None:
        """Classify with patterns only; returns None when nothing matches."""
        pattern = match_first(self._patterns, text)
        if pattern is None:
            return None
        return Intent(
            category=pattern.category,
            subcategory=pattern.subcategory,
            confidence=pattern.confidence,
            tier=pattern.tier,
            variables=extract_variables(text, pattern.category),
            source="pattern",
            pattern_id=pattern.id,
        )

    async def classify(self, text: str) -> Intent:
        """Determine the intent of a user message.

        Args:
            text: The raw user message.

        Returns:
            The classified Intent; never raises.
        """
        intent = self.match_pattern(text)
        if intent is not None and intent.confidence >= self.min_confidence:
            logger.debug(
                "Intent matched by pattern",
                extra={"intent": intent.key, "pattern_id": intent.pattern_id},
            )
            return intent

        if self._gateway is not None and self._gateway.available:
            try:
                return await self._classify_with_model(text)
            except Exception as e:
                logger.warning(
                    "Model classification failed, using fallback intent",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )

        return fallback_intent(text)

    async def _classify_with_model(self, text: str) -> Intent:
        assert self._gateway is not None
        response = await self._gateway.generate_json(
            ModelRequest(
                prompt=CLASSIFICATION_PROMPT.format(message=text),
                max_tokens=200,
                temperature=0.0,
                purpose="classification",
            ),
            schema=ModelClassification,
        )
        parsed: ModelClassification = response.parsed

        # Model-extracted variables win over rule-extracted ones
        variables = extract_variables(text, parsed.category)
        variables.update(parsed.variables)

        intent = Intent(
            category=parsed.category,
            subcategory=parsed.subcategory,
            confidence=parsed.confidence,
            tier=parsed.tier,
            variables=variables,
            source="model",
            tokens_used=response.tokens_used,
        )
        logger.info(
            "Intent classified by model",
            extra={
                "intent": intent.key,
                "confidence": intent.confidence,
                "tokens_used": response.tokens_used,
            },
        )
        return intent
