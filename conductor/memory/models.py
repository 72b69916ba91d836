"""Memory fact models.

Two kinds of fact are kept:

- profile facts describe the user (``name``, ``timezone``, ``preference``...)
  and are unique by field;
- action facts map a trigger phrase to what the user wants done and are
  unique by trigger.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

DEFAULT_FACT_CONFIDENCE = 0.7


class FactKind(str, Enum):
    """Kind of a memory fact."""

    PROFILE = "profile"
    ACTION = "action"


class FactSource(str, Enum):
    """Where a fact came from."""

    RULE = "rule"
    MODEL = "model"
    USER = "user"


def normalize_key(key: str) -> str:
    """Storage key for a profile field or action trigger."""
    return " ".join(key.lower().split())


@dataclass
class MemoryFact:
    """A durable piece of user information.

    For profile facts ``key`` is the field and ``value`` its value; for
    action facts ``key`` is the trigger phrase and ``value`` the action.
    With ``overwrite`` False a write never replaces an existing value.
    """

    kind: FactKind
    key: str
    value: str
    confidence: float = DEFAULT_FACT_CONFIDENCE
    overwrite: bool = False
    source: FactSource = FactSource.RULE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def profile(
        cls,
        field_name: str,
        value: str,
        confidence: float = DEFAULT_FACT_CONFIDENCE,
        overwrite: bool = False,
        source: FactSource = FactSource.RULE,
    ) -> "MemoryFact":
        return cls(
            kind=FactKind.PROFILE,
            key=field_name,
            value=value,
            confidence=confidence,
            overwrite=overwrite,
            source=source,
        )

    @classmethod
    def action(
        cls,
        trigger: str,
        action: str,
        confidence: float = DEFAULT_FACT_CONFIDENCE,
        overwrite: bool = False,
        source: FactSource = FactSource.RULE,
    ) -> "MemoryFact":
        return cls(
            kind=FactKind.ACTION,
            key=trigger,
            value=action,
            confidence=confidence,
            overwrite=overwrite,
            source=source,
        )

    @property
    def storage_key(self) -> str:
        return normalize_key(self.key)

    @property
    def text(self) -> str:
        """Searchable text used for keyword matching."""
        return f"{self.key} {self.value}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize fact to a dictionary.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "kind": self.kind.value,
            "fact_key": self.key,
            "value": self.value,
            "confidence": self.confidence,
            "overwrite": self.overwrite,
            "source": self.source.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryFact":
        """Create a MemoryFact instance from a dictionary.

        Args:
            data: Dictionary containing fact data.

        Returns:
            MemoryFact instance with restored state.
        """
        created_at = data.get("created_at")
        updated_at = data.get("updated_at") or created_at
        return cls(
            kind=FactKind(data["kind"]),
            key=data.get("fact_key") or data["key"],
            value=data["value"],
            confidence=float(data.get("confidence", DEFAULT_FACT_CONFIDENCE)),
            overwrite=bool(data.get("overwrite", False)),
            source=FactSource(data.get("source", FactSource.RULE.value)),
            created_at=datetime.fromisoformat(created_at)
            if isinstance(created_at, str)
            else created_at or datetime.now(UTC),
            updated_at=datetime.fromisoformat(updated_at)
            if isinstance(updated_at, str)
            else updated_at or datetime.now(UTC),
        )


@dataclass
class ScoredMemory:
    """A fact with its relevance to the current request; never persisted."""

    fact: MemoryFact
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {**self.fact.to_dict(), "score": round(self.score, 4)}
