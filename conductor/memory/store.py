"""Memory store service for profile and action facts.

Facts are persisted through the durable store contract in two tables,
one per fact kind, keyed by normalized field or trigger.  Writes are
last-write-wins when a fact sets ``overwrite``; otherwise the first
value written for a key is kept.
"""

import logging
from datetime import UTC, datetime

from conductor.core.exceptions import MemoryStoreError, StoreError, ValidationError
from conductor.memory.models import DEFAULT_FACT_CONFIDENCE, FactKind, MemoryFact, normalize_key
from conductor.storage.base import Store

logger = logging.getLogger(__name__)

PROFILE_TABLE = "memory_profile"
ACTIONS_TABLE = "memory_actions"

_TABLES = {
    FactKind.PROFILE: PROFILE_TABLE,
    FactKind.ACTION: ACTIONS_TABLE,
}


class MemoryStore:
    """Service class for memory fact persistence.

    Provides an async interface for writing, reading and summarizing
    facts on top of any ``Store`` implementation.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def upsert_fact(self, fact: MemoryFact) -> bool:
        """Write a fact, honoring its overwrite flag.

        Args:
            fact: The fact to store. A non-positive confidence is replaced
                by the default.

        Returns:
            True if the fact was written, False if an existing value was
            kept because the fact does not overwrite.

        Raises:
            ValidationError: If the key or value is empty.
            MemoryStoreError: If the write fails.
        """
        key = fact.storage_key
        if not key or not fact.value.strip():
            raise ValidationError(f"{fact.kind.value} fact requires a key and a value", field="key")
        if fact.confidence <= 0:
            fact.confidence = DEFAULT_FACT_CONFIDENCE
        fact.updated_at = datetime.now(UTC)

        try:
            written = await self._store.upsert(
                _TABLES[fact.kind],
                key,
                fact.to_dict(),
                overwrite=fact.overwrite,
            )
        except StoreError as e:
            raise MemoryStoreError(f"Failed to store {fact.kind.value} fact: {e.message}") from e

        logger.info(
            "Stored memory fact" if written else "Kept existing memory fact",
            extra={
                "kind": fact.kind.value,
                "key": key,
                "overwrite": fact.overwrite,
                "source": fact.source.value,
            },
        )
        return written

    async def get_fact(self, kind: FactKind, key: str) -> MemoryFact | None:
        """Return the stored fact for a field or trigger, or None."""
        try:
            row = await self._store.get(_TABLES[kind], normalize_key(key))
        except StoreError as e:
            raise MemoryStoreError(f"Failed to read {kind.value} fact: {e.message}") from e
        return MemoryFact.from_dict(row) if row else None

    async def get_profile_value(self, field_name: str) -> str:
        """Current value of a profile field, or an empty string."""
        fact = await self.get_fact(FactKind.PROFILE, field_name)
        return fact.value if fact else ""

    async def _list(self, kind: FactKind, limit: int | None) -> list[MemoryFact]:
        try:
            rows = await self._store.scan(_TABLES[kind], limit=limit)
        except StoreError as e:
            raise MemoryStoreError(f"Failed to list {kind.value} facts: {e.message}") from e
        return [MemoryFact.from_dict(r) for r in rows]

    async def list_profile(self, limit: int | None = None) -> list[MemoryFact]:
        """Profile facts, most recently updated first."""
        return await self._list(FactKind.PROFILE, limit)

    async def list_actions(self, limit: int | None = None) -> list[MemoryFact]:
        """Action facts, most recently updated first."""
        return await self._list(FactKind.ACTION, limit)

    async def list_all(self) -> list[MemoryFact]:
        return await self.list_profile() + await self.list_actions()

    async def delete_fact(self, kind: FactKind, key: str) -> bool:
        try:
            deleted = await self._store.delete(_TABLES[kind], normalize_key(key))
        except StoreError as e:
            raise MemoryStoreError(f"Failed to delete {kind.value} fact: {e.message}") from e
        if deleted:
            logger.info("Deleted memory fact", extra={"kind": kind.value, "key": key})
        return deleted

    async def summary(self, max_lines: int = 5) -> str:
        """Compact text summary of recent profile and action facts."""
        lines = [f"- {f.key}: {f.value}" for f in await self.list_profile(max_lines)]
        lines.extend(f'- when "{f.key}": {f.value}' for f in await self.list_actions(max_lines))
        return "\n".join(lines)
