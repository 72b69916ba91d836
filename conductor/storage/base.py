"""Durable store contract.

The plan cache and memory subsystem persist through this interface only:
keyed upsert, keyed read, recency-ordered scan and atomic counter
increment.  Rows are flat JSON-compatible dicts; every row carries its
key in the ``key`` column.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

KEY_COLUMN = "key"
UPDATED_AT_COLUMN = "updated_at"


def utcnow_iso() -> str:
    """Current UTC time in ISO-8601, the store's timestamp format."""
    return datetime.now(UTC).isoformat()


class Store(ABC):
    """Abstract async key/row store."""

    @abstractmethod
    async def upsert(
        self,
        table: str,
        key: str,
        row: dict[str, Any],
        overwrite: bool = True,
    ) -> bool:
        """Write *row* under *key*.

        Args:
            table: Logical table name.
            key: Row key, unique within the table.
            row: Column values; ``key`` and ``updated_at`` are filled in
                when missing.
            overwrite: When False an existing row is left untouched.

        Returns:
            True if the row was written, False if it already existed and
            *overwrite* was False.
        """

    @abstractmethod
    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Read a single row, or None if absent."""

    @abstractmethod
    async def scan(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str = UPDATED_AT_COLUMN,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows matching equality *filters*, newest first by default."""

    @abstractmethod
    async def increment(
        self,
        table: str,
        key: str,
        deltas: dict[str, int | float],
    ) -> dict[str, Any] | None:
        """Atomically add *deltas* to numeric columns of an existing row.

        Returns:
            The updated row, or None if no row exists under *key*.
        """

    @abstractmethod
    async def delete(self, table: str, key: str) -> bool:
        """Remove a row. Returns True if something was deleted."""

    async def close(self) -> None:  # noqa: B027
        """Release any held connections."""
