"""In-process store used for tests and single-node deployments."""

import asyncio
import copy
import logging
from typing import Any

from conductor.storage.base import KEY_COLUMN, UPDATED_AT_COLUMN, Store, utcnow_iso

logger = logging.getLogger(__name__)


class InMemoryStore(Store):
    """Dict-backed store; a single lock makes every operation atomic."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def upsert(
        self,
        table: str,
        key: str,
        row: dict[str, Any],
        overwrite: bool = True,
    ) -> bool:
        async with self._lock:
            rows = self._tables.setdefault(table, {})
            if not overwrite and key in rows:
                return False
            stored = copy.deepcopy(row)
            stored[KEY_COLUMN] = key
            stored.setdefault(UPDATED_AT_COLUMN, utcnow_iso())
            rows[key] = stored
            return True

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        async with self._lock:
            row = self._tables.get(table, {}).get(key)
            return copy.deepcopy(row) if row is not None else None

    async def scan(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str = UPDATED_AT_COLUMN,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        async with self._lock:
            rows = [
                copy.deepcopy(row)
                for row in self._tables.get(table, {}).values()
                if all(row.get(col) == val for col, val in (filters or {}).items())
            ]

        # Rows missing the sort column go last regardless of direction
        present = [r for r in rows if r.get(order_by) is not None]
        missing = [r for r in rows if r.get(order_by) is None]
        present.sort(key=lambda r: r[order_by], reverse=descending)
        ordered = present + missing
        return ordered[:limit] if limit is not None else ordered

    async def increment(
        self,
        table: str,
        key: str,
        deltas: dict[str, int | float],
    ) -> dict[str, Any] | None:
        async with self._lock:
            row = self._tables.get(table, {}).get(key)
            if row is None:
                return None
            for column, delta in deltas.items():
                row[column] = (row.get(column) or 0) + delta
            row[UPDATED_AT_COLUMN] = utcnow_iso()
            return copy.deepcopy(row)

    async def delete(self, table: str, key: str) -> bool:
        async with self._lock:
            return self._tables.get(table, {}).pop(key, None) is not None
