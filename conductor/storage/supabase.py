"""Supabase-backed durable store.

Each logical table maps to a Postgres table named ``<prefix><table>``
with a text primary key column ``key``.  Atomic counter updates go
through a ``conductor_increment(p_table, p_key, p_deltas)`` SQL function
that applies the deltas in one ``UPDATE ... RETURNING`` statement. The
tables and the function are created by
``supabase/migrations/20261016000000_conductor_store.sql``.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, cast

from supabase import Client, create_client

from conductor.core.exceptions import StoreError
from conductor.core.resilience import CircuitBreaker, CircuitBreakerOpen
from conductor.storage.base import KEY_COLUMN, UPDATED_AT_COLUMN, Store, utcnow_iso

logger = logging.getLogger(__name__)

INCREMENT_FUNCTION = "conductor_increment"


class SupabaseStore(Store):
    """Store implementation over the Supabase PostgREST client."""

    def __init__(
        self,
        url: str,
        service_key: str,
        circuit_breaker: CircuitBreaker | None = None,
        table_prefix: str = "conductor_",
        client: Client | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            url: Supabase project URL.
            service_key: Service role key.
            circuit_breaker: Breaker guarding every call.
            table_prefix: Prefix applied to logical table names.
            client: Pre-built client (tests inject a mock here).
        """
        self._url = url
        self._service_key = service_key
        self._client = client
        self._prefix = table_prefix
        self._breaker = circuit_breaker or CircuitBreaker(
            "supabase", failure_threshold=10, recovery_timeout=30.0
        )

    def _get_client(self) -> Client:
        """Get or create the Supabase client.

        Raises:
            StoreError: If client initialization fails.
        """
        if self._client is None:
            try:
                self._client = create_client(self._url, self._service_key)
                logger.info("Supabase client initialized successfully")
            except Exception as e:
                logger.exception("Failed to initialize Supabase client")
                raise StoreError(f"Failed to initialize database connection: {e}") from e
        return self._client

    def _table_name(self, table: str) -> str:
        return f"{self._prefix}{table}"

    async def _run(self, table: str, operation: str, func: Callable[[Client], Any]) -> Any:
        """Execute one PostgREST request behind the circuit breaker.

        The client is synchronous, so the request runs in a worker thread
        and callers can bound it with a timeout.
        """
        try:
            self._breaker.check()
            response = await asyncio.to_thread(lambda: func(self._get_client()))
            self._breaker.record_success()
            return response
        except CircuitBreakerOpen as e:
            raise StoreError(f"{operation} skipped, circuit open", table=table) from e
        except StoreError:
            raise
        except Exception as e:
            self._breaker.record_failure()
            logger.exception(
                "Supabase %s failed",
                operation,
                extra={"table": table},
            )
            raise StoreError(f"{operation} failed: {e}", table=table) from e

    async def upsert(
        self,
        table: str,
        key: str,
        row: dict[str, Any],
        overwrite: bool = True,
    ) -> bool:
        payload = dict(row)
        payload[KEY_COLUMN] = key
        payload.setdefault(UPDATED_AT_COLUMN, utcnow_iso())

        response = await self._run(
            table,
            "upsert",
            lambda client: client.table(self._table_name(table))
            .upsert(payload, on_conflict=KEY_COLUMN, ignore_duplicates=not overwrite)
            .execute(),
        )
        # With ignore_duplicates an existing row yields no returned data
        return bool(response.data)

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        response = await self._run(
            table,
            "get",
            lambda client: client.table(self._table_name(table))
            .select("*")
            .eq(KEY_COLUMN, key)
            .limit(1)
            .execute(),
        )
        if not response.data:
            return None
        return cast(dict[str, Any], response.data[0])

    async def scan(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str = UPDATED_AT_COLUMN,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        def _query(client: Client) -> Any:
            query = client.table(self._table_name(table)).select("*")
            for column, value in (filters or {}).items():
                query = query.eq(column, value)
            query = query.order(order_by, desc=descending)
            if limit is not None:
                query = query.limit(limit)
            return query.execute()

        response = await self._run(table, "scan", _query)
        return cast(list[dict[str, Any]], response.data or [])

    async def increment(
        self,
        table: str,
        key: str,
        deltas: dict[str, int | float],
    ) -> dict[str, Any] | None:
        response = await self._run(
            table,
            "increment",
            lambda client: client.rpc(
                INCREMENT_FUNCTION,
                {
                    "p_table": self._table_name(table),
                    "p_key": key,
                    "p_deltas": deltas,
                },
            ).execute(),
        )
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else None
        return cast(dict[str, Any] | None, data)

    async def delete(self, table: str, key: str) -> bool:
        response = await self._run(
            table,
            "delete",
            lambda client: client.table(self._table_name(table))
            .delete()
            .eq(KEY_COLUMN, key)
            .execute(),
        )
        return bool(response.data)
