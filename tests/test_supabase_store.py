"""Tests for SupabaseStore with a mocked client."""

import asyncio
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conductor.core.exceptions import StoreError
from conductor.core.resilience import CircuitBreaker, CircuitState
from conductor.memory.store import ACTIONS_TABLE, PROFILE_TABLE
from conductor.plans.cache import EXECUTIONS_TABLE, PATTERNS_TABLE, PLANS_TABLE
from conductor.storage.supabase import INCREMENT_FUNCTION, SupabaseStore


def _store(client: MagicMock, breaker: CircuitBreaker | None = None) -> SupabaseStore:
    return SupabaseStore(
        "https://example.supabase.co",
        "service-key",
        circuit_breaker=breaker,
        client=client,
    )


@pytest.fixture
def mock_client() -> MagicMock:
    return MagicMock()


class TestSupabaseStore:
    """Tests for SupabaseStore."""

    @pytest.mark.asyncio
    async def test_upsert_uses_prefixed_table(self, mock_client: MagicMock) -> None:
        """Test upserts target the prefixed table and conflict on key."""
        table = mock_client.table.return_value
        table.upsert.return_value.execute.return_value = MagicMock(data=[{"key": "p1"}])

        written = await _store(mock_client).upsert("plans", "p1", {"intent": "file.read"})

        assert written is True
        mock_client.table.assert_called_with("conductor_plans")
        payload = table.upsert.call_args.args[0]
        assert payload["key"] == "p1"
        assert "updated_at" in payload
        assert table.upsert.call_args.kwargs == {"on_conflict": "key", "ignore_duplicates": False}

    @pytest.mark.asyncio
    async def test_upsert_without_overwrite_ignores_duplicates(self, mock_client: MagicMock) -> None:
        """Test an ignored duplicate reports False."""
        table = mock_client.table.return_value
        table.upsert.return_value.execute.return_value = MagicMock(data=[])

        written = await _store(mock_client).upsert("memory_profile", "name", {}, overwrite=False)

        assert written is False
        assert table.upsert.call_args.kwargs["ignore_duplicates"] is True

    @pytest.mark.asyncio
    async def test_get_missing_row(self, mock_client: MagicMock) -> None:
        """Test an empty result is None."""
        chain = mock_client.table.return_value.select.return_value.eq.return_value.limit.return_value
        chain.execute.return_value = MagicMock(data=[])

        assert await _store(mock_client).get("plans", "nope") is None

    @pytest.mark.asyncio
    async def test_increment_calls_rpc(self, mock_client: MagicMock) -> None:
        """Test counters go through the increment function."""
        mock_client.rpc.return_value.execute.return_value = MagicMock(
            data=[{"key": "a", "usage_count": 2}]
        )

        row = await _store(mock_client).increment("plan_patterns", "a", {"usage_count": 1})

        assert row == {"key": "a", "usage_count": 2}
        mock_client.rpc.assert_called_once_with(
            INCREMENT_FUNCTION,
            {"p_table": "conductor_plan_patterns", "p_key": "a", "p_deltas": {"usage_count": 1}},
        )

    @pytest.mark.asyncio
    async def test_failures_raise_store_error_and_trip_breaker(
        self, mock_client: MagicMock
    ) -> None:
        """Test client errors become StoreError and count against the breaker."""
        mock_client.table.side_effect = ConnectionError("down")
        breaker = CircuitBreaker("supabase", failure_threshold=1)

        with pytest.raises(StoreError):
            await _store(mock_client, breaker).get("plans", "p1")

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_breaker_skips_call(self, mock_client: MagicMock) -> None:
        """Test no request is made while the circuit is open."""
        breaker = CircuitBreaker("supabase", failure_threshold=1)
        breaker.record_failure()

        with pytest.raises(StoreError):
            await _store(mock_client, breaker).delete("plans", "p1")

        mock_client.table.assert_not_called()

    @pytest.mark.asyncio
    async def test_blocking_client_does_not_stall_event_loop(
        self, mock_client: MagicMock
    ) -> None:
        """Test a slow request runs off the loop and can be timed out."""
        mock_client.table.side_effect = lambda name: (time.sleep(0.5), MagicMock())[1]
        store = _store(mock_client)

        started = time.monotonic()
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(store.get("plans", "p1"), timeout=0.05)

        assert time.monotonic() - started < 0.4


MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "supabase" / "migrations"


def test_migration_defines_tables_and_increment_function() -> None:
    """Test the shipped SQL creates every table and the counter function the store uses."""
    sql = "\n".join(p.read_text() for p in sorted(MIGRATIONS_DIR.glob("*.sql")))

    assert f"create or replace function {INCREMENT_FUNCTION}(p_table text, p_key text, p_deltas jsonb)" in sql
    for table in (
        PLANS_TABLE,
        PATTERNS_TABLE,
        EXECUTIONS_TABLE,
        PROFILE_TABLE,
        ACTIONS_TABLE,
    ):
        assert f"create table if not exists conductor_{table} (" in sql
