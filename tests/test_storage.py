"""Tests for the in-memory durable store and store selection."""

import pytest

from conductor.core.config import Settings
from conductor.storage import InMemoryStore, build_store


class TestInMemoryStore:
    """Tests for InMemoryStore."""

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store: InMemoryStore) -> None:
        """Test rows are keyed and stamped."""
        assert await store.upsert("plans", "p1", {"intent": "file.read"}) is True

        row = await store.get("plans", "p1")
        assert row is not None
        assert row["key"] == "p1"
        assert row["intent"] == "file.read"
        assert "updated_at" in row

    @pytest.mark.asyncio
    async def test_upsert_without_overwrite_keeps_first(self, store: InMemoryStore) -> None:
        """Test non-overwriting writes leave existing rows."""
        await store.upsert("facts", "name", {"value": "Dana"})
        written = await store.upsert("facts", "name", {"value": "Sam"}, overwrite=False)

        assert written is False
        assert (await store.get("facts", "name"))["value"] == "Dana"

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store: InMemoryStore) -> None:
        """Test callers cannot mutate stored rows."""
        await store.upsert("plans", "p1", {"steps": [1]})
        row = await store.get("plans", "p1")
        row["steps"].append(2)

        assert (await store.get("plans", "p1"))["steps"] == [1]

    @pytest.mark.asyncio
    async def test_scan_filters_and_orders(self, store: InMemoryStore) -> None:
        """Test equality filters and descending order."""
        await store.upsert("patterns", "a", {"intent": "x", "usage_count": 1})
        await store.upsert("patterns", "b", {"intent": "x", "usage_count": 5})
        await store.upsert("patterns", "c", {"intent": "y", "usage_count": 9})

        rows = await store.scan("patterns", filters={"intent": "x"}, order_by="usage_count")
        assert [r["key"] for r in rows] == ["b", "a"]

        rows = await store.scan("patterns", order_by="usage_count", descending=False, limit=2)
        assert [r["key"] for r in rows] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_scan_missing_column_sorts_last(self, store: InMemoryStore) -> None:
        """Test rows without the sort column go last."""
        await store.upsert("t", "a", {"rank": None})
        await store.upsert("t", "b", {"rank": 1})

        rows = await store.scan("t", order_by="rank")
        assert [r["key"] for r in rows] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_increment(self, store: InMemoryStore) -> None:
        """Test counters add atomically and missing rows return None."""
        await store.upsert("patterns", "a", {"usage_count": 1})

        row = await store.increment("patterns", "a", {"usage_count": 1, "success_count": 1})
        assert row["usage_count"] == 2
        assert row["success_count"] == 1
        assert await store.increment("patterns", "missing", {"usage_count": 1}) is None

    @pytest.mark.asyncio
    async def test_delete(self, store: InMemoryStore) -> None:
        """Test delete reports whether a row existed."""
        await store.upsert("t", "a", {})
        assert await store.delete("t", "a") is True
        assert await store.delete("t", "a") is False


def test_build_store_defaults_to_memory() -> None:
    """Test the in-memory store is the default backend."""
    assert isinstance(build_store(Settings(STORE_BACKEND="memory")), InMemoryStore)


def test_build_store_supabase_without_credentials() -> None:
    """Test selecting Supabase without credentials falls back to memory."""
    settings = Settings(STORE_BACKEND="supabase", SUPABASE_URL="")
    assert isinstance(build_store(settings), InMemoryStore)
