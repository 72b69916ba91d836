"""Tests for memory routing, extraction and background ingestion."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conductor.core.exceptions import MemoryStoreError, ModelUnavailableError
from conductor.gateway import ModelGateway, ModelResponse
from conductor.memory import (
    FactKind,
    FactSource,
    IngestionJob,
    LLMMemoryExtractor,
    MemoryIngestionQueue,
    MemoryRetriever,
    MemoryRouter,
    MemoryStore,
)
from conductor.memory.router import extract_action, extract_name
from conductor.storage import InMemoryStore


@pytest.fixture
def memory(store: InMemoryStore) -> MemoryStore:
    return MemoryStore(store)


class TestMemoryRouter:
    """Tests for rule-based fact extraction."""

    def test_name(self) -> None:
        """Test name statements become high-confidence profile facts."""
        facts = MemoryRouter().extract_facts("my name is Dana")

        assert len(facts) == 1
        fact = facts[0]
        assert fact.kind == FactKind.PROFILE
        assert (fact.key, fact.value) == ("name", "Dana")
        assert fact.confidence >= 0.7
        assert fact.overwrite is False
        assert fact.source == FactSource.RULE

    def test_name_stops_at_lowercase_words(self) -> None:
        """Test trailing lowercase words are not part of the name."""
        assert extract_name("call me Dana and remind me later") == "Dana"
        assert extract_name("My name is Dana Scully.") == "Dana Scully"

    def test_correction_sets_overwrite(self) -> None:
        """Test corrections overwrite earlier facts."""
        facts = MemoryRouter().extract_facts("Actually, my name is Sam")
        assert facts[0].value == "Sam"
        assert facts[0].overwrite is True

    def test_overwrite_markers_match_whole_words(self) -> None:
        """Test words that merely contain a marker are not corrections."""
        router = MemoryRouter()
        assert router.is_overwrite("update: I prefer tabs")
        assert router.is_overwrite("No, call me Sam")
        assert not router.is_overwrite("I prefer updated docs")
        assert not router.is_overwrite("she updates the wiki")
        assert not router.is_overwrite("no,body told me")
        assert router.extract_facts("I prefer updated docs")[0].overwrite is False

    def test_preference_and_action(self) -> None:
        """Test preferences and trigger phrases."""
        router = MemoryRouter()
        facts = router.extract_facts("I prefer dark mode.")
        assert [(f.key, f.value) for f in facts] == [("preference", "dark mode")]

        assert extract_action('when I say "ship it", run the deploy script') == (
            "ship it",
            "the deploy script",
        )

    def test_nothing_to_remember(self) -> None:
        """Test ordinary requests produce no facts."""
        assert MemoryRouter().extract_facts("read main.go") == []
        assert MemoryRouter().extract_facts("   ") == []

    def test_should_retrieve(self) -> None:
        """Test memory-related questions ask for context."""
        router = MemoryRouter()
        assert router.should_retrieve("what's my name")
        assert not router.should_retrieve("list files")


class TestLLMMemoryExtractor:
    """Tests for model-based extraction."""

    @pytest.mark.asyncio
    async def test_filters_low_confidence(self, gateway: ModelGateway, model_provider) -> None:
        """Test facts below the threshold are dropped."""
        model_provider.queue(
            ModelResponse(
                text='{"profile": [{"field": "Timezone", "value": "PST", "confidence": 0.9},'
                '{"field": "mood", "value": "tired", "confidence": 0.3}],'
                '"actions": [{"trigger": "ship it", "action": "deploy", "confidence": 0.8}]}'
            )
        )

        facts = await LLMMemoryExtractor(gateway).extract("I'm in PST. When I say ship it, deploy")

        assert [(f.kind, f.key, f.value) for f in facts] == [
            (FactKind.PROFILE, "timezone", "PST"),
            (FactKind.ACTION, "ship it", "deploy"),
        ]
        assert all(f.source == FactSource.MODEL for f in facts)
        assert model_provider.requests[0].purpose == "memory_extraction"

    @pytest.mark.asyncio
    async def test_unavailable_without_gateway(self) -> None:
        """Test extraction refuses to run with no model."""
        extractor = LLMMemoryExtractor(None)
        assert extractor.available is False
        with pytest.raises(ModelUnavailableError):
            await extractor.extract("my name is Dana")


class TestMemoryIngestionQueue:
    """Tests for MemoryIngestionQueue."""

    @pytest.mark.asyncio
    async def test_name_ingested_then_retrieved(self, memory: MemoryStore) -> None:
        """Test "my name is Dana" is stored in the background and found later."""
        queue = MemoryIngestionQueue(memory, workers=1, timeout=5.0)
        await queue.start()
        try:
            assert queue.submit(IngestionJob(user_message="my name is Dana")) is True
            await queue.join()
        finally:
            await queue.stop()

        assert queue.stats.processed == 1
        assert queue.stats.facts_written == 1
        results = await MemoryRetriever(memory).retrieve("what's my name")
        assert results[0].fact.value == "Dana"
        assert results[0].fact.confidence >= 0.7
        assert results[0].score > 0.3

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_rules(self, memory: MemoryStore) -> None:
        """Test rule extraction runs when the model extractor fails."""
        extractor = MagicMock()
        extractor.available = True
        extractor.extract = AsyncMock(side_effect=ModelUnavailableError("litellm"))
        queue = MemoryIngestionQueue(memory, extractor=extractor, threshold=0.7)

        written = await queue.process(IngestionJob(user_message="call me Dana"))

        assert written == 1
        assert await memory.get_profile_value("name") == "Dana"

    @pytest.mark.asyncio
    async def test_rule_facts_below_threshold_not_written(self, memory: MemoryStore) -> None:
        """Test rule fallback facts still have to clear the confidence threshold."""
        queue = MemoryIngestionQueue(memory, extractor=LLMMemoryExtractor(None, threshold=0.8))

        written = await queue.process(IngestionJob(user_message="I prefer dark mode. Call me Dana"))

        assert queue.threshold == 0.8
        assert written == 1
        assert await memory.get_profile_value("preference") == ""
        assert await memory.get_profile_value("name") == "Dana"

    @pytest.mark.asyncio
    async def test_explicit_threshold_overrides_extractor(self, memory: MemoryStore) -> None:
        """Test the queue's own threshold applies without a model extractor."""
        queue = MemoryIngestionQueue(memory, threshold=0.95)

        written = await queue.process(IngestionJob(user_message="my name is Dana"))

        assert written == 0
        assert await memory.get_profile_value("name") == ""

    @pytest.mark.asyncio
    async def test_full_queue_drops_jobs(self, memory: MemoryStore) -> None:
        """Test submissions beyond capacity are dropped, not blocked on."""
        queue = MemoryIngestionQueue(memory, maxsize=1)

        assert queue.submit(IngestionJob(user_message="one")) is True
        assert queue.submit(IngestionJob(user_message="two")) is False
        assert queue.stats.dropped == 1
        assert queue.pending == 1

    @pytest.mark.asyncio
    async def test_slow_job_times_out(self, memory: MemoryStore) -> None:
        """Test jobs exceeding the timeout are abandoned and counted."""

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return []

        extractor = MagicMock()
        extractor.available = True
        extractor.extract = slow
        queue = MemoryIngestionQueue(
            memory, extractor=extractor, workers=1, timeout=0.01, threshold=0.7
        )
        await queue.start()
        try:
            queue.submit(IngestionJob(user_message="my name is Dana"))
            await queue.join()
        finally:
            await queue.stop()

        assert queue.stats.failed == 1
        assert await memory.get_profile_value("name") == ""

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_workers(self, memory: MemoryStore) -> None:
        """Test a failing job is logged and later jobs still run."""
        queue = MemoryIngestionQueue(memory, workers=1)
        with patch.object(
            memory,
            "upsert_fact",
            AsyncMock(side_effect=[MemoryStoreError("db down"), True]),
        ):
            await queue.start()
            try:
                queue.submit(IngestionJob(user_message="my name is Sam"))
                queue.submit(IngestionJob(user_message="my name is Dana"))
                await queue.join()
            finally:
                await queue.stop()

        assert queue.stats.failed == 1
        assert queue.stats.processed == 1
        assert queue.stats.facts_written == 1

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self, memory: MemoryStore) -> None:
        """Test repeated start and stop calls are harmless."""
        queue = MemoryIngestionQueue(memory)
        await queue.start()
        await queue.start()
        assert queue.running
        await queue.stop()
        await queue.stop()
        assert not queue.running
