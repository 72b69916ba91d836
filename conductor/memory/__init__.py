"""Memory subsystem: scored profile and action facts with detached ingestion."""

from conductor.memory.extractor import ExtractionResult, LLMMemoryExtractor
from conductor.memory.ingestion import IngestionJob, MemoryIngestionQueue
from conductor.memory.models import FactKind, FactSource, MemoryFact, ScoredMemory
from conductor.memory.retrieval import (
    MemoryRetriever,
    extract_keywords,
    format_memories,
    score_fact,
)
from conductor.memory.router import MemoryRouter
from conductor.memory.store import MemoryStore

__all__ = [
    "ExtractionResult",
    "FactKind",
    "FactSource",
    "IngestionJob",
    "LLMMemoryExtractor",
    "MemoryFact",
    "MemoryIngestionQueue",
    "MemoryRetriever",
    "MemoryRouter",
    "MemoryStore",
    "ScoredMemory",
    "extract_keywords",
    "format_memories",
    "score_fact",
]
