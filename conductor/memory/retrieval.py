"""Relevance-scored memory retrieval.

Each stored fact is scored against the keywords of the new request:

    score = 0.6 * keyword_overlap + 0.2 * recency + 0.2 * confidence

where keyword overlap is the fraction of request keywords found in the
fact's text and recency decays exponentially over 30 days.  Scores are
computed per retrieval and never stored.
"""

import logging
import math
import re
from datetime import UTC, datetime

from conductor.memory.models import FactKind, MemoryFact, ScoredMemory
from conductor.memory.store import MemoryStore

logger = logging.getLogger(__name__)

KEYWORD_WEIGHT = 0.6
RECENCY_WEIGHT = 0.2
CONFIDENCE_WEIGHT = 0.2
RECENCY_DECAY_HOURS = 24.0 * 30.0
MIN_KEYWORD_LENGTH = 3
DEFAULT_MIN_SCORE = 0.1
DEFAULT_LIMIT = 10

STOP_WORDS = frozenset(
    {
        "the", "a", "an",
        "am", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did",
        "will", "would", "could", "should", "may", "might", "must", "shall",
        "i", "you", "he", "she", "it", "we", "they",
        "what", "which", "who", "when", "where", "why", "how",
        "this", "that", "these", "those",
        "to", "for", "of", "with", "by", "from", "in", "on", "at", "as",
    }
)

_WORD_RE = re.compile(r"\w+")


def extract_keywords(text: str) -> list[str]:
    """Lowercased, de-duplicated words of length >= 3 that are not stop words.

    Order of first appearance is preserved.
    """
    keywords: list[str] = []
    seen: set[str] = set()
    for word in _WORD_RE.findall(text.lower()):
        if len(word) < MIN_KEYWORD_LENGTH or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
    return keywords


def score_fact(fact: MemoryFact, keywords: list[str], now: datetime | None = None) -> float:
    """Relevance of *fact* to a request with the given *keywords*.

    Returns:
        Score between 0.0 and 1.0.
    """
    now = now or datetime.now(UTC)
    text = fact.text.lower()

    keyword_score = 0.0
    if keywords:
        matched = sum(1 for kw in keywords if kw in text)
        keyword_score = matched / len(keywords)

    age_hours = max((now - fact.updated_at).total_seconds() / 3600.0, 0.0)
    recency_score = math.exp(-age_hours / RECENCY_DECAY_HOURS)

    confidence_score = min(max(fact.confidence, 0.0), 1.0)

    score = (
        keyword_score * KEYWORD_WEIGHT
        + recency_score * RECENCY_WEIGHT
        + confidence_score * CONFIDENCE_WEIGHT
    )
    return min(score, 1.0)


def format_memories(scored: list[ScoredMemory]) -> str:
    """Render retrieved memories as a prompt section; empty if none."""
    if not scored:
        return ""

    profile = [m for m in scored if m.fact.kind == FactKind.PROFILE]
    actions = [m for m in scored if m.fact.kind == FactKind.ACTION]

    lines = ["## Relevant Memories", ""]
    if profile:
        lines.append("### Profile")
        lines.extend(
            f"- {m.fact.key}: {m.fact.value} (relevance: {m.score:.2f})" for m in profile
        )
        lines.append("")
    if actions:
        lines.append("### Learned Actions")
        lines.extend(
            f'- When "{m.fact.key}": {m.fact.value} (relevance: {m.score:.2f})' for m in actions
        )
    return "\n".join(lines).rstrip() + "\n"


class MemoryRetriever:
    """Ranks stored facts by relevance to new text."""

    def __init__(self, memory: MemoryStore) -> None:
        self._memory = memory

    async def retrieve(
        self,
        text: str,
        limit: int = DEFAULT_LIMIT,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[ScoredMemory]:
        """Return the top *limit* facts scoring above *min_score*.

        Args:
            text: The new request text.
            limit: Maximum number of results.
            min_score: Minimum relevance to be included.

        Returns:
            Scored facts, highest relevance first. Empty when the text has
            no keywords.
        """
        keywords = extract_keywords(text)
        if not keywords:
            return []

        now = datetime.now(UTC)
        scored = [
            ScoredMemory(fact=fact, score=score_fact(fact, keywords, now))
            for fact in await self._memory.list_all()
        ]
        scored = [m for m in scored if m.score > min_score]
        scored.sort(key=lambda m: m.score, reverse=True)

        logger.debug(
            "Retrieved memories",
            extra={"keywords": keywords, "matches": len(scored), "limit": limit},
        )
        return scored[:limit] if limit > 0 else scored

    async def context_for(self, text: str, limit: int = DEFAULT_LIMIT) -> str:
        """Formatted memory section for a prompt."""
        return format_memories(await self.retrieve(text, limit=limit))
