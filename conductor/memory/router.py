"""Rule-based memory routing.

Decides from the text alone whether a message states something worth
remembering and whether a request should pull memory into its prompt.
Used as the fallback extractor when the model is unavailable.
"""

import re

from conductor.memory.models import FactSource, MemoryFact

NAME_CONFIDENCE = 0.9
RULE_CONFIDENCE = 0.7

# Whole words only
OVERWRITE_RE = re.compile(r"\b(?:actually|update|correction)\b|\bno,(?!\w)", re.IGNORECASE)
RETRIEVE_MARKERS = ("remember", "my name", "my preference", "when i say", "my workflow")

# Up to three words; words after the first must be capitalized
NAME_RE = re.compile(
    r"\b(?:my name is|call me|i am called|i'm called)\s+"
    r"([A-Za-z][\w\-']*(?:\s+(?-i:[A-Z])[\w\-']*){0,2})",
    re.IGNORECASE,
)
PREFERENCE_RE = re.compile(r"\b(?:i prefer|i like|my preference is)\s+(.+)", re.IGNORECASE)
DISLIKE_RE = re.compile(r"\b(?:i dislike|i hate|i don't like|i do not like)\s+(.+)", re.IGNORECASE)
ACTION_RE = re.compile(
    r"\b(?:when i say|if i say)\s+[\"']?(.+?)[\"']?\s*,?\s*(?:do|run|execute)\s+(.+)",
    re.IGNORECASE,
)


def _clean(value: str) -> str:
    return value.strip().rstrip(".!?").strip()


def extract_name(text: str) -> str:
    match = NAME_RE.search(text)
    return _clean(match.group(1)) if match else ""


def extract_preference(text: str) -> str:
    match = PREFERENCE_RE.search(text)
    return _clean(match.group(1)) if match else ""


def extract_dislike(text: str) -> str:
    match = DISLIKE_RE.search(text)
    return _clean(match.group(1)) if match else ""


def extract_action(text: str) -> tuple[str, str]:
    match = ACTION_RE.search(text)
    if not match:
        return "", ""
    return _clean(match.group(1)), _clean(match.group(2))


class MemoryRouter:
    """Decides when to ingest and when to retrieve memory."""

    def is_overwrite(self, text: str) -> bool:
        return OVERWRITE_RE.search(text) is not None

    def extract_facts(self, text: str) -> list[MemoryFact]:
        """Facts stated in *text* according to the rule patterns."""
        if not text.strip():
            return []

        overwrite = self.is_overwrite(text)
        facts: list[MemoryFact] = []

        name = extract_name(text)
        if name:
            facts.append(
                MemoryFact.profile("name", name, NAME_CONFIDENCE, overwrite, FactSource.RULE)
            )
        preference = extract_preference(text)
        if preference:
            facts.append(
                MemoryFact.profile("preference", preference, RULE_CONFIDENCE, overwrite, FactSource.RULE)
            )
        dislike = extract_dislike(text)
        if dislike:
            facts.append(
                MemoryFact.profile("dislike", dislike, RULE_CONFIDENCE, overwrite, FactSource.RULE)
            )
        trigger, action = extract_action(text)
        if trigger and action:
            facts.append(
                MemoryFact.action(trigger, action, RULE_CONFIDENCE, overwrite, FactSource.RULE)
            )
        return facts

    def should_retrieve(self, text: str) -> bool:
        """Whether memory context should be injected for *text*."""
        lowered = text.lower()
        return any(marker in lowered for marker in RETRIEVE_MARKERS)
