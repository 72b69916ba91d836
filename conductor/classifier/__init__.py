"""Intent classification: patterns first, model second."""

from conductor.classifier.classifier import (
    Intent,
    IntentClassifier,
    ModelClassification,
    fallback_intent,
)
from conductor.classifier.extractor import extract_variables
from conductor.classifier.patterns import DEFAULT_PATTERNS, IntentPattern

__all__ = [
    "DEFAULT_PATTERNS",
    "Intent",
    "IntentClassifier",
    "IntentPattern",
    "ModelClassification",
    "extract_variables",
    "fallback_intent",
]
