"""Tests for settings validation and component wiring from settings."""

import pytest
from pydantic import ValidationError

from conductor.core.config import Settings
from conductor.core.resilience import CircuitBreakerRegistry
from conductor.gateway import build_gateway
from conductor.storage import InMemoryStore, build_store


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults() -> None:
    """Test the defaults match the documented thresholds."""
    settings = _settings()

    assert settings.CLASSIFIER_MIN_CONFIDENCE == 0.7
    assert settings.PLAN_RETIREMENT_THRESHOLD == 0.3
    assert settings.PLAN_RETIREMENT_MIN_USES == 3
    assert settings.STEP_TIMEOUT_CEILING_SECONDS == 120.0
    assert settings.is_production is False


def test_supabase_url_validated() -> None:
    """Test the Supabase URL needs a scheme and loses its trailing slash."""
    assert _settings(SUPABASE_URL="https://x.supabase.co/").SUPABASE_URL == "https://x.supabase.co"
    with pytest.raises(ValidationError):
        _settings(SUPABASE_URL="x.supabase.co")


def test_thresholds_must_be_ratios() -> None:
    """Test thresholds outside [0, 1] are rejected."""
    with pytest.raises(ValidationError):
        _settings(PLAN_RETIREMENT_THRESHOLD=1.5)


def test_unconfigured_supabase_falls_back_to_memory() -> None:
    """Test a missing Supabase key keeps the in-memory store."""
    settings = _settings(STORE_BACKEND="supabase", SUPABASE_URL="https://x.supabase.co")

    assert settings.supabase_configured is False
    assert isinstance(build_store(settings), InMemoryStore)


def test_gateway_disabled_without_key() -> None:
    """Test no API key means no model providers."""
    gateway = build_gateway(_settings(ANTHROPIC_API_KEY=""), CircuitBreakerRegistry())
    assert gateway.available is False
