"""Durable store contract and implementations."""

import logging

from conductor.core.config import Settings
from conductor.core.resilience import CircuitBreakerRegistry
from conductor.storage.base import Store, utcnow_iso
from conductor.storage.memory import InMemoryStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings, breakers: CircuitBreakerRegistry | None = None) -> Store:
    """Construct the store selected by STORE_BACKEND.

    Falls back to the in-memory store when Supabase is selected but not
    configured.
    """
    if settings.STORE_BACKEND == "supabase":
        if settings.supabase_configured:
            from conductor.storage.supabase import SupabaseStore

            breaker = breakers.get("supabase") if breakers is not None else None
            return SupabaseStore(
                settings.SUPABASE_URL,
                settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
                circuit_breaker=breaker,
            )
        logger.warning("Supabase not configured, using in-memory store")
    return InMemoryStore()


__all__ = ["InMemoryStore", "Store", "build_store", "utcnow_iso"]
