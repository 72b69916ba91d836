"""Health check API routes.

Provides:
- GET /health - overall status with circuit breaker states and component status
- GET /health/ping - lightweight 200 for external uptime monitors
"""

import logging
import time
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, status

from conductor import __version__
from conductor.api.deps import OrchestratorDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(orchestrator: OrchestratorDep) -> dict[str, Any]:
    """Overall health.

    ``degraded`` when the model is unavailable or any circuit breaker is
    open; the process keeps serving local replies and direct calls.
    """
    details = await orchestrator.status()
    breakers: dict[str, str] = details.get("circuit_breakers", {})

    overall = "healthy"
    if not details["model_available"] or any(state == "open" for state in breakers.values()):
        overall = "degraded"

    return {
        "status": overall,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "version": __version__,
        **details,
    }


@router.get("/ping", status_code=status.HTTP_200_OK)
async def ping() -> dict[str, str]:
    """Lightweight ping; no dependency checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
    }
