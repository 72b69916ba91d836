"""FastAPI application factory."""

import logging
import uuid
from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from conductor import __version__
from conductor.agents.orchestrator import Orchestrator, build_orchestrator
from conductor.api.routes import health, process
from conductor.core.config import Settings, get_settings
from conductor.core.exceptions import ConductorException, sanitize_error
from conductor.core.logging_config import configure_logging
from conductor.providers import CapabilityProvider

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Orchestrator | None = None,
    settings: Settings | None = None,
    providers: Iterable[CapabilityProvider] = (),
) -> FastAPI:
    """Build the API application.

    Args:
        orchestrator: Pre-built orchestrator; when omitted one is wired from
            settings at startup.
        settings: Settings to use instead of the environment.
        providers: Capability providers for the wired orchestrator.

    Returns:
        The FastAPI app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        """Build and start the orchestrator; stop it on shutdown."""
        active_settings = settings or get_settings()
        configure_logging(active_settings)
        logger.info("Starting conductor API...", extra={"env": active_settings.APP_ENV})

        if app.state.orchestrator is None:
            app.state.orchestrator = build_orchestrator(active_settings, providers)
        await app.state.orchestrator.start()
        yield
        logger.info("Shutting down conductor API...")
        await app.state.orchestrator.stop()

    app = FastAPI(
        title="Conductor API",
        description="Request orchestration over capability providers and a model gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.include_router(process.router)
    app.include_router(health.router)

    @app.exception_handler(ConductorException)
    async def conductor_exception_handler(request: Request, exc: ConductorException) -> JSONResponse:
        """Return a sanitized error body with the exception's status code."""
        request_id = str(uuid.uuid4())
        logger.warning(
            "Conductor exception occurred",
            extra={
                "code": exc.code,
                "status_code": exc.status_code,
                "request_id": request_id,
                "path": request.url.path,
            },
        )
        content: dict[str, Any] = {
            "detail": sanitize_error(exc),
            "code": exc.code,
            "request_id": request_id,
        }
        if exc.retry_after is not None:
            content["retry_after"] = exc.retry_after
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(TimeoutError)
    async def timeout_handler(request: Request, exc: TimeoutError) -> JSONResponse:
        """Request deadline expired."""
        logger.warning("Request deadline exceeded", extra={"path": request.url.path})
        return JSONResponse(
            status_code=504,
            content={"detail": sanitize_error(exc), "code": "REQUEST_TIMEOUT"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unhandled exceptions without echoing their text."""
        request_id = str(uuid.uuid4())
        logger.exception(
            "Unhandled exception occurred",
            exc_info=exc,
            extra={"request_id": request_id, "path": request.url.path},
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": sanitize_error(exc),
                "code": "INTERNAL_ERROR",
                "request_id": request_id,
            },
        )

    return app
