"""HTTP API over the orchestrator."""

from conductor.api.app import create_app

__all__ = ["create_app"]
