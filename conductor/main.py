"""ASGI entry point: ``uvicorn conductor.main:app``."""

from conductor.api import create_app

app = create_app()
