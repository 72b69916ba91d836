"""API route handlers."""

from conductor.api.routes import health as health
from conductor.api.routes import process as process
