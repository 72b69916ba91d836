"""Logging setup for conductor.

Modules log through ``logging.getLogger(__name__)`` and attach context
with ``extra={...}``; the JSON formatter turns those extras into fields.
"""

import logging

from conductor.core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings.

    Uses JSON structured output when LOG_FORMAT=json (production), plain
    text otherwise (local development).

    Args:
        settings: Application settings carrying LOG_FORMAT and LOG_LEVEL.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()

    if settings.LOG_FORMAT == "json":
        from pythonjsonlogger.json import JsonFormatter

        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "service",
            },
            static_fields={"app": "conductor"},
        )
        handler.setFormatter(formatter)
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    root_logger.addHandler(handler)
