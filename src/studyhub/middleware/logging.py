"""Structured logging configuration with structlog."""

import logging

import structlog

from studyhub.config import Settings

SERVICE_NAME = "studyhub-realtime"


def _add_service(_logger: object, _method: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON (production) or console (development) output.

    Stdlib loggers used by the persistence modules go through the same
    level so both streams agree on verbosity.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")
    # Pub/sub polling is chatty at DEBUG
    logging.getLogger("redis").setLevel(max(level, logging.INFO))
