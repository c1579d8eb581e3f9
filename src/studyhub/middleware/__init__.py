"""Middleware registration."""

from fastapi import FastAPI

from studyhub.config import Settings
from studyhub.middleware.error_handler import setup_error_handlers
from studyhub.middleware.logging import setup_logging


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging first so handler registration and startup are logged consistently."""
    setup_logging(settings)
    setup_error_handlers(app)
