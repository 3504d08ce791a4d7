"""Middleware registration."""

from fastapi import FastAPI

from quizrank.config import Settings
from quizrank.middleware.error_handler import setup_error_handlers
from quizrank.middleware.logging import setup_logging
from quizrank.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, error handlers and request tracing."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
