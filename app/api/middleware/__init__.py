"""Middleware configuration for the FastAPI application."""
from fastapi import FastAPI
from .logging import setup_logging_middleware
from .security_headers import setup_security_headers_middleware


def setup_middleware(app: FastAPI, *, debug: bool = False) -> None:
    """
    Configure all middleware for the FastAPI application.

    Middleware are applied in the order they are called:
    1. Request logging (headers and bodies only in debug)
    2. Security headers

    Args:
        app: The FastAPI application instance
        debug: Enable verbose request logging
    """
    setup_logging_middleware(app, debug=debug)
    setup_security_headers_middleware(app)
