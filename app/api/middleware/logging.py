"""Request logging middleware.

Every request is logged at INFO with its status and duration. In DEBUG mode
the headers and JSON bodies are logged too, with credentials redacted.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict

from fastapi import FastAPI, Request


logger = logging.getLogger("api.requests")

_SENSITIVE_HEADER_NAMES = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-admin-key",
}

_SENSITIVE_JSON_KEYS = {
    "password",
    "refresh_token",
    "access_token",
    "destination_token",
    "secret",
    "token",
}

_MAX_LOGGED_BODY = 8192


def _redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        key: "<redacted>" if key.lower() in _SENSITIVE_HEADER_NAMES else value
        for key, value in (headers or {}).items()
    }


def _redact_json(value: Any) -> Any:
    """Recursively redact credential fields in a JSON-like value."""

    if isinstance(value, dict):
        return {
            k: "<redacted>" if str(k).lower() in _SENSITIVE_JSON_KEYS else _redact_json(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact_json(v) for v in value]
    return value


def _describe_body(body: bytes, content_type: str) -> str:
    if not body:
        return "No Body"
    if "application/json" not in content_type:
        return f"<{len(body)} bytes, {content_type or 'unknown type'}>"
    try:
        text = json.dumps(_redact_json(json.loads(body)), ensure_ascii=False)
    except ValueError:
        return f"<invalid json body: {len(body)} bytes>"
    if len(text) > _MAX_LOGGED_BODY:
        text = text[:_MAX_LOGGED_BODY] + "...<truncated>"
    return text


def build_request_logger(debug: bool):
    """Return the middleware callable; `debug` adds headers and bodies."""

    async def log_requests(request: Request, call_next):
        if request.url.path == "/health":
            return await call_next(request)

        if debug:
            body = await request.body()
            logger.debug(
                "Request %s %s headers=%s body=%s",
                request.method,
                request.url.path,
                _redact_headers(dict(request.headers)),
                _describe_body(body, (request.headers.get("content-type") or "").lower()),
            )

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    return log_requests


def setup_logging_middleware(app: FastAPI, *, debug: bool = False) -> None:
    """
    Configure request logging middleware for the FastAPI application.

    Args:
        app: The FastAPI application instance
        debug: Also log redacted headers and request bodies
    """
    app.middleware("http")(build_request_logger(debug))
