"""Security headers middleware for the JSON API."""

from __future__ import annotations

from fastapi import FastAPI, Request


_STATIC_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


async def add_security_headers(request: Request, call_next):
    """Add hardening headers to every response.

    Responses carry credentials-derived data (masked or not), so they are
    marked as non-cacheable.
    """

    response = await call_next(request)

    for name, value in _STATIC_HEADERS.items():
        response.headers.setdefault(name, value)

    forwarded_proto = (request.headers.get("x-forwarded-proto") or "").lower()
    if forwarded_proto == "https" or (request.url.scheme or "").lower() == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")

    return response


def setup_security_headers_middleware(app: FastAPI) -> None:
    app.middleware("http")(add_security_headers)
