"""
Security utilities for the auto-sync API.

This module provides:
1. Caller identity: the owner id is read from the header named by
   `IDENTITY_HEADER` (issued by the upstream identity layer).
2. The admin API key (X-Admin-Key header) protecting the runner endpoint.
3. The shared purge secret protecting identity purges.

Failed admin/purge attempts are rate limited per client.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import secrets
from typing import Deque, Dict, Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from api.settings import Settings, get_settings


logger = logging.getLogger(__name__)

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


@dataclass(frozen=True)
class _RateLimitResult:
    """Represents the result of a rate-limit check."""

    allowed: bool
    retry_after_seconds: int


class _InMemoryRateLimiter:
    """In-memory sliding-window rate limiter.

    Note:
        This is process-local and resets on restart.
    """

    def __init__(self) -> None:
        self._events: Dict[str, Deque[float]] = {}

    def check_and_add(self, *, key: str, limit: int, window_seconds: int, now: float) -> _RateLimitResult:
        """Check a sliding-window limit and record the current event.

        Args:
            key: Bucket key.
            limit: Maximum number of events allowed within the window.
            window_seconds: Window duration in seconds.
            now: Current timestamp (seconds).

        Returns:
            _RateLimitResult: Whether allowed and how long to wait if blocked.
        """

        bucket = self._events.setdefault(key, deque())
        cutoff = now - float(window_seconds)
        while bucket and bucket[0] < cutoff:
            bucket.popleft()

        if len(bucket) >= limit:
            retry_after = int(max(1.0, bucket[0] + float(window_seconds) - now))
            return _RateLimitResult(allowed=False, retry_after_seconds=retry_after)

        bucket.append(now)
        self._evict_idle(cutoff)
        return _RateLimitResult(allowed=True, retry_after_seconds=0)

    def _evict_idle(self, cutoff: float) -> None:
        """Drop buckets whose newest event has left the window."""

        idle = [key for key, bucket in self._events.items() if not bucket or bucket[-1] < cutoff]
        for key in idle:
            del self._events[key]

    def __len__(self) -> int:
        return len(self._events)

    def reset(self) -> None:
        self._events.clear()


_rate_limiter = _InMemoryRateLimiter()

AUTH_FAILURE_LIMIT = 20
AUTH_FAILURE_WINDOW_SECONDS = 300


def _settings_for(request: Request) -> Settings:
    """Settings attached to the app at startup, or the process defaults."""

    return getattr(request.app.state, "settings", None) or get_settings()


def _client_bucket_key(request: Optional[Request]) -> str:
    if not request or not request.client:
        return "unknown"
    return request.client.host or "unknown"


def _enforce_auth_failure_budget(*, request: Optional[Request], kind: str) -> None:
    """Record an auth failure and raise 429 once the budget is exhausted.

    Args:
        request: Request context.
        kind: One of: admin|purge.

    Raises:
        HTTPException: 429 if exceeded.
    """

    now = datetime.now(timezone.utc).timestamp()
    key = f"authfail:{kind}:{_client_bucket_key(request)}"
    result = _rate_limiter.check_and_add(
        key=key,
        limit=AUTH_FAILURE_LIMIT,
        window_seconds=AUTH_FAILURE_WINDOW_SECONDS,
        now=now,
    )
    if not result.allowed:
        logger.warning("Auth failure budget exhausted (%s) for %s", kind, _client_bucket_key(request))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many requests (auth failures ({kind})). Please retry later.",
            headers={"Retry-After": str(max(1, result.retry_after_seconds))},
        )


async def get_owner_id(request: Request) -> str:
    """Return the caller's owner id from the identity header.

    Raises:
        HTTPException: 401 when the header is missing or blank.
    """

    header_name = _settings_for(request).IDENTITY_HEADER
    owner_id = (request.headers.get(header_name) or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing caller identity. This endpoint requires the '{header_name}' header.",
        )
    return owner_id


async def verify_admin_key(
    request: Request,
    admin_key: str = Security(admin_key_header),
) -> str:
    """
    Verify the admin API key of a runner call.

    Args:
        request: The FastAPI request object
        admin_key: The admin API key from the request header

    Returns:
        The validated admin API key

    Raises:
        HTTPException: 503 when no key is configured, 401 when missing or wrong
    """
    configured_admin_key = _settings_for(request).get_admin_api_key()

    if not configured_admin_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured. Please set ADMIN_API_KEY or ADMIN_API_KEY_FILE.",
        )

    if not admin_key:
        _enforce_auth_failure_budget(request=request, kind="admin")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. This endpoint requires 'X-Admin-Key' header.",
        )

    if not secrets.compare_digest(str(admin_key), str(configured_admin_key)):
        _enforce_auth_failure_budget(request=request, kind="admin")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key.",
        )

    return admin_key


def verify_purge_secret(request: Request, secret: str) -> None:
    """Check the shared secret sent with an identity purge.

    Raises:
        HTTPException: 503 when no secret is configured, 401 when it does not match.
    """

    configured = _settings_for(request).get_purge_secret()
    if not configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Purge secret not configured. Please set PURGE_SECRET or PURGE_SECRET_FILE.",
        )

    if not secrets.compare_digest(str(secret or ""), str(configured)):
        _enforce_auth_failure_budget(request=request, kind="purge")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid secret")
