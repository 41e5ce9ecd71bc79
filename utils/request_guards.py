"""Request guards for write endpoints: local token, rate limit, field limits."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Any, Deque, Dict, Optional
from urllib.parse import urlsplit

from fastapi import Request

from utils.errors import AppError, ValidationError

LOGGER = logging.getLogger(__name__)

LOCAL_TOKEN_HEADER = "x-local-token"


def limit_text(value: Any, max_length: int, field_name: str) -> str:
    """Strip a text field and reject it when longer than `max_length`."""
    text = str(value or "").strip()
    if len(text) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters.", code="FIELD_TOO_LONG")
    return text


def normalize_base_url(value: Any) -> str:
    """Validate an http(s) base URL and drop trailing slashes."""
    text = str(value or "").strip().rstrip("/")
    if not text:
        raise ValidationError("baseUrl must not be empty.", code="MISSING_BASE_URL")
    parts = urlsplit(text)
    if not parts.scheme or not parts.netloc:
        raise ValidationError("baseUrl is not a valid URL.", code="INVALID_BASE_URL")
    if parts.scheme.lower() not in ("http", "https"):
        raise ValidationError("baseUrl must use http or https.", code="INVALID_BASE_URL_PROTOCOL")
    return text


async def require_local_token(request: Request) -> None:
    """FastAPI dependency enforcing the shared `x-local-token` header."""
    settings = request.app.state.settings
    if not settings.local_api_token:
        if settings.allow_insecure_local:
            return
        raise AppError(
            "LOCAL_API_TOKEN is not configured; write endpoints are disabled.",
            status=503,
            code="LOCAL_TOKEN_NOT_CONFIGURED",
        )

    received = (request.headers.get(LOCAL_TOKEN_HEADER) or "").strip()
    if not received:
        raise AppError(f"Missing {LOCAL_TOKEN_HEADER} header.", status=401, code="LOCAL_TOKEN_MISSING")
    if received != settings.local_api_token:
        raise AppError("Local token mismatch.", status=403, code="LOCAL_TOKEN_INVALID")


class WriteRateLimiter:
    """Sliding-window request counter keyed by client address.

    Args:
        window: Window length in seconds (minimum 1).
        max_requests: Requests allowed per key inside one window.
    """

    def __init__(self, window: float = 60.0, max_requests: int = 60) -> None:
        self.window = max(float(window or 60.0), 1.0)
        self.max_requests = max(int(max_requests or 60), 1)
        self._buckets: Dict[str, Deque[float]] = {}

    def hit(self, key: str, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        self._drop_idle(now)
        bucket = self._buckets.setdefault(key, deque())
        while bucket and now - bucket[0] >= self.window:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            LOGGER.warning("Rate limit hit for %s", key)
            raise AppError(
                f"Too many requests; retry in {math.ceil(self.window)} seconds.",
                status=429,
                code="RATE_LIMITED",
            )
        bucket.append(now)

    def _drop_idle(self, now: float) -> None:
        idle = [key for key, bucket in self._buckets.items() if not bucket or now - bucket[-1] >= self.window]
        for key in idle:
            del self._buckets[key]


async def enforce_write_rate_limit(request: Request) -> None:
    """FastAPI dependency applying the app-wide `WriteRateLimiter`."""
    limiter: WriteRateLimiter = request.app.state.write_rate_limiter
    client_ip = request.client.host if request.client else "unknown"
    limiter.hit(client_ip)
