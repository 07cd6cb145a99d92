"""Security middleware for rate limiting, size limits, and timeouts."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..auth.broker_config import SecurityConfig

logger = logging.getLogger(__name__)

# OAuth endpoints get the stricter per-IP budget.
OAUTH_PATHS = frozenset(
    {
        "/authorize",
        "/token",
        "/token/refresh",
        "/register",
    }
)


class BodySizeLimitExceeded(Exception):
    """Raised when request body exceeds size limit."""


@dataclass
class RateLimitBucket:
    """Sliding window rate limit bucket."""

    timestamps: list[float] = field(default_factory=list)

    def cleanup(self, now: float, window_seconds: float) -> None:
        cutoff = now - window_seconds
        self.timestamps = [t for t in self.timestamps if t > cutoff]

    def add_request(self, now: float) -> None:
        self.timestamps.append(now)

    def count(self) -> int:
        return len(self.timestamps)


class SlidingWindowRateLimiter:
    """Sliding window rate limiter.

    Process-local: with several uvicorn workers each one keeps its own counters.
    """

    _CLEANUP_INTERVAL: float = 60.0

    def __init__(self, window_seconds: float = 900.0, clock: Callable[[], float] = time.time):
        self._buckets: dict[str, RateLimitBucket] = defaultdict(RateLimitBucket)
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_cleanup: float = 0.0

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    async def allow(self, key: str, limit: int) -> bool:
        """Check if request is allowed under rate limit."""
        async with self._lock:
            now = self._clock()

            if now - self._last_cleanup > self._CLEANUP_INTERVAL:
                self._cleanup_old_buckets_unlocked(now)
                self._last_cleanup = now

            bucket = self._buckets[key]
            bucket.cleanup(now, self._window_seconds)

            if bucket.count() >= limit:
                return False

            bucket.add_request(now)
            return True

    def _cleanup_old_buckets_unlocked(self, now: float) -> None:
        """Remove buckets with no activity inside the window. Must be called under lock."""
        cutoff = now - self._window_seconds
        keys_to_remove = [
            key
            for key, bucket in self._buckets.items()
            if not bucket.timestamps or max(bucket.timestamps) <= cutoff
        ]
        for key in keys_to_remove:
            del self._buckets[key]


def _sanitize_ip(value: str) -> str:
    """Strip control characters from an IP string to prevent log injection."""
    return "".join(c for c in value if 0x20 <= ord(c) < 0x7F)


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Get client IP with optional trusted proxy header support."""
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return _sanitize_ip(forwarded_for.split(",")[0].strip())

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return _sanitize_ip(real_ip.strip())

    if request.client:
        return request.client.host

    return "unknown"


def _request_too_large_response(max_body_size_bytes: int) -> JSONResponse:
    return JSONResponse(
        status_code=413,
        content={
            "error": "request_too_large",
            "message": f"Request body exceeds {max_body_size_bytes} bytes",
        },
    )


def _rate_limited_response(message: str, retry_after: float) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": "rate_limit_exceeded", "message": message},
        headers={"Retry-After": str(int(retry_after))},
    )


class PreAuthSecurityMiddleware(BaseHTTPMiddleware):
    """
    Pre-authentication security middleware.

    Runs BEFORE the bearer gate to protect against DoS attacks.

    Features:
    - Request body size limit
    - Header size limit
    - IP-based rate limiting, stricter on OAuth endpoints
    - Request timeout

    NOTE: TLS termination is assumed to be handled by ingress/LB.
    """

    def __init__(
        self,
        app: Callable,
        config: SecurityConfig,
        trust_forwarded_headers: bool = False,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        oauth_paths: frozenset[str] = OAUTH_PATHS,
    ) -> None:
        super().__init__(app)
        self.config = config
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            window_seconds=config.rate_limit_window_seconds
        )
        self._trust_forwarded_headers = trust_forwarded_headers
        self._oauth_paths = oauth_paths

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # 1. Request size check
        # Content-Length is only a fast path; body-carrying methods are always
        # measured while streaming.
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                logger.warning("Invalid Content-Length header: %r", content_length)
            else:
                if size > self.config.max_body_size_bytes:
                    logger.warning(
                        "Request body too large: %d > %d",
                        size,
                        self.config.max_body_size_bytes,
                    )
                    return _request_too_large_response(self.config.max_body_size_bytes)

        transfer_encoding = request.headers.get("transfer-encoding", "").lower()
        should_stream_check = "chunked" in transfer_encoding or request.method in (
            "POST",
            "PUT",
            "PATCH",
        )
        if should_stream_check:
            try:
                await self._check_body_size_streaming(request, self.config.max_body_size_bytes)
            except BodySizeLimitExceeded:
                logger.warning("Request body exceeded limit during streaming")
                return _request_too_large_response(self.config.max_body_size_bytes)

        # 2. Header size check
        total_header_size = sum(len(k) + len(v) for k, v in request.headers.items())
        if total_header_size > self.config.max_header_size_bytes:
            logger.warning(
                "Headers too large: %d > %d",
                total_header_size,
                self.config.max_header_size_bytes,
            )
            return JSONResponse(
                status_code=431,
                content={
                    "error": "headers_too_large",
                    "message": f"Headers exceed {self.config.max_header_size_bytes} bytes",
                },
            )

        # 3. IP-based rate limiting
        client_ip = get_client_ip(
            request,
            trust_forwarded_headers=self._trust_forwarded_headers,
        )
        window = self.rate_limiter.window_seconds
        if not await self.rate_limiter.allow(f"ip:{client_ip}", self.config.rate_limit_per_ip):
            logger.warning("Rate limit exceeded for IP: %s", client_ip)
            return _rate_limited_response("Too many requests from this IP", window)

        if request.url.path in self._oauth_paths:
            allowed = await self.rate_limiter.allow(
                f"oauth:{client_ip}", self.config.oauth_rate_limit_per_ip
            )
            if not allowed:
                logger.warning("OAuth rate limit exceeded for IP: %s", client_ip)
                return _rate_limited_response("Too many authorization attempts", window)

        # 4. Request timeout
        try:
            return await asyncio.wait_for(
                call_next(request),
                timeout=self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Request timeout after %s seconds", self.config.request_timeout_seconds)
            return JSONResponse(
                status_code=504,
                content={
                    "error": "request_timeout",
                    "message": (
                        f"Request timed out after {self.config.request_timeout_seconds} seconds"
                    ),
                },
            )

    async def _check_body_size_streaming(self, request: Request, max_size: int) -> int:
        """Read body with streaming size check, failing early if limit exceeded."""
        buf = bytearray()
        async for chunk in request.stream():
            buf.extend(chunk)
            if len(buf) > max_size:
                raise BodySizeLimitExceeded(f"Body exceeded {max_size} bytes")
        # Cache the body so downstream handlers can read it
        request._body = bytes(buf)
        return len(buf)
