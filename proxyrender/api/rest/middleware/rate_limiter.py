"""
Rate Limiter Middleware
Fixed-window request limiting per client IP.
"""

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

import structlog
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from proxyrender.proxy.errors import RateLimitExceeded, error_envelope
from proxyrender.proxy.identity import identity_from_connection

logger = structlog.get_logger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 900.0
DEFAULT_EXEMPT_PATHS = ("/health", "/keep-alive", "/proxy-status")

# Above this many buckets, expired ones are swept on the next hit
MAX_IDLE_BUCKETS = 10000


@dataclass
class RateLimitBucket:
    """Request counter for one client IP."""

    window_start: float
    count: int
    limit: int
    window_seconds: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.window_seconds

    def is_valid(self, now: float) -> bool:
        try:
            return (
                isinstance(self.count, int)
                and self.count >= 0
                and float(self.window_start) <= now + self.window_seconds
            )
        except (TypeError, ValueError):
            return False


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one hit against the limiter."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: float

    def headers(self) -> Dict[str, str]:
        """Standard RateLimit-* response headers."""
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(max(0, math.ceil(self.reset_after))),
        }


class FixedWindowRateLimiter:
    """
    Fixed-window counter keyed by client IP.

    The first hit for a key opens a window; hits inside the window count up
    to ``limit``; once the window has elapsed the next hit starts a new one.
    Rejected hits are not counted. Window check and increment happen under
    the bucket's lock.
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_idle_buckets: int = MAX_IDLE_BUCKETS,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._max_idle_buckets = max_idle_buckets
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._registry_lock = threading.Lock()
        self._limited_count = 0

    def _new_bucket(self, now: float) -> RateLimitBucket:
        return RateLimitBucket(
            window_start=now,
            count=0,
            limit=self.limit,
            window_seconds=self.window_seconds,
        )

    def _bucket_for(self, key: str, now: float) -> RateLimitBucket:
        with self._registry_lock:
            bucket = self._buckets.get(key)
            if bucket is None or not isinstance(bucket, RateLimitBucket):
                if len(self._buckets) >= self._max_idle_buckets:
                    self._sweep(now)
                bucket = self._new_bucket(now)
                self._buckets[key] = bucket
            elif not bucket.is_valid(now):
                logger.warning("rate_limit_bucket_replaced", key=key)
                bucket = self._new_bucket(now)
                self._buckets[key] = bucket
            return bucket

    def _sweep(self, now: float) -> None:
        expired = [
            key for key, bucket in self._buckets.items()
            if not isinstance(bucket, RateLimitBucket) or bucket.expired(now)
        ]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("rate_limit_buckets_evicted", count=len(expired))

    def hit(self, key: str, now: Optional[float] = None) -> RateLimitDecision:
        """Count one request for ``key`` and decide whether to admit it."""
        now = self._clock() if now is None else now
        bucket = self._bucket_for(key, now)

        with bucket.lock:
            if bucket.expired(now):
                bucket.window_start = now
                bucket.count = 0

            allowed = bucket.count < bucket.limit
            if allowed:
                bucket.count += 1
            else:
                self._limited_count += 1

            return RateLimitDecision(
                allowed=allowed,
                limit=bucket.limit,
                remaining=max(0, bucket.limit - bucket.count),
                reset_after=bucket.window_start + bucket.window_seconds - now,
            )

    def bucket(self, key: str) -> Optional[RateLimitBucket]:
        return self._buckets.get(key)

    def get_stats(self) -> dict:
        """Get limiter statistics."""
        return {
            "active_buckets": len(self._buckets),
            "limited_count": self._limited_count,
            "limit": self.limit,
            "window_seconds": self.window_seconds,
        }


class RateLimiterMiddleware:
    """
    Applies a FixedWindowRateLimiter to every non-exempt HTTP request.

    Control endpoints are exempt, as are the methods in ``exempt_methods``.
    RateLimit-* headers are added to every limited-path response, including
    upstream errors. ``receive`` is passed through untouched so the endpoint
    can still observe a client disconnect.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter: FixedWindowRateLimiter,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        exempt_methods: Iterable[str] = ("OPTIONS",),
    ):
        self.app = app
        self.limiter = limiter
        self.exempt_paths = frozenset(exempt_paths)
        self.exempt_methods = frozenset(m.upper() for m in exempt_methods)

    def is_exempt(self, request: Request) -> bool:
        return (
            request.url.path in self.exempt_paths
            or request.method.upper() in self.exempt_methods
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if self.is_exempt(request):
            await self.app(scope, receive, send)
            return

        identity = identity_from_connection(request)
        decision = self.limiter.hit(identity.client_ip)

        if not decision.allowed:
            logger.warning(
                "rate_limited",
                client_ip=identity.client_ip,
                path=request.url.path,
            )
            headers = decision.headers()
            headers["Retry-After"] = headers["RateLimit-Reset"]
            response = JSONResponse(
                status_code=RateLimitExceeded.status_code,
                content=error_envelope(RateLimitExceeded(), path=request.url.path),
                headers=headers,
            )
            await response(scope, receive, send)
            return

        async def send_with_limit_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in decision.headers().items():
                    response_headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_limit_headers)
