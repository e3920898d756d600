"""API Middleware - Request processing middleware."""

from proxyrender.api.rest.middleware.rate_limiter import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimiterMiddleware,
)
from proxyrender.api.rest.middleware.security_headers import SecurityHeadersMiddleware
from proxyrender.api.rest.middleware.traffic_interceptor import TrafficInterceptorMiddleware

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimiterMiddleware",
    "SecurityHeadersMiddleware",
    "TrafficInterceptorMiddleware",
]
