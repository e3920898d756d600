"""REST API - control routes and middleware."""

from proxyrender.api.rest.endpoints import router as control_router
from proxyrender.api.rest.middleware import (
    FixedWindowRateLimiter,
    RateLimiterMiddleware,
    SecurityHeadersMiddleware,
    TrafficInterceptorMiddleware,
)

__all__ = [
    "control_router",
    "FixedWindowRateLimiter",
    "RateLimiterMiddleware",
    "SecurityHeadersMiddleware",
    "TrafficInterceptorMiddleware",
]
