"""
ProxyRender Infrastructure Layer
Background scheduling, statistics and retry policies.
"""

from proxyrender.infrastructure.retry import NO_RETRY, RetryPolicy

__all__ = [
    "NO_RETRY",
    "RetryPolicy",
]
