"""
Keep-Alive Infrastructure
Self-ping scheduler and its failure-tracking statistics.
"""

from proxyrender.infrastructure.health.keep_alive import (
    KeepAliveConfig,
    KeepAliveConfigError,
    KeepAliveScheduler,
    SchedulerState,
)
from proxyrender.infrastructure.health.stats import (
    KeepAliveStats,
    KeepAliveStatsSnapshot,
)

__all__ = [
    "KeepAliveConfig",
    "KeepAliveConfigError",
    "KeepAliveScheduler",
    "SchedulerState",
    "KeepAliveStats",
    "KeepAliveStatsSnapshot",
]
