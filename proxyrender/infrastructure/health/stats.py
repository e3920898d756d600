"""
Keep-Alive Statistics
Thread-safe counters for the self-ping scheduler.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional


@dataclass(frozen=True)
class KeepAliveStatsSnapshot:
    """Point-in-time copy of the keep-alive counters."""

    started_at: datetime
    uptime_seconds: int
    total_pings: int
    successful_pings: int
    failed_pings: int
    last_success: Optional[datetime]
    last_failure: Optional[datetime]
    consecutive_failures: int

    @property
    def success_rate(self) -> float:
        """Percentage of successful pings, rounded to two decimals."""
        if self.total_pings == 0:
            return 0.0
        return round(self.successful_pings / self.total_pings * 100, 2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "started_at": self.started_at.isoformat(),
            "uptime": self.uptime_seconds,
            "total_pings": self.total_pings,
            "successful_pings": self.successful_pings,
            "failed_pings": self.failed_pings,
            "success_rate": self.success_rate,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "consecutive_failures": self.consecutive_failures,
        }


class KeepAliveStats:
    """
    Keep-alive statistics service.

    All counters only grow, except ``consecutive_failures`` which resets to
    zero on any success. Updates are atomic; readers use ``snapshot()``.
    """

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at = clock()
        self._started_monotonic = time.monotonic()
        self._total = 0
        self._successful = 0
        self._failed = 0
        self._last_success: Optional[datetime] = None
        self._last_failure: Optional[datetime] = None
        self._consecutive_failures = 0

    def record_success(self) -> KeepAliveStatsSnapshot:
        with self._lock:
            self._total += 1
            self._successful += 1
            self._last_success = self._clock()
            self._consecutive_failures = 0
            return self._snapshot()

    def record_failure(self) -> KeepAliveStatsSnapshot:
        with self._lock:
            self._total += 1
            self._failed += 1
            self._last_failure = self._clock()
            self._consecutive_failures += 1
            return self._snapshot()

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def snapshot(self) -> KeepAliveStatsSnapshot:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> KeepAliveStatsSnapshot:
        return KeepAliveStatsSnapshot(
            started_at=self._started_at,
            uptime_seconds=int(time.monotonic() - self._started_monotonic),
            total_pings=self._total,
            successful_pings=self._successful,
            failed_pings=self._failed,
            last_success=self._last_success,
            last_failure=self._last_failure,
            consecutive_failures=self._consecutive_failures,
        )
