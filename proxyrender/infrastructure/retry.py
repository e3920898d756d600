"""
Retry Policy
Explicit retry configuration shared by background jobs.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

DelayFunction = Callable[[int], float]
SleepFunction = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times an operation is attempted and how long to pause between
    attempts.

    Attributes:
        max_attempts: Total attempts, including the first one
        delay: Maps the 1-based number of the failed attempt to a pause in seconds
    """

    max_attempts: int = 1
    delay: DelayFunction = field(default=lambda attempt: 0.0)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    @classmethod
    def fixed(cls, max_attempts: int, delay_seconds: float) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, delay=lambda attempt: delay_seconds)

    @classmethod
    def exponential(
        cls,
        max_attempts: int,
        base_seconds: float,
        factor: float = 2.0,
        max_seconds: Optional[float] = None,
    ) -> "RetryPolicy":
        def delay(attempt: int) -> float:
            seconds = base_seconds * (factor ** (attempt - 1))
            return min(seconds, max_seconds) if max_seconds is not None else seconds

        return cls(max_attempts=max_attempts, delay=delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return max(0.0, float(self.delay(attempt)))

    async def run(
        self,
        attempt_fn: Callable[[int], Awaitable[bool]],
        sleep: SleepFunction = asyncio.sleep,
        on_retry: Optional[Callable[[int, float], None]] = None,
    ) -> bool:
        """
        Call ``attempt_fn(attempt)`` until it returns True or attempts run out.

        Exceptions raised by ``attempt_fn`` propagate; callers that want
        errors to count as failed attempts catch them inside ``attempt_fn``.

        Returns:
            True if any attempt succeeded
        """
        for attempt in range(1, self.max_attempts + 1):
            if await attempt_fn(attempt):
                return True

            if self.should_retry(attempt):
                pause = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, pause)
                await sleep(pause)

        return False


NO_RETRY = RetryPolicy.no_retry()
