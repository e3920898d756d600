"""
Keep-Alive Scheduler
Pings the gateway's own /keep-alive endpoint on a cron schedule so the
hosting platform does not idle the process.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import httpx
import structlog
from croniter import croniter

from proxyrender.config.settings import Settings
from proxyrender.infrastructure.health.stats import KeepAliveStats, KeepAliveStatsSnapshot
from proxyrender.infrastructure.retry import RetryPolicy

logger = structlog.get_logger(__name__)

KEEP_ALIVE_ENDPOINT = "/keep-alive"
KEEP_ALIVE_USER_AGENT = "ProxyRender-KeepAlive/1.0"
STATS_REPORT_INTERVAL = "0 * * * *"

DEFAULT_INTERVAL = "*/10 * * * *"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_ALERT_THRESHOLD = 5


class SchedulerState(str, Enum):
    """Keep-alive scheduler states."""

    IDLE = "idle"
    PINGING = "pinging"
    RETRYING = "retrying"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


class KeepAliveConfigError(ValueError):
    """Raised when the scheduler configuration is unusable."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


AlertHandler = Callable[[KeepAliveStatsSnapshot], None]


@dataclass(frozen=True)
class KeepAliveConfig:
    """
    Configuration for the keep-alive scheduler.

    Attributes:
        service_url: Base URL of the service to keep awake
        interval: Cron expression for the recurring ping
        timeout_seconds: Timeout for each ping attempt
        max_attempts: Attempts per ping before recording a failure
        retry_delay_seconds: Pause between attempts
        alert_threshold: Consecutive failures that trigger an alert
        verbose: Log response bodies
        production: Running in production mode
        explicit_url: service_url was configured rather than defaulted
    """

    service_url: str
    interval: str = DEFAULT_INTERVAL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    alert_threshold: int = DEFAULT_ALERT_THRESHOLD
    verbose: bool = False
    production: bool = False
    explicit_url: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeepAliveConfig":
        """Build from settings; defaults to pinging this process locally."""
        keep_alive = settings.keep_alive
        return cls(
            service_url=keep_alive.url or f"http://localhost:{settings.app.port}",
            interval=keep_alive.interval,
            timeout_seconds=keep_alive.timeout_ms / 1000,
            max_attempts=keep_alive.max_retries,
            retry_delay_seconds=keep_alive.retry_delay_ms / 1000,
            alert_threshold=keep_alive.alert_threshold,
            verbose=keep_alive.verbose or settings.app.is_development,
            production=settings.app.is_production,
            explicit_url=keep_alive.url is not None,
        )

    @property
    def ping_url(self) -> str:
        return f"{self.service_url.rstrip('/')}{KEEP_ALIVE_ENDPOINT}"

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.production and not self.explicit_url:
            errors.append("KEEP_ALIVE_URL is required in production")

        try:
            url = httpx.URL(self.service_url)
        except (httpx.InvalidURL, TypeError):
            errors.append(f"Invalid keep-alive URL: {self.service_url!r}")
        else:
            if url.scheme not in ("http", "https") or not url.host:
                errors.append(f"Invalid keep-alive URL: {self.service_url!r}")

        if not croniter.is_valid(self.interval):
            errors.append(f"Invalid cron interval: {self.interval!r}")

        if self.timeout_seconds <= 0:
            errors.append("Keep-alive timeout must be greater than zero")
        if self.max_attempts < 1:
            errors.append("Keep-alive max attempts must be at least 1")

        return errors


class KeepAliveScheduler:
    """
    Cron-driven self-ping with bounded retries.

    One ping runs immediately on start, then one per cron tick. A ping is
    successful on any status in [200, 500); transport errors and 5xx are
    retried according to the retry policy. Exhausting all attempts records a
    single failure; reaching ``alert_threshold`` consecutive failures raises
    an alert through the log and the registered alert handlers.
    """

    def __init__(
        self,
        config: KeepAliveConfig,
        stats: Optional[KeepAliveStats] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.stats = stats or KeepAliveStats()
        self.retry_policy = retry_policy or RetryPolicy.fixed(
            max_attempts=config.max_attempts,
            delay_seconds=config.retry_delay_seconds,
        )

        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._state = SchedulerState.IDLE
        self._last_result: Optional[SchedulerState] = None
        self._alert_handlers: List[AlertHandler] = []
        self._tasks: List[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None
        self._ping_lock: Optional[asyncio.Lock] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def last_result(self) -> Optional[SchedulerState]:
        return self._last_result

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not all(task.done() for task in self._tasks)

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Register a callable invoked with the stats when the alert fires."""
        self._alert_handlers.append(handler)

    def validate(self) -> None:
        errors = self.config.validate()
        if errors:
            for error in errors:
                logger.error("keep_alive_config_invalid", error=error)
            raise KeepAliveConfigError(errors)

        if not self.config.explicit_url:
            logger.warning(
                "keep_alive_url_not_configured",
                service_url=self.config.service_url,
            )

    async def start(self) -> None:
        """Validate configuration, ping once, and schedule recurring pings."""
        self.validate()

        self._stopping = asyncio.Event()
        logger.info(
            "keep_alive_starting",
            service_url=self.config.service_url,
            interval=self.config.interval,
            timeout_seconds=self.config.timeout_seconds,
            max_attempts=self.retry_policy.max_attempts,
            verbose=self.config.verbose,
        )

        self._tasks = [
            asyncio.create_task(self._run_pings()),
            asyncio.create_task(self._cron_loop(STATS_REPORT_INTERVAL, self._report_job, "stats_report")),
        ]
        logger.info("keep_alive_scheduled", interval=self.config.interval)

    async def _run_pings(self) -> None:
        logger.info("keep_alive_initial_ping")
        try:
            await self.ping()
        except Exception as e:
            logger.error("keep_alive_job_failed", job="initial_ping", error=str(e))
        await self._cron_loop(self.config.interval, self.ping, "ping")

    async def _report_job(self) -> None:
        self.report_stats()

    async def _cron_loop(
        self,
        expression: str,
        job: Callable[[], Awaitable[object]],
        name: str,
    ) -> None:
        while not self._stopping.is_set():
            now = datetime.now().astimezone()
            next_run = croniter(expression, now).get_next(datetime)
            delay = max(0.0, (next_run - now).total_seconds())

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await job()
            except Exception as e:
                logger.error("keep_alive_job_failed", job=name, error=str(e))

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def ping(self) -> bool:
        """
        Ping the keep-alive endpoint with retries.

        Returns:
            True if any attempt succeeded
        """
        if self._ping_lock is None:
            self._ping_lock = asyncio.Lock()

        async with self._ping_lock:
            await self._ensure_client()
            logger.debug("keep_alive_ping", url=self.config.ping_url)

            succeeded = await self.retry_policy.run(
                self._attempt,
                sleep=self._sleep,
                on_retry=self._on_retry,
            )

            if succeeded:
                snapshot = self.stats.record_success()
                self._last_result = SchedulerState.SUCCESS
                logger.info(
                    "keep_alive_ping_successful",
                    success_rate=snapshot.success_rate,
                )
            else:
                snapshot = self.stats.record_failure()
                self._last_result = SchedulerState.EXHAUSTED
                logger.error(
                    "keep_alive_attempts_exhausted",
                    attempts=self.retry_policy.max_attempts,
                    consecutive_failures=snapshot.consecutive_failures,
                )
                if snapshot.consecutive_failures >= self.config.alert_threshold:
                    self._emit_alert(snapshot)

            self._state = SchedulerState.IDLE
            return succeeded

    async def _attempt(self, attempt: int) -> bool:
        self._state = SchedulerState.PINGING
        try:
            response = await self._client.get(
                self.config.ping_url,
                timeout=self.config.timeout_seconds,
                headers={
                    "User-Agent": KEEP_ALIVE_USER_AGENT,
                    "X-Keep-Alive": "true",
                },
            )
        except httpx.HTTPError as e:
            logger.error(
                "keep_alive_attempt_failed",
                attempt=attempt,
                max_attempts=self.retry_policy.max_attempts,
                error=str(e) or e.__class__.__name__,
            )
            return False

        if 200 <= response.status_code < 500:
            if self.config.verbose:
                logger.debug(
                    "keep_alive_response",
                    status_code=response.status_code,
                    body=response.text[:500],
                )
            return True

        logger.warning(
            "keep_alive_bad_status",
            attempt=attempt,
            status_code=response.status_code,
        )
        return False

    def _on_retry(self, attempt: int, delay: float) -> None:
        self._state = SchedulerState.RETRYING
        logger.warning(
            "keep_alive_retrying",
            attempt=attempt,
            max_attempts=self.retry_policy.max_attempts,
            delay_seconds=delay,
        )

    def _emit_alert(self, snapshot: KeepAliveStatsSnapshot) -> None:
        logger.critical(
            "keep_alive_high_failure_rate",
            consecutive_failures=snapshot.consecutive_failures,
            threshold=self.config.alert_threshold,
            last_success=snapshot.last_success.isoformat() if snapshot.last_success else None,
        )
        for handler in self._alert_handlers:
            try:
                handler(snapshot)
            except Exception as e:
                logger.error("keep_alive_alert_handler_failed", error=str(e))

    def report_stats(self) -> KeepAliveStatsSnapshot:
        """Log the current statistics."""
        snapshot = self.stats.snapshot()
        logger.info("keep_alive_statistics", **snapshot.to_dict())
        return snapshot

    async def stop(self) -> KeepAliveStatsSnapshot:
        """Stop the timer, close the client and report final statistics."""
        logger.info("keep_alive_stopping")

        if self._stopping is not None:
            self._stopping.set()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

        self._state = SchedulerState.IDLE
        snapshot = self.report_stats()
        logger.info("keep_alive_stopped")
        return snapshot
