"""
Traffic Interceptor Middleware
Logs every request with the resolved client identity.
"""

import time

import structlog
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from proxyrender.proxy.identity import identity_from_connection

logger = structlog.get_logger(__name__)


class TrafficInterceptorMiddleware:
    """
    Request logging for development mode.

    Logs the incoming request with client IP and access domain, then the
    completion with status code and duration.
    """

    def __init__(self, app: ASGIApp):
        self.app = app
        self._request_count = 0

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        self._request_count += 1

        request = Request(scope)
        identity = identity_from_connection(request)
        logger.debug(
            "request_intercepted",
            method=request.method,
            path=request.url.path,
            client_ip=identity.client_ip,
            access_domain=identity.access_domain,
        )

        status_code = None

        async def send_and_record(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_and_record)
        finally:
            duration = (time.perf_counter() - start_time) * 1000
            logger.debug(
                "request_completed",
                method=request.method,
                path=request.url.path,
                client_ip=identity.client_ip,
                status_code=status_code,
                duration_ms=f"{duration:.2f}",
            )

    def get_stats(self) -> dict:
        """Get middleware statistics."""
        return {"total_requests": self._request_count}
