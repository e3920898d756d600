"""
Reverse Proxy Gateway

Main gateway component: serves the control endpoints, applies per-client
rate limiting and forwards everything else to the single upstream target.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from proxyrender.api.rest.endpoints.control import CONTROL_PATHS, router as control_router
from proxyrender.api.rest.middleware.rate_limiter import (
    FixedWindowRateLimiter,
    RateLimiterMiddleware,
)
from proxyrender.api.rest.middleware.security_headers import SecurityHeadersMiddleware
from proxyrender.api.rest.middleware.traffic_interceptor import TrafficInterceptorMiddleware
from proxyrender.config.settings import Settings, get_settings
from proxyrender.infrastructure.health.keep_alive import KeepAliveConfig, KeepAliveScheduler
from proxyrender.proxy.config import ProxyTargetConfig
from proxyrender.proxy.errors import GatewayError, InternalError, error_envelope
from proxyrender.proxy.forwarder import UpstreamForwarder
from proxyrender.proxy.identity import identity_from_connection

logger = structlog.get_logger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# Policy violation
WEBSOCKET_RATE_LIMITED = 1008

# Bodies below this size are sent uncompressed
GZIP_MINIMUM_SIZE = 1024


class ProxyGateway:
    """
    ProxyRender reverse proxy gateway.

    Request pipeline:
    1. Control endpoints (/health, /keep-alive, /proxy-status) answered locally
    2. Rate limiting per client IP
    3. CORS preflights answered locally
    4. Everything else forwarded to the upstream target
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        scheduler: Optional[KeepAliveScheduler] = None,
    ):
        self.settings = settings
        self.config = ProxyTargetConfig.from_settings(settings)

        self.limiter = FixedWindowRateLimiter(
            limit=settings.rate_limit.max_requests,
            window_seconds=settings.rate_limit.window_ms / 1000,
        )
        self.forwarder = UpstreamForwarder(self.config, client=http_client)
        self.scheduler = scheduler if scheduler is not None else self._build_scheduler()

        self.app: Optional[FastAPI] = None
        self._started_monotonic = time.monotonic()

        logger.info(
            "proxy_gateway_created",
            target=self.config.target_url,
            environment=settings.app.env,
            rate_limit=settings.rate_limit.max_requests,
            rate_window_ms=settings.rate_limit.window_ms,
            keep_alive=self.scheduler is not None,
        )

    def _build_scheduler(self) -> Optional[KeepAliveScheduler]:
        keep_alive = self.settings.keep_alive
        if not keep_alive.enabled:
            return None

        if self.settings.app.is_production and keep_alive.url is None:
            logger.warning("keep_alive_disabled", reason="KEEP_ALIVE_URL not configured")
            return None

        return KeepAliveScheduler(KeepAliveConfig.from_settings(self.settings))

    def create_app(self) -> FastAPI:
        """Create the FastAPI application for the proxy gateway."""

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncGenerator:
            """Application lifespan manager."""
            logger.info("starting_proxy_gateway", target=self.config.target_url)
            await self.forwarder.initialize()

            if self.scheduler is not None:
                await self.scheduler.start()

            yield

            logger.info("shutting_down_proxy_gateway")
            if self.scheduler is not None:
                await self.scheduler.stop()
            await self.forwarder.shutdown()

        self.app = FastAPI(
            title=self.settings.app.name,
            version=self.settings.app.version,
            lifespan=lifespan,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        self.app.state.settings = self.settings
        self.app.state.gateway = self
        self.app.state.started_monotonic = self._started_monotonic

        # Last added runs first. Preflights are only exempt when answered locally.
        self.app.add_middleware(
            RateLimiterMiddleware,
            limiter=self.limiter,
            exempt_paths=CONTROL_PATHS,
            exempt_methods=("OPTIONS",) if self.config.permissive_cors else (),
        )
        if self.settings.app.is_development:
            self.app.add_middleware(TrafficInterceptorMiddleware)
        self.app.add_middleware(SecurityHeadersMiddleware)
        self.app.add_middleware(GZipMiddleware, minimum_size=GZIP_MINIMUM_SIZE)

        self.app.include_router(control_router)

        @self.app.exception_handler(GatewayError)
        async def gateway_error_handler(request: Request, exc: GatewayError):
            logger.warning(
                "gateway_error",
                path=request.url.path,
                code=exc.code,
                error=str(exc),
            )
            return JSONResponse(
                status_code=exc.status_code,
                content=error_envelope(exc, path=request.url.path),
            )

        @self.app.exception_handler(Exception)
        async def global_exception_handler(request: Request, exc: Exception):
            logger.error(
                "unhandled_exception",
                path=request.url.path,
                error=str(exc),
            )
            return JSONResponse(
                status_code=InternalError.status_code,
                content=error_envelope(InternalError(), path=request.url.path),
            )

        # Catch-all route for proxying
        @self.app.api_route("/{path:path}", methods=PROXY_METHODS)
        async def proxy_request(request: Request, path: str):
            """Proxy all requests through the gateway."""
            return await self._handle_request(request)

        if self.config.enable_websocket:
            @self.app.websocket("/{path:path}")
            async def proxy_websocket(websocket: WebSocket, path: str):
                """Proxy WebSocket connections."""
                await self._handle_websocket(websocket)

        return self.app

    async def _handle_request(self, request: Request) -> Response:
        identity = identity_from_connection(request)

        if request.method == "OPTIONS" and self.config.permissive_cors:
            return self.forwarder.preflight(request)

        return await self.forwarder.forward(request, identity)

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        identity = identity_from_connection(websocket)

        decision = self.limiter.hit(identity.client_ip)
        if not decision.allowed:
            logger.warning(
                "websocket_rate_limited",
                client_ip=identity.client_ip,
                path=websocket.url.path,
            )
            await websocket.close(code=WEBSOCKET_RATE_LIMITED)
            return

        await self.forwarder.forward_websocket(websocket, identity)

    def get_stats(self) -> Dict[str, Any]:
        """Get gateway statistics."""
        stats: Dict[str, Any] = {
            "uptime_seconds": time.monotonic() - self._started_monotonic,
            "rate_limiter": self.limiter.get_stats(),
            "forwarder": self.forwarder.get_stats(),
        }
        if self.scheduler is not None:
            stats["keep_alive"] = self.scheduler.stats.snapshot().to_dict()
        return stats


def create_gateway_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    scheduler: Optional[KeepAliveScheduler] = None,
) -> FastAPI:
    """
    Create a FastAPI application for the reverse proxy gateway.

    Args:
        settings: Application settings (or load from environment)
        http_client: Optional pre-built client for upstream calls
        scheduler: Optional keep-alive scheduler replacing the embedded one

    Returns:
        Configured FastAPI application

    Raises:
        ValueError: The proxy target or the keep-alive schedule is invalid
    """
    if settings is None:
        settings = get_settings()

    errors = ProxyTargetConfig.from_settings(settings).validate()
    if errors:
        logger.error("proxy_config_invalid", errors=errors)
        raise ValueError(f"Invalid proxy configuration: {errors}")

    gateway = ProxyGateway(settings=settings, http_client=http_client, scheduler=scheduler)
    if gateway.scheduler is not None:
        gateway.scheduler.validate()
    return gateway.create_app()
