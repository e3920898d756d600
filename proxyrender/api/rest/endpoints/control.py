"""
Control Endpoints
Health, keep-alive and status endpoints served by the gateway itself.
"""

import time

import psutil
import structlog
from fastapi import APIRouter, Request

from proxyrender.proxy.errors import utc_timestamp
from proxyrender.proxy.identity import identity_from_connection

router = APIRouter()
logger = structlog.get_logger(__name__)

PROXY_NAME = "ProxyRender Liberia v1.0"
CONTROL_PATHS = ("/health", "/keep-alive", "/proxy-status")


def _uptime(request: Request) -> float:
    started = getattr(request.app.state, "started_monotonic", None)
    if started is None:
        return 0.0
    return round(max(0.0, time.monotonic() - started), 3)


def _memory_usage() -> dict:
    memory = psutil.Process().memory_info()
    return {
        "rss_mb": round(memory.rss / (1024 * 1024), 2),
        "vms_mb": round(memory.vms / (1024 * 1024), 2),
    }


@router.get("/health")
async def health_check(request: Request):
    """
    Liveness endpoint. Never rate-limited.

    Returns:
        Process health, uptime and memory usage
    """
    settings = request.app.state.settings
    try:
        memory = _memory_usage()
    except psutil.Error as e:
        logger.warning("memory_usage_unavailable", error=str(e))
        memory = {}

    return {
        "status": "ok",
        "timestamp": utc_timestamp(),
        "uptime": _uptime(request),
        "memory": memory,
        "environment": settings.app.env,
        "target": settings.proxy.target_url,
        "version": settings.app.version,
    }


@router.get("/keep-alive")
async def keep_alive(request: Request):
    """Endpoint hit by the keep-alive scheduler."""
    if request.headers.get("x-keep-alive") == "true":
        logger.debug("keep_alive_ping_received", user_agent=request.headers.get("user-agent"))

    return {
        "status": "awake",
        "timestamp": utc_timestamp(),
        "message": "Proxy is active and responding",
    }


@router.get("/proxy-status")
async def proxy_status(request: Request):
    """Report the gateway's view of the caller and its own state."""
    settings = request.app.state.settings
    identity = identity_from_connection(request)

    return {
        "proxy": PROXY_NAME,
        "status": "active",
        "target": settings.proxy.target_url,
        "timestamp": utc_timestamp(),
        "client_ip": identity.client_ip,
        "access_domain": identity.access_domain,
        "uptime": _uptime(request),
        "environment": settings.app.env,
    }
