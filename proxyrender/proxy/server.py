"""
Proxy Server Entry Point

Runs the ProxyRender gateway under uvicorn.
"""

import sys
from typing import Optional

import structlog
import uvicorn
from pydantic import ValidationError

from proxyrender.config.settings import Settings, get_settings
from proxyrender.proxy.gateway import create_gateway_app

logger = structlog.get_logger(__name__)

GRACEFUL_SHUTDOWN_SECONDS = 10


def run_proxy_server(settings: Optional[Settings] = None) -> None:
    """
    Run the reverse proxy server until SIGINT/SIGTERM.

    Exits with status 1 when the configuration is invalid.
    """
    try:
        if settings is None:
            settings = get_settings()
        app = create_gateway_app(settings=settings)
    except (ValidationError, ValueError) as e:
        logger.error("configuration_invalid", error=str(e))
        print(f"Configuration errors: {e}", file=sys.stderr)
        sys.exit(1)

    print_banner(settings)

    uvicorn.run(
        app,
        host=settings.app.host,
        port=settings.app.port,
        log_level=settings.app.log_level.lower(),
        access_log=True,
        server_header=False,
        timeout_graceful_shutdown=GRACEFUL_SHUTDOWN_SECONDS,
    )
    logger.info("proxy_server_stopped")


def print_banner(settings: Settings) -> None:
    """Print startup banner."""
    keep_alive = settings.keep_alive
    if not keep_alive.enabled:
        keep_alive_state = "Disabled"
    elif keep_alive.url:
        keep_alive_state = f"Enabled ({keep_alive.interval})"
    elif settings.app.is_production:
        keep_alive_state = "Disabled (no KEEP_ALIVE_URL)"
    else:
        keep_alive_state = f"Enabled, local ({keep_alive.interval})"

    window_minutes = settings.rate_limit.window_ms / 60000

    print(f"""
┌─────────────────────────────────────────────────────────────────────────────┐
│  {settings.app.name:<75}│
├─────────────────────────────────────────────────────────────────────────────┤
│  Port:              {settings.app.port:<56}│
│  Target:            {settings.proxy.target_url:<56}│
│  Environment:       {settings.app.env:<56}│
│  Rate Limit:        {f'{settings.rate_limit.max_requests} req / {window_minutes:g} min':<56}│
│  Keep-Alive:        {keep_alive_state:<56}│
│  WebSocket Proxy:   {'Enabled' if settings.proxy.enable_websocket else 'Disabled':<56}│
└─────────────────────────────────────────────────────────────────────────────┘

  Control Endpoints:
    • GET  /health         - Health check
    • GET  /keep-alive     - Keep-alive target
    • GET  /proxy-status   - Proxy status and caller identity

  Starting proxy server...
""")
