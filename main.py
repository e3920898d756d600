"""
ProxyRender Liberia - Reverse proxy gateway with keep-alive scheduler
Main entry point for the application.
"""

import asyncio
import dataclasses
import logging
import signal
import sys
from typing import Optional

import structlog
from dotenv import load_dotenv
from pydantic import ValidationError

from proxyrender.config import Settings, get_settings
from proxyrender.infrastructure.health.keep_alive import (
    KeepAliveConfig,
    KeepAliveConfigError,
    KeepAliveScheduler,
)

# Load environment variables
load_dotenv(".env")

logger = structlog.get_logger(__name__)

SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGQUIT")


def configure_logging(log_level: str = "INFO", production: bool = False) -> None:
    """Configure structlog over the standard logging module."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if production
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def run_gateway(settings: Settings) -> int:
    """Run the reverse proxy gateway."""
    from proxyrender.proxy.server import run_proxy_server

    logger.info(
        "starting_proxyrender",
        version=settings.app.version,
        environment=settings.app.env,
    )
    run_proxy_server(settings)
    return 0


def build_keep_alive_config(settings: Settings, args) -> KeepAliveConfig:
    """Apply command-line overrides on top of the environment settings."""
    config = KeepAliveConfig.from_settings(settings)
    overrides = {}

    if args.url:
        overrides["service_url"] = args.url.rstrip("/")
        overrides["explicit_url"] = True
    if args.interval:
        overrides["interval"] = args.interval
    if args.timeout:
        overrides["timeout_seconds"] = args.timeout / 1000
    if args.verbose:
        overrides["verbose"] = True

    return dataclasses.replace(config, **overrides) if overrides else config


async def run_keep_alive(config: KeepAliveConfig, test: bool = False) -> int:
    """
    Run the keep-alive scheduler standalone.

    Returns:
        Process exit code
    """
    scheduler = KeepAliveScheduler(config)

    try:
        scheduler.validate()
    except KeepAliveConfigError as e:
        print(f"Keep-alive configuration errors: {e}", file=sys.stderr)
        return 1

    if test:
        logger.info("keep_alive_single_ping_test", url=config.ping_url)
        succeeded = await scheduler.ping()
        await scheduler.stop()
        return 0 if succeeded else 1

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for name in SHUTDOWN_SIGNALS:
        sig: Optional[signal.Signals] = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    await scheduler.start()
    await stop_requested.wait()

    logger.info("shutdown_signal_received")
    await scheduler.stop()
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="ProxyRender Liberia - Reverse proxy gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                   # Run the proxy gateway
  python main.py --mode keepalive                  # Run the keep-alive scheduler only
  python main.py --mode keepalive --test           # Ping once and exit
  python main.py --mode keepalive --url https://my-proxy.onrender.com
  python main.py --mode keepalive --interval "*/5 * * * *" --verbose
        """,
    )
    parser.add_argument(
        "--mode",
        choices=["gateway", "keepalive"],
        default="gateway",
        help="Service mode to run (default: gateway)",
    )
    parser.add_argument("--url", help="Service URL to keep alive")
    parser.add_argument("--interval", help="Cron interval (default: '*/10 * * * *')")
    parser.add_argument("--timeout", type=int, help="Ping timeout in milliseconds (default: 10000)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose keep-alive logging")
    parser.add_argument("--test", action="store_true", help="Run a single ping test and exit")

    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Configuration errors: {e}", file=sys.stderr)
        return 1

    configure_logging(settings.app.log_level, production=settings.app.is_production)

    if args.mode == "keepalive":
        return asyncio.run(run_keep_alive(build_keep_alive_config(settings, args), test=args.test))
    return run_gateway(settings)


if __name__ == "__main__":
    sys.exit(main())
