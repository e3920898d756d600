"""
Reverse Proxy Configuration

Upstream target configuration for the ProxyRender gateway.
"""

from dataclasses import dataclass
from typing import List

import httpx

from proxyrender.config.settings import Settings


@dataclass(frozen=True)
class ProxyTargetConfig:
    """
    Configuration for the single upstream target.

    Attributes:
        target_url: Base URL requests are forwarded to
        timeout_seconds: Timeout applied to every upstream call
        follow_redirects: Whether upstream redirects are followed
        enable_websocket: Forward WebSocket upgrades end-to-end
        permissive_cors: Force permissive CORS and answer preflights locally
        development: Expose raw error detail and the target in error bodies
    """

    target_url: str
    timeout_seconds: float = 30.0
    follow_redirects: bool = True
    enable_websocket: bool = True
    permissive_cors: bool = True
    development: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProxyTargetConfig":
        """Create configuration from application settings."""
        return cls(
            target_url=settings.proxy.target_url,
            timeout_seconds=settings.proxy.timeout_ms / 1000,
            follow_redirects=settings.proxy.follow_redirects,
            enable_websocket=settings.proxy.enable_websocket,
            permissive_cors=settings.proxy.permissive_cors,
            development=settings.app.is_development,
        )

    @property
    def websocket_url(self) -> str:
        """The target URL with its scheme switched to ws/wss."""
        scheme, _, rest = self.target_url.partition("://")
        return f"{'wss' if scheme == 'https' else 'ws'}://{rest}"

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        try:
            url = httpx.URL(self.target_url)
        except (httpx.InvalidURL, TypeError):
            errors.append(f"Invalid target URL: {self.target_url!r}")
        else:
            if url.scheme not in ("http", "https"):
                errors.append("Target URL must use http or https")
            if not url.host:
                errors.append("Target URL must include a host")

        if self.timeout_seconds <= 0:
            errors.append("Proxy timeout must be greater than zero")

        return errors
