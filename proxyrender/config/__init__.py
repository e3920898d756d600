"""
ProxyRender Configuration Module
Centralized configuration management using pydantic-settings.
"""

from proxyrender.config.settings import (
    Settings,
    AppSettings,
    ProxySettings,
    RateLimitSettings,
    KeepAliveSettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "Settings",
    "AppSettings",
    "ProxySettings",
    "RateLimitSettings",
    "KeepAliveSettings",
    "get_settings",
    "reload_settings",
]
