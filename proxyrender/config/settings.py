"""
ProxyRender Settings
Pydantic-based configuration loaded from environment variables.
"""

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

RUNTIME_MODES = ("development", "production")


class AppSettings(BaseSettings):
    """Application-level settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    name: str = Field(default="ProxyRender Liberia", alias="APP_NAME")
    version: str = Field(default="1.0.0", alias="APP_VERSION")
    env: str = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENV", "NODE_ENV", "env"),
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=10000, alias="PORT")

    @field_validator("env", mode="before")
    @classmethod
    def parse_env(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
        if v not in RUNTIME_MODES:
            raise ValueError(f"runtime mode must be one of {RUNTIME_MODES}, got {v!r}")
        return v

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def is_development(self) -> bool:
        return self.env == "development"


class ProxySettings(BaseSettings):
    """Upstream target settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    target_url: str = Field(default="http://localhost:8000", alias="TARGET_URL")
    timeout_ms: int = Field(default=30000, alias="PROXY_TIMEOUT_MS")
    follow_redirects: bool = Field(default=True, alias="PROXY_FOLLOW_REDIRECTS")
    enable_websocket: bool = Field(default=True, alias="PROXY_WEBSOCKETS")
    permissive_cors: bool = Field(default=True, alias="PROXY_PERMISSIVE_CORS")

    @field_validator("target_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v


class RateLimitSettings(BaseSettings):
    """Per-client rate limiting settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    window_ms: int = Field(default=900000, alias="RATE_LIMIT_WINDOW_MS")
    max_requests: int = Field(default=100, alias="RATE_LIMIT_MAX_REQUESTS")

    @field_validator("window_ms", "max_requests")
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v


class KeepAliveSettings(BaseSettings):
    """Self-ping scheduler settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    enabled: bool = Field(default=True, alias="KEEP_ALIVE_ENABLED")
    url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("KEEP_ALIVE_URL", "RENDER_EXTERNAL_URL", "url"),
    )
    interval: str = Field(default="*/10 * * * *", alias="KEEP_ALIVE_INTERVAL")
    timeout_ms: int = Field(default=10000, alias="KEEP_ALIVE_TIMEOUT")
    verbose: bool = Field(default=False, alias="KEEP_ALIVE_VERBOSE")
    max_retries: int = Field(default=3, alias="KEEP_ALIVE_MAX_RETRIES")
    retry_delay_ms: int = Field(default=5000, alias="KEEP_ALIVE_RETRY_DELAY_MS")
    alert_threshold: int = Field(default=5, alias="KEEP_ALIVE_ALERT_THRESHOLD")

    @field_validator("url", mode="before")
    @classmethod
    def blank_url_is_unset(cls, v):
        if isinstance(v, str):
            v = v.strip().rstrip("/")
            return v or None
        return v


class Settings(BaseSettings):
    """
    Main settings class that aggregates all config sections.

    Usage:
        from proxyrender.config import get_settings

        settings = get_settings()
        print(settings.proxy.target_url)
        print(settings.rate_limit.max_requests)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    keep_alive: KeepAliveSettings = Field(default_factory=KeepAliveSettings)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Reload settings (clears cache).

    Returns:
        Settings: Fresh settings instance
    """
    get_settings.cache_clear()
    return get_settings()
