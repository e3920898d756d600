"""Shared fixtures: settings builders and an in-process fake upstream."""

from typing import Callable, List, Optional

import httpx
import pytest

from proxyrender.config.settings import (
    AppSettings,
    KeepAliveSettings,
    ProxySettings,
    RateLimitSettings,
    Settings,
)

TARGET_URL = "http://upstream.internal:8000"


def build_settings(
    env: str = "development",
    target_url: str = TARGET_URL,
    max_requests: int = 100,
    window_ms: int = 900000,
    keep_alive_enabled: bool = False,
    keep_alive_url: Optional[str] = None,
    keep_alive_interval: str = "*/10 * * * *",
    **proxy,
) -> Settings:
    """Settings built from keyword arguments only."""
    return Settings(
        app=AppSettings(env=env),
        proxy=ProxySettings(target_url=target_url, **proxy),
        rate_limit=RateLimitSettings(window_ms=window_ms, max_requests=max_requests),
        keep_alive=KeepAliveSettings(
            enabled=keep_alive_enabled,
            url=keep_alive_url,
            interval=keep_alive_interval,
        ),
    )


class FakeUpstream:
    """
    Upstream double backed by httpx.MockTransport.

    Records every request it receives. The default handler answers 200 with
    backend identity headers the gateway is expected to strip.
    """

    def __init__(self, handler: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self._handler = handler or self.default_handler

    @staticmethod
    def default_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"path": request.url.path, "query": request.url.query.decode()},
            headers={
                "server": "Kestrel",
                "x-aspnet-version": "4.0.30319",
                "x-aspnetmvc-version": "5.2",
                "x-powered-by": "ASP.NET",
                "x-backend": "yes",
            },
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    return build_settings


@pytest.fixture
def make_upstream() -> Callable[..., FakeUpstream]:
    return FakeUpstream
