"""End-to-end tests for the gateway application with a fake upstream."""

import asyncio
import json
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from websockets.sync.server import serve

from proxyrender.proxy.gateway import ProxyGateway, create_gateway_app


@pytest.fixture
def make_client(make_settings, upstream):
    def _make(fake=None, raise_server_exceptions=True, **settings):
        fake = fake or upstream
        app = create_gateway_app(
            settings=make_settings(**settings),
            http_client=fake.client(),
        )
        return TestClient(app, raise_server_exceptions=raise_server_exceptions)

    return _make


def refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("[Errno 111] Connection refused to upstream.internal", request=request)


def http_scope(path: str, method: str = "GET") -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"proxy.example.com")],
        "client": ("203.0.113.9", 50000),
        "server": ("proxy.example.com", 80),
    }


class ChunkedBody(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b"first,"
        yield b"second"


@pytest.fixture
def echo_upstream():
    """WebSocket server on a free local port that echoes every message."""
    handshakes = []

    def echo(connection):
        handshakes.append(connection.request)
        for message in connection:
            connection.send(message)

    server = serve(echo, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.socket.getsockname()[:2]

    yield f"http://{host}:{port}", handshakes

    server.shutdown()
    thread.join(timeout=5)


def test_health_is_ok(make_client):
    response = make_client().get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["uptime"] >= 0
    assert body["environment"] == "development"
    assert body["target"] == "http://upstream.internal:8000"
    assert "rss_mb" in body["memory"]


def test_keep_alive_endpoint(make_client):
    response = make_client().get(
        "/keep-alive",
        headers={"X-Keep-Alive": "true", "User-Agent": "ProxyRender-KeepAlive/1.0"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "awake"


def test_proxy_status_reports_caller(make_client):
    response = make_client().get(
        "/proxy-status",
        headers={"X-Forwarded-For": "1.1.1.1", "X-Forwarded-Host": "proxy.example.com"},
    )

    body = response.json()
    assert body["proxy"] == "ProxyRender Liberia v1.0"
    assert body["status"] == "active"
    assert body["client_ip"] == "1.1.1.1"
    assert body["access_domain"] == "proxy.example.com"


def test_request_past_limit_is_rejected(make_client, upstream):
    client = make_client(max_requests=3)

    statuses = [client.get("/api/items").status_code for _ in range(4)]

    assert statuses == [200, 200, 200, 429]
    assert len(upstream.requests) == 3

    rejected = client.get("/api/items")
    assert rejected.status_code == 429
    assert rejected.json()["error"] == "rate_limit_exceeded"
    assert rejected.json()["message"] == "Too many requests from this IP, please try again later."
    assert int(rejected.headers["retry-after"]) > 0
    assert rejected.headers["ratelimit-remaining"] == "0"


def test_control_endpoints_are_never_limited(make_client):
    client = make_client(max_requests=1)
    assert client.get("/api").status_code == 200
    assert client.get("/api").status_code == 429

    for _ in range(5):
        assert client.get("/health").status_code == 200
        assert client.get("/keep-alive").status_code == 200
        assert client.get("/proxy-status").status_code == 200


def test_limits_are_per_client_ip(make_client):
    client = make_client(max_requests=1)
    assert client.get("/api", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 200
    assert client.get("/api", headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 200
    assert client.get("/api", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429


def test_rate_limit_headers_on_proxied_response(make_client):
    response = make_client(max_requests=10).get("/api")
    assert response.headers["ratelimit-limit"] == "10"
    assert response.headers["ratelimit-remaining"] == "9"


def test_response_hides_backend_identity(make_client):
    response = make_client().get("/api/items")

    assert response.status_code == 200
    assert "server" not in response.headers
    assert "x-aspnet-version" not in response.headers
    assert "x-aspnetmvc-version" not in response.headers
    assert response.headers["x-powered-by"] == "ProxyRender-Liberia"
    assert response.headers["x-backend"] == "yes"


def test_request_forwarding_headers(make_client, upstream):
    make_client().get(
        "/api/items?page=2",
        headers={"X-Forwarded-For": "1.1.1.1", "X-Real-IP": "2.2.2.2"},
    )

    forwarded = upstream.requests[0]
    assert str(forwarded.url) == "http://upstream.internal:8000/api/items?page=2"
    assert forwarded.headers["host"] == "upstream.internal:8000"
    assert forwarded.headers["x-forwarded-for"] == "1.1.1.1"
    assert forwarded.headers["x-real-ip"] == "1.1.1.1"
    assert forwarded.headers["user_ip"] == "1.1.1.1"
    assert forwarded.headers["domain_ip"] == "testserver"
    assert forwarded.headers["x-proxy-by"] == "ProxyRender-Liberia"


def test_request_body_is_forwarded(make_client, upstream):
    response = make_client().post("/api/items", content=b'{"name": "widget"}',
                                  headers={"content-type": "application/json"})

    assert response.status_code == 200
    forwarded = upstream.requests[0]
    assert forwarded.method == "POST"
    assert forwarded.content == b'{"name": "widget"}'
    assert forwarded.headers["content-type"] == "application/json"


def test_chunked_request_body_is_streamed_upstream(make_client, upstream):
    response = make_client().post("/upload", content=iter([b"part-1,", b"part-2"]))

    assert response.status_code == 200
    assert upstream.requests[0].content == b"part-1,part-2"


def test_upstream_status_and_body_pass_through(make_client, make_upstream):
    fake = make_upstream(lambda request: httpx.Response(418, content=b"teapot"))
    response = make_client(fake=fake).get("/brew")
    assert response.status_code == 418
    assert response.content == b"teapot"


def test_streamed_upstream_body_pass_through(make_client, make_upstream):
    fake = make_upstream(lambda request: httpx.Response(200, stream=ChunkedBody()))

    response = make_client(fake=fake).get("/feed")

    assert response.status_code == 200
    assert response.content == b"first,second"


def test_large_bodies_are_compressed(make_client, make_upstream):
    payload = b"liberia " * 500
    fake = make_upstream(
        lambda request: httpx.Response(200, content=payload, headers={"content-type": "text/plain"})
    )

    response = make_client(fake=fake).get("/report", headers={"Accept-Encoding": "gzip"})

    assert response.headers["content-encoding"] == "gzip"
    assert response.content == payload


def test_security_headers_on_every_response(make_client, make_upstream):
    def framed(request):
        return httpx.Response(200, content=b"ok", headers={"x-frame-options": "DENY"})

    client = make_client(fake=make_upstream(framed), max_requests=1)

    proxied = client.get("/api")
    assert proxied.headers["x-content-type-options"] == "nosniff"
    assert proxied.headers["referrer-policy"] == "no-referrer"
    assert proxied.headers["x-frame-options"] == "DENY"
    assert "content-security-policy" not in proxied.headers

    rejected = client.get("/api")
    assert rejected.status_code == 429
    assert rejected.headers["x-frame-options"] == "SAMEORIGIN"
    assert client.get("/health").headers["strict-transport-security"].startswith("max-age=")


async def test_client_disconnect_cancels_upstream_call(make_settings, make_upstream):
    upstream_called = asyncio.Event()

    async def slow(request):
        upstream_called.set()
        await asyncio.sleep(3)
        return httpx.Response(200, content=b"too late")

    app = create_gateway_app(settings=make_settings(), http_client=make_upstream(slow).client())
    request_sent = False
    sent = []

    async def receive():
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        if upstream_called.is_set():
            return {"type": "http.disconnect"}
        await asyncio.Event().wait()

    async def send(message):
        sent.append(message)

    started = time.monotonic()
    await app(http_scope("/slow"), receive, send)

    assert time.monotonic() - started < 2
    assert sent[0]["status"] == 499
    assert app.state.gateway.get_stats()["forwarder"]["cancelled_forwards"] == 1


def test_options_answered_without_upstream(make_client, upstream):
    response = make_client().options(
        "/any/path",
        headers={"Origin": "https://app.example.com", "Access-Control-Request-Method": "PUT"},
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://app.example.com"
    assert "PUT" in response.headers["access-control-allow-methods"]
    assert response.headers["access-control-max-age"] == "86400"
    assert upstream.requests == []


def test_preflights_are_not_limited(make_client, upstream):
    client = make_client(max_requests=1)
    assert client.get("/api").status_code == 200

    for _ in range(3):
        assert client.options("/api").status_code == 200


def test_forwarded_options_count_against_limit(make_client, upstream):
    client = make_client(max_requests=1, permissive_cors=False)

    statuses = [client.options("/api").status_code for _ in range(3)]

    assert statuses == [200, 429, 429]
    assert len(upstream.requests) == 1
    assert upstream.requests[0].method == "OPTIONS"


def test_connection_refused_is_sanitized_in_production(make_client, make_upstream):
    client = make_client(fake=make_upstream(refused), env="production")

    response = client.get("/api/items")

    assert response.status_code == 503
    body = response.json()
    assert body["message"] == "target server unreachable"
    assert body["path"] == "/api/items"
    assert "details" not in body
    assert "upstream.internal" not in response.text


def test_development_errors_include_detail(make_client, make_upstream):
    response = make_client(fake=make_upstream(refused)).get("/api/items")

    body = response.json()
    assert response.status_code == 503
    assert "Connection refused" in body["details"]
    assert body["target"] == "http://upstream.internal:8000"


def test_unknown_upstream_host_is_502(make_client, make_upstream):
    def unknown(request):
        raise httpx.ConnectError("[Errno -2] Name or service not known", request=request)

    response = make_client(fake=make_upstream(unknown), env="production").get("/api")

    assert response.status_code == 502
    assert response.json()["message"] == "target server not found"


def test_upstream_timeout_is_504(make_client, make_upstream):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    response = make_client(fake=make_upstream(slow)).get("/slow")
    assert response.status_code == 504
    assert response.json()["message"] == "request timed out"


def test_unexpected_fault_is_generic_500(make_client, make_upstream):
    def broken(request):
        raise RuntimeError("secret internals")

    client = make_client(fake=make_upstream(broken), raise_server_exceptions=False)
    response = client.get("/api")

    assert response.status_code == 500
    assert response.json()["error"] == "internal_error"
    assert "secret internals" not in response.text


def test_websocket_over_limit_is_closed(make_client):
    client = make_client(max_requests=1)
    assert client.get("/api").status_code == 200

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/socket"):
            pass
    assert exc_info.value.code == 1008


def test_websocket_messages_round_trip(make_client, echo_upstream):
    target_url, handshakes = echo_upstream
    client = make_client(target_url=target_url)

    with client.websocket_connect("/chat?room=1", headers={"X-Forwarded-For": "1.1.1.1"}) as ws:
        ws.send_text("hello")
        assert ws.receive_text() == "hello"
        ws.send_bytes(b"\x00\x01")
        assert ws.receive_bytes() == b"\x00\x01"

    handshake = handshakes[0]
    assert handshake.path == "/chat?room=1"
    assert handshake.headers["x-forwarded-for"] == "1.1.1.1"
    assert handshake.headers["user_ip"] == "1.1.1.1"
    assert handshake.headers["x-proxy-by"] == "ProxyRender-Liberia"


def test_invalid_target_is_rejected(make_settings):
    with pytest.raises(ValueError):
        create_gateway_app(settings=make_settings(target_url="ftp://upstream.internal"))


def test_invalid_keep_alive_schedule_is_rejected(make_settings):
    settings = make_settings(keep_alive_enabled=True, keep_alive_interval="every ten minutes")

    with pytest.raises(ValueError):
        create_gateway_app(settings=settings)


def test_scheduler_skipped_in_production_without_url(make_settings):
    gateway = ProxyGateway(make_settings(env="production", keep_alive_enabled=True))
    assert gateway.scheduler is None


def test_scheduler_defaults_to_local_port_in_development(make_settings):
    gateway = ProxyGateway(make_settings(keep_alive_enabled=True))
    assert gateway.scheduler is not None
    assert gateway.scheduler.config.ping_url == "http://localhost:10000/keep-alive"


def test_gateway_stats(make_client):
    client = make_client()
    client.get("/api")
    stats = client.app.state.gateway.get_stats()
    assert stats["forwarder"]["successful_forwards"] == 1
    assert json.dumps(stats)
