"""
Header Rewrite Rules

Ordered, pure transforms over header maps. Each rule receives a header map
and a RewriteContext and returns a new map; the input is never mutated.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Tuple

import httpx

from proxyrender.proxy.identity import ClientIdentity

GATEWAY_IDENTIFIER = "ProxyRender-Liberia"

# RFC 7230 hop-by-hop headers, never forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Client headers forwarded exactly as received
PASSTHROUGH_HEADERS = (
    "user-agent",
    "accept",
    "accept-language",
    "accept-encoding",
    "cookie",
    "authorization",
    "referer",
    "origin",
)

# Backend identity leaks removed from responses
BACKEND_IDENTITY_HEADERS = (
    "server",
    "x-aspnet-version",
    "x-aspnetmvc-version",
)

# Headers the WebSocket client library negotiates itself
WEBSOCKET_HANDSHAKE_HEADERS = frozenset({
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
})

CORS_ALLOW_METHODS = "GET, POST, PUT, DELETE, PATCH, HEAD, OPTIONS"
CORS_ALLOW_HEADERS = (
    "Origin, X-Requested-With, Content-Type, Accept, Authorization, Cookie, "
    "Cache-Control, Pragma"
)
CORS_PREFLIGHT_MAX_AGE = 86400


@dataclass(frozen=True)
class RewriteContext:
    """Per-request facts the rewrite rules may read."""

    identity: ClientIdentity
    scheme: str = "http"
    original: httpx.Headers = field(default_factory=httpx.Headers)
    origin: Optional[str] = None
    permissive_cors: bool = True


HeaderRule = Callable[[httpx.Headers, RewriteContext], httpx.Headers]


def _without(headers: httpx.Headers, names: Iterable[str]) -> httpx.Headers:
    drop = {name.lower() for name in names}
    return httpx.Headers(
        [(k, v) for k, v in headers.multi_items() if k.lower() not in drop]
    )


def _with(headers: httpx.Headers, values: Iterable[Tuple[str, str]]) -> httpx.Headers:
    result = headers.copy()
    for name, value in values:
        result[name] = value
    return result


# Request side


def strip_host(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    return _without(headers, ("host",))


def set_forwarding_headers(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    proto = ctx.original.get("x-forwarded-proto") or ctx.scheme
    return _with(headers, (
        ("X-Real-IP", ctx.identity.client_ip),
        ("X-Forwarded-For", ctx.identity.client_ip),
        ("X-Forwarded-Proto", proto.split(",")[0].strip()),
        ("X-Forwarded-Host", ctx.identity.access_domain),
    ))


def set_legacy_identity_headers(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    """``user_ip``/``domain_ip`` are read by older backends."""
    return _with(headers, (
        ("user_ip", ctx.identity.client_ip),
        ("domain_ip", ctx.identity.access_domain),
        ("X-Proxy-By", GATEWAY_IDENTIFIER),
    ))


def preserve_client_headers(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    present = [name for name in PASSTHROUGH_HEADERS if name in ctx.original]
    passthrough = [
        (k, v) for k, v in ctx.original.multi_items() if k.lower() in present
    ]
    return httpx.Headers(list(_without(headers, present).multi_items()) + passthrough)


def strip_hop_by_hop(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    return _without(headers, HOP_BY_HOP_HEADERS | {"content-length"})


def strip_response_hop_by_hop(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    return _without(headers, HOP_BY_HOP_HEADERS)


def strip_websocket_handshake(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    return _without(headers, WEBSOCKET_HANDSHAKE_HEADERS)


REQUEST_REWRITE_RULES: Tuple[HeaderRule, ...] = (
    strip_host,
    set_forwarding_headers,
    set_legacy_identity_headers,
    preserve_client_headers,
    strip_hop_by_hop,
)

WEBSOCKET_REWRITE_RULES: Tuple[HeaderRule, ...] = REQUEST_REWRITE_RULES + (
    strip_websocket_handshake,
)


# Response side


def set_powered_by(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    return _with(headers, (("x-powered-by", GATEWAY_IDENTIFIER),))


def strip_backend_identity(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    return _without(headers, BACKEND_IDENTITY_HEADERS)


def cors_headers(origin: Optional[str]) -> Tuple[Tuple[str, str], ...]:
    """Permissive CORS set: echo the origin when known, otherwise ``*``."""
    if origin:
        allow = (
            ("access-control-allow-origin", origin),
            ("access-control-allow-credentials", "true"),
            ("vary", "Origin"),
        )
    else:
        allow = (("access-control-allow-origin", "*"),)
    return allow + (
        ("access-control-allow-methods", CORS_ALLOW_METHODS),
        ("access-control-allow-headers", CORS_ALLOW_HEADERS),
    )


def apply_cors(headers: httpx.Headers, ctx: RewriteContext) -> httpx.Headers:
    if not ctx.permissive_cors:
        return headers
    return _with(headers, cors_headers(ctx.origin))


RESPONSE_REWRITE_RULES: Tuple[HeaderRule, ...] = (
    set_powered_by,
    strip_backend_identity,
    apply_cors,
    strip_response_hop_by_hop,
)


def apply_rules(
    headers: httpx.Headers,
    ctx: RewriteContext,
    rules: Iterable[HeaderRule],
) -> httpx.Headers:
    """Run ``rules`` in order over a copy of ``headers``."""
    result = headers.copy()
    for rule in rules:
        result = rule(result, ctx)
    return result


def preflight_headers(origin: Optional[str]) -> httpx.Headers:
    headers = httpx.Headers(cors_headers(origin))
    headers["access-control-max-age"] = str(CORS_PREFLIGHT_MAX_AGE)
    headers["x-powered-by"] = GATEWAY_IDENTIFIER
    return headers
