"""
Upstream Forwarder

Forwards requests to the configured upstream target: rewrites headers in
both directions, streams response bodies back unmodified, proxies WebSocket
upgrades and turns transport failures into classified error responses.
The default retry policy never retries a failed request.
"""

import asyncio
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog
from fastapi import Request, Response, WebSocket
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from proxyrender.proxy.config import ProxyTargetConfig
from proxyrender.proxy.errors import ErrorClassifier
from proxyrender.proxy.headers import (
    REQUEST_REWRITE_RULES,
    RESPONSE_REWRITE_RULES,
    WEBSOCKET_REWRITE_RULES,
    RewriteContext,
    apply_rules,
    preflight_headers,
)
from proxyrender.infrastructure.retry import NO_RETRY, RetryPolicy
from proxyrender.proxy.identity import ClientIdentity

logger = structlog.get_logger(__name__)

DISCONNECT_POLL_INTERVAL = 0.25
CLIENT_CLOSED_REQUEST = 499


def _sendable_close_code(code: Optional[int]) -> int:
    # 1005/1006 are reserved and may not be sent on the wire
    if not code or code in (1005, 1006):
        return 1000
    return code


class ClientDisconnected(Exception):
    """The client went away before the upstream answered."""


class UpstreamForwarder:
    """
    Forwards requests to the single upstream target.

    Features:
    - Ordered request/response header rewriting
    - Streaming response bodies
    - Client-disconnect cancellation of in-flight upstream calls
    - WebSocket proxying
    - Synthetic CORS preflight responses
    """

    def __init__(
        self,
        config: ProxyTargetConfig,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = NO_RETRY,
    ):
        self.config = config
        self.retry_policy = retry_policy
        self.classifier = ErrorClassifier(
            target_url=config.target_url,
            development=config.development,
        )

        self._client = client
        self._owns_client = client is None

        # Statistics
        self._total_forwarded = 0
        self._successful_forwards = 0
        self._failed_forwards = 0
        self._cancelled_forwards = 0
        self._websocket_sessions = 0

        logger.info(
            "upstream_forwarder_initialized",
            target=config.target_url,
            timeout_seconds=config.timeout_seconds,
            websocket=config.enable_websocket,
        )

    async def initialize(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds),
            limits=httpx.Limits(
                max_connections=100,
                max_keepalive_connections=20,
            ),
            follow_redirects=self.config.follow_redirects,
        )
        self._owns_client = True
        logger.info("http_client_initialized")

    async def shutdown(self) -> None:
        """Shutdown the HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None
        logger.info("http_client_shutdown")

    def build_url(self, path: str, query: str = "") -> str:
        url = f"{self.config.target_url}{path}"
        if query:
            url = f"{url}?{query}"
        return url

    @staticmethod
    def _request_path(connection) -> str:
        raw_path = connection.scope.get("raw_path")
        if raw_path:
            return raw_path.decode("latin-1")
        return connection.url.path

    def _context(self, connection, identity: ClientIdentity) -> RewriteContext:
        scheme = connection.url.scheme
        if scheme in ("ws", "wss"):
            scheme = "https" if scheme == "wss" else "http"
        return RewriteContext(
            identity=identity,
            scheme=scheme,
            original=httpx.Headers(connection.headers.raw),
            origin=connection.headers.get("origin"),
            permissive_cors=self.config.permissive_cors,
        )

    def build_request_headers(self, connection, identity: ClientIdentity) -> httpx.Headers:
        ctx = self._context(connection, identity)
        return apply_rules(ctx.original, ctx, REQUEST_REWRITE_RULES)

    def rewrite_response_headers(
        self,
        upstream_headers: httpx.Headers,
        connection,
        identity: ClientIdentity,
    ) -> httpx.Headers:
        ctx = self._context(connection, identity)
        return apply_rules(upstream_headers, ctx, RESPONSE_REWRITE_RULES)

    def preflight(self, request: Request) -> Response:
        """Answer a CORS preflight without contacting the upstream."""
        response = Response(status_code=200)
        for name, value in preflight_headers(request.headers.get("origin")).multi_items():
            response.headers.append(name, value)
        return response

    async def forward(self, request: Request, identity: ClientIdentity) -> Response:
        """
        Forward an HTTP request to the upstream target.

        Args:
            request: Incoming request, already admitted by the rate limiter
            identity: Resolved client identity

        Returns:
            Streaming upstream response, or a classified error response
        """
        if self._client is None:
            await self.initialize()

        self._total_forwarded += 1
        path = self._request_path(request)
        url = self.build_url(path, request.url.query)
        headers = self.build_request_headers(request, identity)

        if self.config.development:
            logger.debug(
                "proxy_request",
                method=request.method,
                path=path,
                url=url,
                client_ip=identity.client_ip,
                access_domain=identity.access_domain,
            )

        body_read = asyncio.Event()
        if self._has_body(request):
            content = self._stream_request_body(request, body_read)
        else:
            content = None
            body_read.set()

        try:
            outgoing = self._client.build_request(
                method=request.method,
                url=url,
                headers=headers,
                content=content,
            )
            upstream = await self._send_with_policy(request, outgoing, body_read)
        except (ClientDisconnected, ClientDisconnect):
            self._cancelled_forwards += 1
            logger.info(
                "client_disconnected",
                method=request.method,
                path=request.url.path,
                client_ip=identity.client_ip,
            )
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self._failed_forwards += 1
            record = self.classifier.record(e, request.method, request.url.path)
            return self.classifier.build_response(record)

        self._successful_forwards += 1

        if self.config.development:
            logger.debug(
                "proxy_response",
                method=request.method,
                path=path,
                status_code=upstream.status_code,
            )

        response = StreamingResponse(
            self._stream_body(upstream),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        rewritten = self.rewrite_response_headers(upstream.headers, request, identity)
        for name, value in rewritten.multi_items():
            response.headers.append(name, value)
        return response

    async def _send_with_policy(
        self,
        request: Request,
        outgoing: httpx.Request,
        body_read: asyncio.Event,
    ) -> httpx.Response:
        # A streamed request body cannot be sent twice
        replayable = isinstance(outgoing.stream, httpx.ByteStream)
        attempt = 1
        while True:
            try:
                return await self._send_cancellable(request, outgoing, body_read)
            except httpx.HTTPError:
                if not replayable or not self.retry_policy.should_retry(attempt):
                    raise
                await asyncio.sleep(self.retry_policy.delay_for(attempt))
                attempt += 1

    async def _send_cancellable(
        self,
        request: Request,
        outgoing: httpx.Request,
        body_read: asyncio.Event,
    ) -> httpx.Response:
        """Send upstream; abort the call if the client disconnects first."""
        send_task = asyncio.create_task(
            self._client.send(
                outgoing,
                stream=True,
                follow_redirects=self.config.follow_redirects,
            )
        )
        watch_task = asyncio.create_task(self._wait_for_disconnect(request, body_read))

        try:
            done, _ = await asyncio.wait(
                {send_task, watch_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            send_task.cancel()
            watch_task.cancel()
            raise

        if send_task in done:
            watch_task.cancel()
            return send_task.result()

        if watch_task.exception() is not None:
            # Disconnect detection is unavailable; rely on the upstream timeout
            return await send_task

        send_task.cancel()
        try:
            await send_task
        except (asyncio.CancelledError, httpx.HTTPError):
            pass
        else:
            # Response arrived while cancelling
            await send_task.result().aclose()
        raise ClientDisconnected()

    @staticmethod
    def _has_body(request: Request) -> bool:
        length = request.headers.get("content-length")
        if length is not None:
            return length.strip() != "0"
        return "transfer-encoding" in request.headers

    @staticmethod
    async def _stream_request_body(
        request: Request,
        body_read: asyncio.Event,
    ) -> AsyncIterator[bytes]:
        async for chunk in request.stream():
            if chunk:
                yield chunk
        body_read.set()

    @staticmethod
    async def _wait_for_disconnect(request: Request, body_read: asyncio.Event) -> None:
        # Polling receive() while the body is still streaming would drop chunks
        await body_read.wait()
        while not await request.is_disconnected():
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL)

    async def _stream_body(self, upstream: httpx.Response) -> AsyncIterator[bytes]:
        try:
            if upstream.is_stream_consumed:
                # Body was loaded eagerly by the transport
                yield upstream.content
                return
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.warning(
                "upstream_stream_interrupted",
                status_code=upstream.status_code,
                error=str(e),
            )
        finally:
            await upstream.aclose()

    async def forward_websocket(self, websocket: WebSocket, identity: ClientIdentity) -> None:
        """Proxy a WebSocket session end-to-end."""
        ctx = self._context(websocket, identity)
        headers = apply_rules(ctx.original, ctx, WEBSOCKET_REWRITE_RULES)
        user_agent = headers.get("user-agent")
        extra_headers = [
            (name, value) for name, value in headers.multi_items()
            if name.lower() != "user-agent"
        ]
        path = self._request_path(websocket)
        query = websocket.url.query
        url = f"{self.config.websocket_url}{path}" + (f"?{query}" if query else "")
        subprotocols = websocket.scope.get("subprotocols") or None

        try:
            upstream = await connect(
                url,
                additional_headers=extra_headers,
                user_agent_header=user_agent,
                subprotocols=subprotocols,
                open_timeout=self.config.timeout_seconds,
            )
        except (OSError, TimeoutError, InvalidURI, InvalidHandshake) as e:
            record = self.classifier.record(e, "WEBSOCKET", websocket.url.path)
            logger.error(
                "websocket_upstream_failed",
                cause=record.cause.value,
                path=record.path,
                error=record.detail,
            )
            await websocket.close(code=1011)
            return

        self._websocket_sessions += 1
        await websocket.accept(subprotocol=upstream.subprotocol)
        logger.info("websocket_proxy_opened", path=websocket.url.path, client_ip=identity.client_ip)

        pumps = [
            asyncio.create_task(self._client_to_upstream(websocket, upstream)),
            asyncio.create_task(self._upstream_to_client(websocket, upstream)),
        ]
        try:
            await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await upstream.close()
            logger.info("websocket_proxy_closed", path=websocket.url.path)

    @staticmethod
    async def _client_to_upstream(websocket: WebSocket, upstream: ClientConnection) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                await upstream.close(code=_sendable_close_code(message.get("code")))
                return
            try:
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
            except ConnectionClosed:
                return

    @staticmethod
    async def _upstream_to_client(websocket: WebSocket, upstream: ClientConnection) -> None:
        try:
            async for data in upstream:
                if isinstance(data, str):
                    await websocket.send_text(data)
                else:
                    await websocket.send_bytes(data)
        except ConnectionClosed:
            pass
        await websocket.close(code=_sendable_close_code(upstream.close_code))

    def get_stats(self) -> Dict[str, Any]:
        """Get forwarder statistics."""
        return {
            "target": self.config.target_url,
            "total_forwarded": self._total_forwarded,
            "successful_forwards": self._successful_forwards,
            "failed_forwards": self._failed_forwards,
            "cancelled_forwards": self._cancelled_forwards,
            "websocket_sessions": self._websocket_sessions,
            "success_rate": (
                self._successful_forwards / self._total_forwarded
                if self._total_forwarded > 0
                else 0.0
            ),
        }
