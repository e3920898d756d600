"""
Gateway Errors

Error taxonomy for the gateway and classification of upstream transport
failures into stable client-facing responses.
"""

import errno
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional

import httpx
import structlog
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorCause(str, Enum):
    """Transport-level cause of an upstream failure."""

    CONNECTION_REFUSED = "connection_refused"
    TIMED_OUT = "timed_out"
    HOST_NOT_FOUND = "host_not_found"
    OTHER = "other"


class GatewayError(Exception):
    """Base class for errors translated into a JSON error envelope."""

    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "internal server error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.public_message)
        self.detail = detail


class RateLimitExceeded(GatewayError):
    status_code = 429
    code = "rate_limit_exceeded"
    public_message = "Too many requests from this IP, please try again later."


class UpstreamError(GatewayError):
    status_code = 502
    code = "upstream_error"
    public_message = "proxy error"
    cause: ErrorCause = ErrorCause.OTHER


class UpstreamUnreachable(UpstreamError):
    status_code = 503
    code = "upstream_unreachable"
    public_message = "target server unreachable"
    cause = ErrorCause.CONNECTION_REFUSED


class UpstreamTimeout(UpstreamError):
    status_code = 504
    code = "upstream_timeout"
    public_message = "request timed out"
    cause = ErrorCause.TIMED_OUT


class UpstreamNotFound(UpstreamError):
    status_code = 502
    code = "upstream_not_found"
    public_message = "target server not found"
    cause = ErrorCause.HOST_NOT_FOUND


class UpstreamOther(UpstreamError):
    status_code = 502
    code = "proxy_error"
    public_message = "proxy error"
    cause = ErrorCause.OTHER


class InternalError(GatewayError):
    status_code = 500
    code = "internal_error"
    public_message = "internal server error"


@dataclass(frozen=True)
class ErrorRecord:
    """One failed forwarding attempt. Never stored."""

    cause: ErrorCause
    method: str
    path: str
    detail: str = ""
    timestamp: str = field(default_factory=utc_timestamp)


_CAUSE_TO_ERROR = {
    ErrorCause.CONNECTION_REFUSED: UpstreamUnreachable,
    ErrorCause.TIMED_OUT: UpstreamTimeout,
    ErrorCause.HOST_NOT_FOUND: UpstreamNotFound,
    ErrorCause.OTHER: UpstreamOther,
}

_REFUSED_MARKERS = (
    "connection refused",
    "actively refused",
    "econnrefused",
    "all connection attempts failed",
)
_NOT_FOUND_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "no address associated",
    "temporary failure in name resolution",
    "enotfound",
    "name resolution",
)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        stack.extend(getattr(current, "exceptions", ()) or ())
        stack.append(current.__cause__)
        stack.append(current.__context__)


def classify_exception(exc: BaseException) -> ErrorCause:
    """Map a transport exception (and its cause chain) to an ErrorCause."""
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return ErrorCause.TIMED_OUT

    chain = list(_exception_chain(exc))

    for item in chain:
        if isinstance(item, socket.gaierror):
            return ErrorCause.HOST_NOT_FOUND
    for item in chain:
        if isinstance(item, ConnectionRefusedError):
            return ErrorCause.CONNECTION_REFUSED
        if isinstance(item, OSError) and item.errno == errno.ECONNREFUSED:
            return ErrorCause.CONNECTION_REFUSED
        if isinstance(item, (httpx.TimeoutException, TimeoutError)):
            return ErrorCause.TIMED_OUT

    text = " ".join(str(item).lower() for item in chain)
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return ErrorCause.HOST_NOT_FOUND
    if any(marker in text for marker in _REFUSED_MARKERS):
        return ErrorCause.CONNECTION_REFUSED

    return ErrorCause.OTHER


class ErrorClassifier:
    """
    Turns upstream failures into sanitized client responses.

    Upstream URLs and raw error detail are only exposed when
    ``development`` is set.
    """

    def __init__(self, target_url: str, development: bool = False):
        self.target_url = target_url
        self.development = development

    @staticmethod
    def classify(cause: ErrorCause) -> type:
        """Return the UpstreamError subclass for a cause."""
        return _CAUSE_TO_ERROR.get(cause, UpstreamOther)

    def record(self, exc: BaseException, method: str, path: str) -> ErrorRecord:
        return ErrorRecord(
            cause=classify_exception(exc),
            method=method,
            path=path,
            detail=str(exc) or exc.__class__.__name__,
        )

    def build_body(self, record: ErrorRecord) -> Dict[str, Any]:
        error_cls = self.classify(record.cause)
        body: Dict[str, Any] = {
            "error": error_cls.code,
            "message": error_cls.public_message,
            "code": error_cls.status_code,
            "path": record.path,
            "timestamp": record.timestamp,
        }
        if self.development:
            body["details"] = record.detail
            body["target"] = self.target_url
        return body

    def build_response(self, record: ErrorRecord) -> JSONResponse:
        """Log the failure once and build the client response."""
        error_cls = self.classify(record.cause)
        logger.error(
            "proxy_error",
            cause=record.cause.value,
            method=record.method,
            path=record.path,
            status_code=error_cls.status_code,
            error=record.detail,
        )
        return JSONResponse(
            status_code=error_cls.status_code,
            content=self.build_body(record),
        )


def error_envelope(error: GatewayError, path: Optional[str] = None) -> Dict[str, Any]:
    """JSON envelope for a raised GatewayError. Never carries internal detail."""
    body: Dict[str, Any] = {
        "error": error.code,
        "message": error.public_message,
        "code": error.status_code,
        "timestamp": utc_timestamp(),
    }
    if path is not None:
        body["path"] = path
    return body
