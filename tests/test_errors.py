"""Tests for upstream failure classification."""

import errno
import json
import socket

import httpx
import pytest

from proxyrender.proxy.errors import (
    ErrorCause,
    ErrorClassifier,
    RateLimitExceeded,
    UpstreamNotFound,
    UpstreamOther,
    UpstreamTimeout,
    UpstreamUnreachable,
    classify_exception,
    error_envelope,
)

TARGET = "http://upstream.internal:8000"


def chained(outer: Exception, cause: BaseException) -> Exception:
    outer.__cause__ = cause
    return outer


@pytest.mark.parametrize(
    "exc, cause",
    [
        (httpx.ConnectTimeout("timed out"), ErrorCause.TIMED_OUT),
        (httpx.ReadTimeout("timed out"), ErrorCause.TIMED_OUT),
        (chained(httpx.ConnectError("failed"), ConnectionRefusedError(errno.ECONNREFUSED, "refused")),
         ErrorCause.CONNECTION_REFUSED),
        (chained(httpx.ConnectError("failed"), OSError(errno.ECONNREFUSED, "refused")),
         ErrorCause.CONNECTION_REFUSED),
        (httpx.ConnectError("All connection attempts failed"), ErrorCause.CONNECTION_REFUSED),
        (chained(httpx.ConnectError("failed"), socket.gaierror(-2, "Name or service not known")),
         ErrorCause.HOST_NOT_FOUND),
        (httpx.ConnectError("[Errno -2] Name or service not known"), ErrorCause.HOST_NOT_FOUND),
        (httpx.RemoteProtocolError("peer closed connection"), ErrorCause.OTHER),
    ],
)
def test_classify_exception(exc, cause):
    assert classify_exception(exc) is cause


@pytest.mark.parametrize(
    "cause, error_cls, status",
    [
        (ErrorCause.CONNECTION_REFUSED, UpstreamUnreachable, 503),
        (ErrorCause.TIMED_OUT, UpstreamTimeout, 504),
        (ErrorCause.HOST_NOT_FOUND, UpstreamNotFound, 502),
        (ErrorCause.OTHER, UpstreamOther, 502),
    ],
)
def test_cause_to_status(cause, error_cls, status):
    assert ErrorClassifier.classify(cause) is error_cls
    assert error_cls.status_code == status


def test_production_body_is_sanitized():
    classifier = ErrorClassifier(target_url=TARGET, development=False)
    record = classifier.record(
        httpx.ConnectError("All connection attempts failed to upstream.internal"),
        "GET",
        "/api/users",
    )

    body = classifier.build_body(record)

    assert body["error"] == "upstream_unreachable"
    assert body["message"] == "target server unreachable"
    assert body["code"] == 503
    assert body["path"] == "/api/users"
    assert body["timestamp"]
    assert "details" not in body
    assert "target" not in body
    assert "upstream.internal" not in json.dumps(body)


def test_development_body_includes_detail():
    classifier = ErrorClassifier(target_url=TARGET, development=True)
    record = classifier.record(httpx.ReadTimeout("read timed out"), "POST", "/slow")

    response = classifier.build_response(record)
    body = json.loads(response.body)

    assert response.status_code == 504
    assert body["message"] == "request timed out"
    assert body["details"] == "read timed out"
    assert body["target"] == TARGET


def test_error_envelope():
    body = error_envelope(RateLimitExceeded(), path="/api")
    assert body["error"] == "rate_limit_exceeded"
    assert body["code"] == 429
    assert body["path"] == "/api"
    assert "timestamp" in body
