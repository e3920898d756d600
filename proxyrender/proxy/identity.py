"""
Client Identity Resolution

Derives the real client IP and the domain the client used to reach the
gateway from request headers.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

UNKNOWN = "unknown"
IPV4_MAPPED_PREFIX = "::ffff:"

# Checked in order; first non-empty value wins.
CLIENT_IP_HEADERS = (
    "x-forwarded-for",
    "cf-connecting-ip",
    "x-real-ip",
    "x-client-ip",
)


@dataclass(frozen=True)
class ClientIdentity:
    """Resolved client IP and access domain for one request."""

    client_ip: str
    access_domain: str


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    try:
        value = headers.get(name)
        if value is None:
            # Plain dicts are case-sensitive
            value = next(
                (v for k, v in headers.items() if str(k).lower() == name),
                None,
            )
    except Exception:
        return None
    if not value:
        return None
    value = str(value).strip()
    return value or None


def normalize_ip(ip: Optional[str]) -> str:
    """Strip the IPv6-mapped-IPv4 prefix; empty input becomes ``unknown``."""
    if not ip:
        return UNKNOWN
    ip = ip.strip()
    if ip.lower().startswith(IPV4_MAPPED_PREFIX):
        ip = ip[len(IPV4_MAPPED_PREFIX):]
    return ip or UNKNOWN


def resolve_client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """
    Resolve the client IP.

    Order: X-Forwarded-For (first entry), CF-Connecting-IP, X-Real-IP,
    X-Client-IP, then the transport peer address.
    """
    for name in CLIENT_IP_HEADERS:
        value = _header(headers, name)
        if value is None:
            continue
        if name == "x-forwarded-for":
            value = value.split(",")[0].strip()
            if not value:
                continue
        return normalize_ip(value)

    return normalize_ip(peer)


def resolve_access_domain(headers: Mapping[str, str]) -> str:
    """Resolve the domain used to reach the gateway."""
    return _header(headers, "x-forwarded-host") or _header(headers, "host") or UNKNOWN


def resolve_client_identity(
    headers: Mapping[str, str],
    peer: Optional[str] = None,
) -> ClientIdentity:
    """Best-effort identity for a request. Never raises."""
    return ClientIdentity(
        client_ip=resolve_client_ip(headers, peer),
        access_domain=resolve_access_domain(headers),
    )


def identity_from_connection(connection) -> ClientIdentity:
    """Resolve identity from a Starlette ``Request`` or ``WebSocket``."""
    peer = connection.client.host if connection.client else None
    return resolve_client_identity(connection.headers, peer)
