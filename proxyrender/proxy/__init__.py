"""
ProxyRender Reverse Proxy Module

Resolves client identity, rewrites headers and forwards traffic to the
upstream target. The application factory lives in proxyrender.proxy.gateway.
"""

from proxyrender.proxy.config import ProxyTargetConfig
from proxyrender.proxy.errors import ErrorClassifier, GatewayError
from proxyrender.proxy.forwarder import UpstreamForwarder
from proxyrender.proxy.identity import ClientIdentity, resolve_client_identity

__all__ = [
    "ClientIdentity",
    "ErrorClassifier",
    "GatewayError",
    "ProxyTargetConfig",
    "UpstreamForwarder",
    "resolve_client_identity",
]
