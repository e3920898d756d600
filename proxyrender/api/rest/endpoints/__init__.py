"""Gateway control endpoints."""

from proxyrender.api.rest.endpoints.control import CONTROL_PATHS, router

__all__ = ["CONTROL_PATHS", "router"]
