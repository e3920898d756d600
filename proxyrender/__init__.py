"""
ProxyRender Liberia
Reverse proxy gateway with per-client rate limiting and a keep-alive scheduler.
"""

__version__ = "1.0.0"
