"""
ProxyRender API Layer
Control endpoints and request middleware.
"""
