"""
Proxy Package
=============

This package implements the signed image proxy endpoint that fetches an
upstream URL on behalf of a client once its HMAC signature checks out.

Main Components:
----------------
- routes.py: FastAPI router with the catch-all /<hex digest>/<hex url> route

Security Features:
------------------
- HMAC signature enforcement before any upstream request
- Request header allowlist
- image/* Content-Type gate on upstream responses

Usage:
------
    from disguise.proxy import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
