"""
Pages Package
=============

Routes of the application itself: the public home route, the pages
protected by the auth gate, and the health check.

Usage:
------
    from kinde_app.pages import pages_router
    app.include_router(pages_router)
"""

from .routes import pages_router

__all__ = ["pages_router"]
