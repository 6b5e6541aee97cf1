"""
HTTP and WebSocket surface for the session runtime.
"""

from .app import create_app

__all__ = ["create_app"]
