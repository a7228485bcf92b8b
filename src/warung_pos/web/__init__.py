"""HTTP and WebSocket surface for the warung POS."""

from .app import create_app

__all__ = ["create_app"]
