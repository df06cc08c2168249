"""HTTP and WebSocket front door."""

from .server import StateHub, create_app

__all__ = ["StateHub", "create_app"]
