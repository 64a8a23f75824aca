"""
API module: REST routes and the realtime WebSocket relay.
"""

from .websocket import websocket_endpoint, ConnectionManager
from .routes import sessions, messages, health

__all__ = [
    "websocket_endpoint",
    "ConnectionManager",
    "sessions",
    "messages",
    "health",
]
