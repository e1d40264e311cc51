"""API module for the song request store host."""

from .websocket_manager import WebSocketManager
from .routes import create_router

__all__ = [
    "WebSocketManager",
    "create_router",
]
