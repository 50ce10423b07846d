"""API module for the WebSocket connection adapter."""

from api.websocket import WebSocketConnection, websocket_router

__all__ = ["WebSocketConnection", "websocket_router"]
