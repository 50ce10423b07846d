"""WebSocket adapter for session connections.

Each socket is wrapped as a Connection and handed to the session's agent,
which owns all message handling and event fan-out. There is no HTTP route for
creating sessions: the host calls SessionManager.create_session and
SessionManager.start_generation, and clients attach here afterwards.
"""

import uuid
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from errors import SessionNotFoundError

if TYPE_CHECKING:
    from session_manager import SessionManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

# Close code sent when the requested session does not exist.
SESSION_NOT_FOUND_CLOSE_CODE = 4404

_session_manager: "SessionManager | None" = None


def set_session_manager(manager: "SessionManager") -> None:
    """Set the session manager used by the WebSocket endpoint."""
    global _session_manager
    _session_manager = manager
    logger.info("websocket_session_manager_configured")


def get_session_manager() -> "SessionManager":
    """Return the configured session manager."""
    if _session_manager is None:
        raise RuntimeError(
            "SessionManager not configured for WebSocket handlers. "
            "Call set_session_manager() during startup."
        )
    return _session_manager


class WebSocketConnection:
    """Connection adapter over a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.id = f"conn_{uuid.uuid4().hex[:8]}"
        self._websocket = websocket

    async def send_json(self, data: dict[str, Any]) -> None:
        await self._websocket.send_json(data)


@websocket_router.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str, replay: bool = False) -> None:
    """Attach a client to a session.

    Args:
        websocket: The WebSocket connection.
        session_id: The session to attach to.
        replay: If true, the session's event history is replayed first.
    """
    await websocket.accept()

    try:
        agent = get_session_manager().get_agent(session_id)
    except SessionNotFoundError as e:
        logger.warning("websocket_session_not_found", session_id=session_id)
        await websocket.send_json({"type": "error", "session_id": session_id, "data": e.to_dict()})
        await websocket.close(code=SESSION_NOT_FOUND_CLOSE_CODE)
        return

    connection = WebSocketConnection(websocket)
    logger.info("websocket_connected", session_id=session_id, connection_id=connection.id)

    await agent.on_connect(connection, replay=replay)
    try:
        while True:
            message = await websocket.receive_text()
            await agent.on_message(connection, message)
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id, connection_id=connection.id)
    except Exception as e:
        logger.error("websocket_error", session_id=session_id, error=str(e))
    finally:
        await agent.on_close(connection)
        logger.info("websocket_cleanup_complete", session_id=session_id, connection_id=connection.id)
