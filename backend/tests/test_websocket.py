"""Tests for main.py and api/websocket.py through the FastAPI TestClient.

Sessions are created on the TestClient's event loop via its blocking portal
so agents and their locks live on the loop that serves the sockets.
"""

from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.websocket import SESSION_NOT_FOUND_CLOSE_CODE, WebSocketConnection
from main import create_app
from models.schemas import AgentInitArgs
from session_manager import SessionManager
from tests.conftest import ScriptedModelOutput, make_settings, make_template


@pytest.fixture()
def manager() -> SessionManager:
    return SessionManager(
        make_settings(),
        lambda session_id: ScriptedModelOutput(),
        sandbox_factory=None,
    )


@pytest.fixture()
def client(manager: SessionManager) -> Iterator[TestClient]:
    with TestClient(create_app(manager)) as test_client:
        yield test_client


def _create_session(client: TestClient, manager: SessionManager, session_id: str = "sess_ws") -> str:
    return client.portal.call(  # type: ignore[union-attr]
        manager.create_session,
        AgentInitArgs(query="Build a todo app", session_id=session_id),
        make_template(),
    )


def _receive_until(websocket: Any, event_type: str, limit: int = 200) -> list[dict[str, Any]]:
    received: list[dict[str, Any]] = []
    for _ in range(limit):
        message = websocket.receive_json()
        received.append(message)
        if message["type"] == event_type:
            return received
    raise AssertionError(f"{event_type} not received")


class TestHealth:
    def test_health(self, client: TestClient, manager: SessionManager) -> None:
        assert client.get("/health").json() == {"status": "ok", "sessions": 0}

        _create_session(client, manager)

        assert client.get("/health").json()["sessions"] == 1

    def test_sessions_come_from_the_host(self, manager: SessionManager) -> None:
        app = create_app(manager)
        paths = {getattr(route, "path", None) for route in app.routes}

        assert {"/health", "/ws/{session_id}"} <= paths
        assert not any(path and path.startswith("/sessions") for path in paths)


class TestWebSocketEndpoint:
    def test_unknown_session(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/sess_missing") as websocket:
            message = websocket.receive_json()
            assert message["type"] == "error"
            assert message["session_id"] == "sess_missing"
            assert message["data"]["code"] == "session_not_found"

            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()
            assert exc_info.value.code == SESSION_NOT_FOUND_CLOSE_CODE

    def test_connected_event(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "connected"
        assert message["session_id"] == session_id
        assert message["data"]["initialized"] is True
        assert message["data"]["generating"] is False

    def test_ping_pong(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "ping"})
            message = websocket.receive_json()

        assert message["type"] == "pong"

    def test_invalid_json(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_text("not json")
            message = websocket.receive_json()

        assert message["type"] == "error"
        assert message["data"]["message"] == "Invalid JSON message"

    def test_file_tree(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "get_file_tree"})
            message = websocket.receive_json()

        assert message["type"] == "file_tree"
        assert message["data"]["tree"]["type"] == "directory"

    def test_terminal_without_sandbox(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "terminal_command", "data": {"command": "ls"}})
            message = websocket.receive_json()

        assert message["type"] == "terminal_output"
        assert message["data"]["output"] == "Sandbox is not ready"

    def test_generation_progress_streamed(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            client.portal.call(manager.start_generation, session_id)  # type: ignore[union-attr]
            messages = _receive_until(websocket, "generation_complete")

        types = [m["type"] for m in messages]
        assert types[0] == "generation_started"
        assert "blueprint_generated" in types
        assert types.count("phase_completed") == 2
        assert messages[-1]["data"]["summary"]["status"] == "completed"

    def test_replay_query_parameter(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)
        task = client.portal.call(manager.start_generation, session_id)  # type: ignore[union-attr]
        client.portal.call(_await, task)  # type: ignore[union-attr]

        with client.websocket_connect(f"/ws/{session_id}?replay=true") as websocket:
            messages = _receive_until(websocket, "connected")

        types = [m["type"] for m in messages]
        assert types[0] == "generation_started"
        assert "generation_complete" in types

    def test_disconnect_detaches(self, client: TestClient, manager: SessionManager) -> None:
        session_id = _create_session(client, manager)
        agent = manager.get_agent(session_id)

        with client.websocket_connect(f"/ws/{session_id}") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "ping"})
            websocket.receive_json()
            assert agent.broadcaster.connection_count == 1

        client.portal.call(_noop)  # type: ignore[union-attr]
        assert agent.broadcaster.connection_count == 0


class TestLifespan:
    def test_shutdown_closes_sessions(self, manager: SessionManager) -> None:
        with TestClient(create_app(manager)) as client:
            _create_session(client, manager, "sess_a")
            _create_session(client, manager, "sess_b")
            assert len(manager.get_all_sessions()) == 2

        assert manager.get_all_sessions() == []


class TestWebSocketConnection:
    async def test_send_json_forwards(self) -> None:
        sent: list[dict[str, Any]] = []

        class FakeSocket:
            async def send_json(self, data: dict[str, Any]) -> None:
                sent.append(data)

        connection = WebSocketConnection(FakeSocket())  # type: ignore[arg-type]
        await connection.send_json({"type": "pong"})

        assert connection.id.startswith("conn_")
        assert sent == [{"type": "pong"}]


async def _await(task: Any) -> Any:
    return await task


async def _noop() -> None:
    return None
