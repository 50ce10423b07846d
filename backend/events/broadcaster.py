"""Per-session connection broadcaster.

This module provides the ConnectionBroadcaster class that manages the live
client connections of one session and fans typed progress events out to
them.

Delivery is best-effort and at-most-once per connection:
- Each connection is sent to independently; a failing or stalled connection
  is logged and skipped, never propagated to the caller.
- Events are retained in a bounded history so a reconnecting client can be
  replayed the session so far.
"""

import asyncio
from typing import Any, Protocol

import structlog

from events.types import AgentEvent, EventType

logger = structlog.get_logger(__name__)


class Connection(Protocol):
    """A live client connection.

    Anything with an ``id`` and an async ``send_json`` qualifies; the
    WebSocket adapter in ``api.websocket`` wraps FastAPI sockets this way.
    """

    id: str

    async def send_json(self, data: dict[str, Any]) -> None: ...


class ConnectionBroadcaster:
    """Fan-out of session events to attached connections.

    Usage:
        >>> broadcaster = ConnectionBroadcaster("sess_123")
        >>> await broadcaster.attach(connection)
        >>> await broadcaster.broadcast(EventType.PHASE_STARTED, {"phase_index": 0})
        >>> broadcaster.detach(connection)

    Attributes:
        session_id: The session whose events are broadcast.
        send_timeout: Seconds allowed for a single connection send.
        history_limit: Maximum number of events kept for replay.
    """

    def __init__(
        self,
        session_id: str,
        *,
        send_timeout: float = 5.0,
        history_limit: int = 5000,
    ) -> None:
        self.session_id = session_id
        self.send_timeout = send_timeout
        self.history_limit = history_limit
        self._connections: dict[str, Connection] = {}
        self._history: list[AgentEvent] = []
        self._closed = False

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_connections(self) -> list[Connection]:
        return list(self._connections.values())

    async def attach(self, connection: Connection, *, replay: bool = False) -> None:
        """Attach a connection to the session.

        Args:
            connection: The connection to register.
            replay: If True, send the retained event history to this
                connection before any new events.
        """
        self._connections[connection.id] = connection
        logger.info(
            "connection_attached",
            session_id=self.session_id,
            connection_id=connection.id,
            connection_count=len(self._connections),
        )

        if replay:
            for event in list(self._history):
                if not await self._deliver(connection, event):
                    break

    def detach(self, connection: Connection) -> None:
        """Detach a connection. Unknown connections are ignored."""
        removed = self._connections.pop(connection.id, None)
        if removed is None:
            logger.debug(
                "detach_connection_not_found",
                session_id=self.session_id,
                connection_id=connection.id,
            )
            return
        logger.info(
            "connection_detached",
            session_id=self.session_id,
            connection_id=connection.id,
            connection_count=len(self._connections),
        )

    async def broadcast(self, event_type: EventType | str, payload: dict[str, Any] | None = None) -> AgentEvent:
        """Send an event to every attached connection.

        Per-connection failures are caught and logged; delivery to the other
        connections continues.

        Args:
            event_type: The event type.
            payload: Event-specific data.

        Returns:
            The AgentEvent that was broadcast.
        """
        event = self._make_event(event_type, payload)
        self._remember(event)

        # Snapshot: connections may attach/detach while we await sends.
        connections = list(self._connections.values())
        delivered = 0
        for connection in connections:
            if await self._deliver(connection, event):
                delivered += 1

        logger.debug(
            "event_broadcast",
            session_id=self.session_id,
            event_type=event.type.value,
            connection_count=len(connections),
            delivered=delivered,
        )
        return event

    async def send_to(
        self,
        connection: Connection,
        event_type: EventType | str,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Send an event to a single connection.

        Returns:
            True if the send succeeded, False if it failed (the failure is logged).
        """
        event = self._make_event(event_type, payload)
        return await self._deliver(connection, event)

    def get_event_history(self) -> list[AgentEvent]:
        return list(self._history)

    def clear_event_history(self) -> None:
        self._history.clear()

    async def close(self) -> None:
        """Send a SESSION_CLOSED sentinel to every connection and drop them all."""
        if self._closed:
            return
        self._closed = True
        sentinel = self._make_event(EventType.SESSION_CLOSED, {"reason": "session_closed"})
        connections = list(self._connections.values())
        for connection in connections:
            await self._deliver(connection, sentinel)
        self._connections.clear()
        logger.info(
            "broadcaster_closed",
            session_id=self.session_id,
            connections_removed=len(connections),
        )

    def _make_event(self, event_type: EventType | str, payload: dict[str, Any] | None) -> AgentEvent:
        return AgentEvent(
            type=EventType(event_type),
            session_id=self.session_id,
            data=dict(payload or {}),
        )

    def _remember(self, event: AgentEvent) -> None:
        self._history.append(event)
        if len(self._history) > self.history_limit:
            self._history = self._history[-self.history_limit:]

    async def _deliver(self, connection: Connection, event: AgentEvent) -> bool:
        try:
            await asyncio.wait_for(
                connection.send_json(event.to_message()),
                timeout=self.send_timeout,
            )
            return True
        except TimeoutError:
            logger.warning(
                "event_delivery_timeout",
                session_id=self.session_id,
                connection_id=connection.id,
                event_type=event.type.value,
            )
        except Exception as e:
            logger.warning(
                "event_delivery_failed",
                session_id=self.session_id,
                connection_id=connection.id,
                event_type=event.type.value,
                error=str(e),
            )
        return False
