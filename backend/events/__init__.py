"""Event system for streaming generation progress to clients.

This package provides the event infrastructure between a session's agent and
the client connections attached to it.

Key Components:
    - EventType: Enum of all event types in the system
    - AgentEvent: Pydantic model for events flowing to clients
    - Connection: Protocol for a live client connection
    - ConnectionBroadcaster: Per-session fan-out with failure isolation

Usage:
    >>> from events import ConnectionBroadcaster, EventType
    >>>
    >>> broadcaster = ConnectionBroadcaster("sess_123")
    >>> await broadcaster.attach(connection)
    >>> await broadcaster.broadcast(
    ...     EventType.FILE_GENERATED,
    ...     {"path": "src/App.tsx", "purpose": "root component", "size": 120},
    ... )
"""

from events.broadcaster import Connection, ConnectionBroadcaster
from events.types import AgentEvent, EventType

__all__ = [
    "AgentEvent",
    "Connection",
    "ConnectionBroadcaster",
    "EventType",
]
