"""Event type definitions for the code generation event stream.

This module defines all event types that flow from a session's agent to its
attached client connections. Every meaningful state change produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted by a code generation session.

    Events are categorized by:
    - Connection: Handshake and keepalive replies
    - Generation lifecycle: Start, completion, failure and cancellation
    - Phases: Blueprint, phase start/end and review cycles
    - Files: Generated, updated and skipped files
    - Issues: Raised and resolved issues
    - Sandbox: Provisioning and command execution
    """

    # Connection
    CONNECTED = "connected"
    PONG = "pong"
    ERROR = "error"
    FILE_TREE = "file_tree"

    # Generation lifecycle
    GENERATION_STARTED = "generation_started"
    GENERATION_COMPLETE = "generation_complete"
    GENERATION_FAILED = "generation_failed"
    GENERATION_CANCELLED = "generation_cancelled"

    # Phases
    BLUEPRINT_GENERATED = "blueprint_generated"
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETED = "phase_completed"
    PHASE_FAILED = "phase_failed"
    REVIEW_STARTED = "review_started"

    # Files
    FILE_GENERATED = "file_generated"
    FILE_UPDATED = "file_updated"
    FILE_SKIPPED = "file_skipped"

    # Issues
    ISSUE_RAISED = "issue_raised"
    ISSUE_RESOLVED = "issue_resolved"

    # Sandbox
    SANDBOX_READY = "sandbox_ready"
    COMMAND_COMPLETED = "command_completed"
    TERMINAL_OUTPUT = "terminal_output"

    # Sentinel used when the broadcaster closes
    SESSION_CLOSED = "session_closed"


class AgentEvent(BaseModel):
    """An event emitted during a code generation session.

    Payload schemas by event type:

    PHASE_STARTED / PHASE_COMPLETED / PHASE_FAILED:
        - phase_index: int
        - name: str
        - files_touched: list[str] (completed/failed only)

    FILE_GENERATED / FILE_UPDATED:
        - path: str
        - purpose: str
        - size: int

    FILE_SKIPPED:
        - path: str
        - reason: str

    ISSUE_RAISED / ISSUE_RESOLVED:
        - issue: dict - The serialized Issue

    COMMAND_COMPLETED:
        - command: str
        - exit_code: int
        - timed_out: bool

    TERMINAL_OUTPUT:
        - output: str
        - output_type: "stdout" | "stderr"

    GENERATION_COMPLETE:
        - summary: dict - The serialized GenerationSummary
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        """Serialize for a client connection."""
        return self.model_dump(mode="json")
