"""Backend-agnostic sandbox contract.

Both sandbox backends (the in-process Docker client and the remote runner
client) satisfy SandboxService and share one SandboxLifecycle, so the phase
orchestrator never needs to know which backend it is talking to.

Lifecycle:
    uninitialized -> provisioned -> executing -> idle <-> executing -> torn_down

Commands and file writes are only accepted in ``provisioned`` or ``idle``.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

import structlog

from errors import SandboxNotReadyError

logger = structlog.get_logger(__name__)

# Exit code reported for commands that exceed their timeout.
TIMEOUT_EXIT_CODE = 124


class SandboxStatus(StrEnum):
    UNINITIALIZED = "uninitialized"
    PROVISIONED = "provisioned"
    EXECUTING = "executing"
    IDLE = "idle"
    TORN_DOWN = "torn_down"


@dataclass
class CommandResult:
    """Result of executing a command in the sandbox."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class SandboxHandle:
    """Identifies a provisioned sandbox."""

    sandbox_id: str
    backend: str
    workspace_path: str = "/workspace"
    preview_url: str | None = None


class SandboxService(Protocol):
    """Interface implemented by every sandbox backend.

    Contracts shared by all implementations:
    - A command that exceeds its timeout returns
      ``CommandResult(exit_code=124, timed_out=True)``.
    - A command rejected by the command policy returns ``exit_code=1``.
    - Backend failures (daemon, transport) raise SandboxExecutionError.
    - Calls outside ``provisioned``/``idle`` raise SandboxNotReadyError.
    """

    @property
    def status(self) -> SandboxStatus: ...

    @property
    def handle(self) -> SandboxHandle | None: ...

    async def provision(self, config: Mapping[str, Any] | None = None) -> SandboxHandle: ...

    async def write_files(self, files: Mapping[str, str]) -> None: ...

    async def execute_command(self, command: str, timeout: float | None = None) -> CommandResult: ...

    async def teardown(self) -> None: ...


class SandboxLifecycle:
    """State machine shared by the sandbox backends.

    Backends own one instance and call its guards around every operation:

        >>> lifecycle = SandboxLifecycle("sess_123")
        >>> lifecycle.begin_provision()
        >>> lifecycle.mark_provisioned()
        >>> lifecycle.begin_execution()
        <SandboxStatus.EXECUTING: 'executing'>
        >>> lifecycle.end_execution()
    """

    _READY = frozenset({SandboxStatus.PROVISIONED, SandboxStatus.IDLE})

    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        self.status = SandboxStatus.UNINITIALIZED

    @property
    def is_ready(self) -> bool:
        return self.status in self._READY

    def begin_provision(self) -> None:
        if self.status != SandboxStatus.UNINITIALIZED:
            raise SandboxNotReadyError(
                f"Sandbox '{self.sandbox_id}' cannot be provisioned from state {self.status.value}"
            )

    def mark_provisioned(self) -> None:
        self._transition(SandboxStatus.PROVISIONED)

    def require_ready(self, operation: str) -> None:
        if not self.is_ready:
            raise SandboxNotReadyError(
                f"Sandbox '{self.sandbox_id}' cannot {operation} in state {self.status.value}"
            )

    def begin_execution(self) -> SandboxStatus:
        self.require_ready("execute commands")
        self._transition(SandboxStatus.EXECUTING)
        return self.status

    def end_execution(self) -> None:
        # Teardown may have happened while the command was running.
        if self.status == SandboxStatus.EXECUTING:
            self._transition(SandboxStatus.IDLE)

    def mark_torn_down(self) -> None:
        self._transition(SandboxStatus.TORN_DOWN)

    def _transition(self, status: SandboxStatus) -> None:
        logger.debug(
            "sandbox_status_changed",
            sandbox_id=self.sandbox_id,
            from_status=self.status.value,
            to_status=status.value,
        )
        self.status = status
