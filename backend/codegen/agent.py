"""The per-session code generation agent.

CodeGeneratorAgent is the single actor behind a session. It owns the
FileManager, StateManager, sandbox and ConnectionBroadcaster of the session,
serializes mutating calls with an asyncio.Lock, and exposes the connection
hooks a transport (see api.websocket) drives.
"""

import asyncio
import json
import time
from collections.abc import Callable
from typing import Any

import structlog

from codegen.file_manager import FileManager
from codegen.generation_context import GenerationContext
from codegen.model_output import ModelOutputProvider
from codegen.phase_orchestrator import PhaseOrchestrator
from codegen.state_manager import StateManager
from config import Settings, settings as default_settings
from errors import (
    CodegenError,
    GenerationInProgressError,
    NotInitializedError,
    SandboxError,
)
from events.broadcaster import Connection, ConnectionBroadcaster
from events.types import EventType
from models.schemas import (
    AgentInitArgs,
    CodeGenState,
    FileTreeNode,
    GenerationStatus,
    GenerationSummary,
    Issue,
    IssueSeverity,
    IssueSource,
    TemplateDetails,
)
from sandbox.base import SandboxService, SandboxStatus
from sandbox.factory import create_sandbox_service

logger = structlog.get_logger(__name__)

SandboxFactory = Callable[[str, Settings], SandboxService]


class CodeGeneratorAgent:
    """Stateful actor that turns a request into a generated file set.

    Usage:
        >>> agent = CodeGeneratorAgent("sess_123", template, LLMModelOutputProvider())
        >>> await agent.initialize(AgentInitArgs(query="Build a todo app"))
        >>> summary = await agent.generate_all_files(review_cycles=3)

    Attributes:
        session_id: The session this agent serves.
        template_details: Immutable starting template.
        file_manager: Authoritative file state.
        state_manager: Persisted generation state.
        broadcaster: Fan-out to attached client connections.
    """

    def __init__(
        self,
        session_id: str,
        template_details: TemplateDetails,
        model_output: ModelOutputProvider,
        settings: Settings = default_settings,
        *,
        sandbox: SandboxService | None = None,
        sandbox_factory: SandboxFactory | None = create_sandbox_service,
        broadcaster: ConnectionBroadcaster | None = None,
    ) -> None:
        self.session_id = session_id
        self.template_details = template_details
        self.model_output = model_output
        self.settings = settings
        self.file_manager = FileManager.from_settings(settings)
        self.state_manager = StateManager(max_history=settings.max_state_history)
        self.broadcaster = broadcaster or ConnectionBroadcaster(
            session_id,
            send_timeout=settings.broadcast_send_timeout_seconds,
            history_limit=settings.event_history_limit,
        )
        self._sandbox = sandbox
        self._sandbox_factory = sandbox_factory
        self._lock = asyncio.Lock()
        # Held around every call into the sandbox.
        self._sandbox_lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()
        self._generating = False

    @property
    def is_generating(self) -> bool:
        return self._generating

    @property
    def is_initialized(self) -> bool:
        return self.state_manager.is_initialized

    @property
    def sandbox(self) -> SandboxService | None:
        return self._sandbox

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self, args: AgentInitArgs) -> CodeGenState:
        """Seed a fresh generation state for this session.

        Raises:
            GenerationInProgressError: If a generation run is active.
        """
        # A run holds the lock until it finishes.
        if self._generating:
            raise GenerationInProgressError("Cannot initialize while generation is running")

        async with self._lock:
            if not args.session_id:
                args = args.model_copy(update={"session_id": self.session_id})
            config: dict[str, Any] = {
                "language": args.language or self.template_details.language,
                "frameworks": args.frameworks or list(self.template_details.frameworks),
                "template": self.template_details.name,
            }
            state = self.state_manager.initialize(
                args, max_phases=self.settings.max_phases, config=config
            )
            logger.info(
                "agent_initialized",
                session_id=self.session_id,
                user_id=args.user_id,
                query_length=len(args.query),
                template=self.template_details.name,
            )
            return state

    async def generate_all_files(self, review_cycles: int | None = None) -> GenerationSummary:
        """Run phased generation to completion, failure or cancellation.

        Per-phase failures are reported in the returned summary, not raised.

        Args:
            review_cycles: Fix cycles per phase (defaults to settings).

        Raises:
            NotInitializedError: If initialize() was never called.
            GenerationInProgressError: If another run is active.
        """
        self._require_initialized()
        if self._generating:
            raise GenerationInProgressError(f"Generation already running for session '{self.session_id}'")

        self._generating = True
        self._cancel_event.clear()
        cycles = self.settings.default_review_cycles if review_cycles is None else review_cycles
        try:
            async with self._lock:
                await self.broadcaster.broadcast(
                    EventType.GENERATION_STARTED,
                    {"review_cycles": cycles, "query": self.state_manager.get_state().query},
                )
                logger.info("generation_started", session_id=self.session_id, review_cycles=cycles)

                sandbox = await self._ensure_sandbox()
                orchestrator = PhaseOrchestrator(
                    self.session_id,
                    self.template_details,
                    self.file_manager,
                    self.state_manager,
                    self.model_output,
                    self.settings,
                    sandbox=sandbox,
                    broadcaster=self.broadcaster,
                    cancel_event=self._cancel_event,
                    sandbox_lock=self._sandbox_lock,
                )

                try:
                    summary = await orchestrator.run(review_cycles=cycles)
                except Exception as e:
                    logger.exception("generation_failed", session_id=self.session_id, error=str(e))
                    await self.broadcaster.broadcast(
                        EventType.GENERATION_FAILED,
                        {"error": str(e), "error_type": type(e).__name__},
                    )
                    raise

                event_type = (
                    EventType.GENERATION_CANCELLED
                    if summary.status == GenerationStatus.CANCELLED
                    else EventType.GENERATION_COMPLETE
                )
                await self.broadcaster.broadcast(event_type, {"summary": summary.model_dump(mode="json")})
                return summary
        finally:
            self._generating = False

    def cancel(self) -> bool:
        """Signal the active run to stop after its in-flight call.

        Files written by the interrupted phase are kept.

        Returns:
            True if a run was active.
        """
        if not self._generating:
            return False
        self._cancel_event.set()
        logger.info("generation_cancel_requested", session_id=self.session_id)
        return True

    async def reset(self) -> CodeGenState:
        """Drop generated files and restart the state from phase 0.

        The query, ids and config of the session are kept.
        """
        self._require_initialized()
        if self._generating:
            raise GenerationInProgressError("Cannot reset while generation is running")
        async with self._lock:
            previous = self.state_manager.get_state()
            self.file_manager.clear_all_files()
            self.state_manager.initialize(
                AgentInitArgs(
                    query=previous.query,
                    user_id=previous.user_id,
                    session_id=previous.session_id,
                    agent_mode=previous.agent_mode,
                ),
                max_phases=self.settings.max_phases,
                config=previous.config,
            )
            logger.info("agent_reset", session_id=self.session_id)
            return self.state_manager.get_state()

    async def teardown(self) -> None:
        """Cancel any run, release the sandbox and close every connection."""
        self.cancel()
        if self._sandbox is not None and self._sandbox.status != SandboxStatus.TORN_DOWN:
            try:
                await self._sandbox.teardown()
            except SandboxError as e:
                logger.warning("sandbox_teardown_failed", session_id=self.session_id, error=str(e))
        await self.broadcaster.close()
        logger.info("agent_torn_down", session_id=self.session_id)

    # =========================================================================
    # State access
    # =========================================================================

    def get_state(self) -> CodeGenState:
        self._require_initialized()
        return self.state_manager.get_state()

    def get_config(self) -> dict[str, Any]:
        self._require_initialized()
        return self.state_manager.get_config()

    def update_config(self, patch: dict[str, Any]) -> None:
        """Merge config values. A no-op before initialize()."""
        self.state_manager.update_config(patch)

    def get_generation_context(self) -> GenerationContext:
        self._require_initialized()
        return GenerationContext.from_sources(
            self.template_details,
            self.file_manager.get_all_files(),
            self.state_manager.get_state(),
        )

    def get_file_tree(self) -> FileTreeNode:
        return self.get_generation_context().get_file_tree()

    def export_files(self) -> str:
        self._require_initialized()
        return self.file_manager.export_to_json()

    async def import_files(self, data: str) -> int:
        self._require_initialized()
        async with self._lock:
            count = self.file_manager.import_from_json(data)
            self.state_manager.set_files(self.file_manager.get_paths())
            return count

    def export_state(self) -> str:
        self._require_initialized()
        return self.state_manager.export_state()

    async def import_state(self, data: str) -> CodeGenState:
        self._require_initialized()
        async with self._lock:
            self.state_manager.import_state(data)
            return self.get_state()

    # =========================================================================
    # Connection hooks
    # =========================================================================

    async def on_connect(self, connection: Connection, *, replay: bool = False) -> None:
        await self.broadcaster.attach(connection, replay=replay)
        payload: dict[str, Any] = {
            "session_id": self.session_id,
            "initialized": self.is_initialized,
            "generating": self._generating,
        }
        if self.is_initialized:
            state = self.state_manager.get_state()
            payload.update(
                current_phase=state.current_phase,
                max_phases=state.max_phases,
                file_count=self.file_manager.get_file_count(),
            )
        await self.broadcaster.send_to(connection, EventType.CONNECTED, payload)

    async def on_close(self, connection: Connection) -> None:
        self.broadcaster.detach(connection)

    async def on_message(self, connection: Connection, message: dict[str, Any] | str) -> None:
        """Handle one client message.

        Supported types: ``ping``, ``cancel``, ``get_file_tree`` and
        ``terminal_command``. Failures are reported to the sender as
        ``error`` events and never raised.
        """
        if isinstance(message, str):
            try:
                message = json.loads(message)
            except json.JSONDecodeError:
                await self._send_error(connection, "Invalid JSON message")
                return
        if not isinstance(message, dict):
            await self._send_error(connection, "Message must be a JSON object")
            return

        message_type = message.get("type")
        data = message.get("data")
        logger.debug(
            "message_received",
            session_id=self.session_id,
            connection_id=connection.id,
            message_type=message_type,
        )

        try:
            if message_type == "ping":
                await self.broadcaster.send_to(connection, EventType.PONG, {"timestamp": time.time()})
            elif message_type == "cancel":
                cancelled = self.cancel()
                if not cancelled:
                    await self._send_error(connection, "No generation is running")
            elif message_type == "get_file_tree":
                tree = self.get_file_tree()
                await self.broadcaster.send_to(
                    connection, EventType.FILE_TREE, {"tree": tree.model_dump(exclude_none=True)}
                )
            elif message_type == "terminal_command":
                command = _extract_command(data if data is not None else message)
                if command is None:
                    await self._send_error(connection, "Invalid command data")
                    return
                await self._execute_terminal_command(connection, command)
            else:
                logger.warning("unknown_message_type", session_id=self.session_id, message_type=message_type)
                await self._send_error(connection, f"Unknown message type: {message_type}")
        except CodegenError as e:
            await self.broadcaster.send_to(connection, EventType.ERROR, e.to_dict())
        except Exception as e:
            logger.exception("message_handling_failed", session_id=self.session_id, error=str(e))
            await self._send_error(connection, "Failed to process message")

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_initialized(self) -> None:
        if not self.state_manager.is_initialized:
            raise NotInitializedError(f"Session '{self.session_id}' is not initialized")

    async def _ensure_sandbox(self) -> SandboxService | None:
        """Provision the session sandbox on first use.

        Waits for any in-flight terminal command first. A sandbox that fails
        to provision, or is otherwise unusable, becomes a blocking issue;
        generation then runs without sandbox validation.
        """
        if self._sandbox is None:
            if self._sandbox_factory is None:
                return None
            self._sandbox = self._sandbox_factory(self.session_id, self.settings)

        async with self._sandbox_lock:
            status = self._sandbox.status
            if status in (SandboxStatus.PROVISIONED, SandboxStatus.IDLE):
                return self._sandbox
            if status != SandboxStatus.UNINITIALIZED:
                await self._record_sandbox_issue(f"Sandbox is unavailable (status {status.value})")
                return None

            try:
                handle = await asyncio.wait_for(
                    self._sandbox.provision({"image": self.settings.sandbox_image}),
                    timeout=self.settings.sandbox_provision_timeout_seconds,
                )
            except (SandboxError, TimeoutError) as e:
                logger.error("sandbox_provision_failed", session_id=self.session_id, error=str(e))
                await self._record_sandbox_issue(
                    f"Sandbox provisioning failed: {e}",
                    source=IssueSource.TIMEOUT if isinstance(e, TimeoutError) else IssueSource.SANDBOX,
                )
                return None

        await self.broadcaster.broadcast(
            EventType.SANDBOX_READY,
            {
                "sandbox_id": handle.sandbox_id,
                "backend": handle.backend,
                "preview_url": handle.preview_url,
            },
        )
        return self._sandbox

    async def _record_sandbox_issue(self, message: str, source: IssueSource = IssueSource.SANDBOX) -> None:
        issue = Issue(message=message, severity=IssueSeverity.BLOCKING, source=source)
        self.state_manager.record_issue(issue)
        await self.broadcaster.broadcast(EventType.ISSUE_RAISED, {"issue": issue.model_dump(mode="json")})

    async def _execute_terminal_command(self, connection: Connection, command: str) -> None:
        sandbox = self._sandbox
        if sandbox is None:
            await self._send_terminal(connection, "Sandbox is not ready", "stderr")
            return

        # Serialized with the sandbox calls of a generation run.
        async with self._sandbox_lock:
            if sandbox.status not in (SandboxStatus.PROVISIONED, SandboxStatus.IDLE):
                result = None
            else:
                try:
                    result = await sandbox.execute_command(command)
                except SandboxError as e:
                    logger.warning("terminal_command_failed", session_id=self.session_id, error=str(e))
                    await self._send_terminal(connection, f"Error: {e.message}", "stderr")
                    return

        if result is None:
            await self._send_terminal(connection, "Sandbox is not ready", "stderr")
            return

        await self._send_terminal(connection, f"$ {command}", "stdout")
        if result.stdout:
            await self._send_terminal(connection, result.stdout, "stdout")
        if result.stderr:
            await self._send_terminal(connection, result.stderr, "stderr")
        await self._send_terminal(
            connection,
            f"Exit code: {result.exit_code}",
            "stderr" if result.exit_code else "stdout",
        )

    async def _send_terminal(self, connection: Connection, output: str, output_type: str) -> None:
        await self.broadcaster.send_to(
            connection,
            EventType.TERMINAL_OUTPUT,
            {"output": output, "output_type": output_type, "timestamp": time.time()},
        )

    async def _send_error(self, connection: Connection, message: str) -> None:
        await self.broadcaster.send_to(
            connection, EventType.ERROR, {"message": message, "timestamp": time.time()}
        )


def _extract_command(data: Any) -> str | None:
    if isinstance(data, str):
        return data if data.strip() else None
    if isinstance(data, dict):
        command = data.get("command")
        if isinstance(command, str) and command.strip():
            return command
    return None
