"""Session registry for code generation agents.

This module provides the SessionManager class that owns one
CodeGeneratorAgent per session and runs generation in background tasks.

Usage:
    >>> session_manager = SessionManager(settings)
    >>> session_id = await session_manager.create_session(
    ...     AgentInitArgs(query="Build a todo app with React"),
    ...     template_details,
    ... )
    >>> task = await session_manager.start_generation(session_id)
    >>> summary = await task
    >>> await session_manager.cleanup_all()
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from codegen.agent import CodeGeneratorAgent, SandboxFactory
from codegen.model_output import LLMModelOutputProvider, ModelOutputProvider
from config import Settings, settings as default_settings
from errors import GenerationInProgressError, SessionNotFoundError
from models.schemas import AgentInitArgs, GenerationSummary, TemplateDetails
from sandbox.factory import create_sandbox_service

logger = structlog.get_logger(__name__)

ModelOutputFactory = Callable[[str], ModelOutputProvider]


def _default_model_output(session_id: str) -> ModelOutputProvider:
    return LLMModelOutputProvider(session_id=session_id)


@dataclass
class SessionInfo:
    """Registry entry for one session.

    Attributes:
        session_id: Unique identifier (e.g., "sess_abc123def456").
        agent: The agent serving the session.
        created_at: Unix timestamp of creation.
        started_at: Start of the latest generation run.
        completed_at: End of the latest generation run.
        last_summary: Summary of the latest finished run.
        error_message: Error of the latest run, if it raised.
    """

    session_id: str
    agent: CodeGeneratorAgent
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    last_summary: GenerationSummary | None = None
    error_message: str | None = None


class SessionManager:
    """Creates, runs and tears down per-session agents.

    Registry access is guarded by an asyncio.Lock; background tasks are
    always cancelled and awaited outside the lock.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        model_output_factory: ModelOutputFactory = _default_model_output,
        *,
        sandbox_factory: SandboxFactory | None = create_sandbox_service,
    ) -> None:
        self.settings = settings
        self.model_output_factory = model_output_factory
        self.sandbox_factory = sandbox_factory
        self._sessions: dict[str, SessionInfo] = {}
        self._tasks: dict[str, asyncio.Task[GenerationSummary | None]] = {}
        self._lock = asyncio.Lock()
        logger.info("session_manager_initialized")

    def _generate_session_id(self) -> str:
        return f"sess_{uuid.uuid4().hex[:12]}"

    async def create_session(
        self,
        args: AgentInitArgs,
        template_details: TemplateDetails,
    ) -> str:
        """Create and initialize a new session.

        Args:
            args: Initialization arguments; a given ``session_id`` is kept.
            template_details: Starting template for the session.

        Returns:
            The session ID.

        Raises:
            ValueError: If ``args.session_id`` is already registered.
        """
        session_id = args.session_id or self._generate_session_id()
        async with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session '{session_id}' already exists")

            agent = CodeGeneratorAgent(
                session_id,
                template_details,
                self.model_output_factory(session_id),
                self.settings,
                sandbox_factory=self.sandbox_factory,
            )
            self._sessions[session_id] = SessionInfo(
                session_id=session_id,
                agent=agent,
                created_at=time.time(),
            )

        await agent.initialize(args.model_copy(update={"session_id": session_id}))
        logger.info(
            "session_created",
            session_id=session_id,
            template=template_details.name,
            query_length=len(args.query),
        )
        return session_id

    def get_session(self, session_id: str) -> SessionInfo | None:
        return self._sessions.get(session_id)

    def get_all_sessions(self) -> list[SessionInfo]:
        return list(self._sessions.values())

    def get_agent(self, session_id: str) -> CodeGeneratorAgent:
        """Return the agent for a session.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        info = self._sessions.get(session_id)
        if info is None:
            raise SessionNotFoundError(session_id)
        return info.agent

    async def start_generation(
        self,
        session_id: str,
        review_cycles: int | None = None,
    ) -> asyncio.Task[GenerationSummary | None]:
        """Run generate_all_files in a background task.

        Raises:
            SessionNotFoundError: If the session does not exist.
            GenerationInProgressError: If a run is already scheduled.
        """
        async with self._lock:
            info = self._sessions.get(session_id)
            if info is None:
                raise SessionNotFoundError(session_id)

            existing = self._tasks.get(session_id)
            if info.agent.is_generating or (existing is not None and not existing.done()):
                raise GenerationInProgressError(f"Generation already running for session '{session_id}'")

            info.started_at = time.time()
            info.completed_at = None
            info.error_message = None
            task = asyncio.create_task(
                self._run_generation(info, review_cycles),
                name=f"generation_{session_id}",
            )
            self._tasks[session_id] = task

            def _remove_task(t: asyncio.Task[GenerationSummary | None], sid: str = session_id) -> None:
                if self._tasks.get(sid) is t:
                    self._tasks.pop(sid, None)

            task.add_done_callback(_remove_task)

        logger.info("generation_scheduled", session_id=session_id, review_cycles=review_cycles)
        return task

    async def _run_generation(
        self,
        info: SessionInfo,
        review_cycles: int | None,
    ) -> GenerationSummary | None:
        try:
            summary = await info.agent.generate_all_files(review_cycles=review_cycles)
        except asyncio.CancelledError:
            info.completed_at = time.time()
            logger.info("generation_task_cancelled", session_id=info.session_id)
            raise
        except Exception as e:
            info.completed_at = time.time()
            info.error_message = str(e)
            logger.error("generation_task_failed", session_id=info.session_id, error=str(e))
            return None

        info.completed_at = time.time()
        info.last_summary = summary
        logger.info(
            "generation_task_complete",
            session_id=info.session_id,
            status=summary.status.value,
            duration_seconds=round(info.completed_at - (info.started_at or info.completed_at), 2),
        )
        return summary

    async def cancel_session(self, session_id: str) -> bool:
        """Request cooperative cancellation of a session's run.

        Returns:
            True if a run was active.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        cancelled = self.get_agent(session_id).cancel()
        logger.info("cancel_session", session_id=session_id, was_running=cancelled)
        return cancelled

    async def close_session(self, session_id: str) -> None:
        """Stop any run, tear down the agent and forget the session.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        # Extract under the lock, cancel outside it.
        async with self._lock:
            info = self._sessions.pop(session_id, None)
            if info is None:
                raise SessionNotFoundError(session_id)
            task = self._tasks.pop(session_id, None)

        info.agent.cancel()
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await info.agent.teardown()
        logger.info("session_closed", session_id=session_id)

    async def cleanup_all(self) -> None:
        """Close every session. Called on application shutdown."""
        session_ids = list(self._sessions.keys())
        logger.info("cleanup_all_start", session_count=len(session_ids))

        for session_id in session_ids:
            try:
                await self.close_session(session_id)
            except SessionNotFoundError:
                continue
            except Exception as e:
                logger.error("cleanup_close_session_failed", session_id=session_id, error=str(e))

        logger.info("cleanup_all_complete")
