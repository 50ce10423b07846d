"""Phased generation as a LangGraph state machine.

This module provides the PhaseOrchestrator, which drives one generation run:

    START -> blueprint -> generate -> implement -> review
          -> [fix -> review]* -> complete_phase -> [generate | finalize] -> END

1. BLUEPRINT: Plan the project as ordered phases (skipped when resuming)
2. GENERATE: Produce the phase's files through the model-output boundary
3. IMPLEMENT: Complete the phase's files, then run the install command
4. REVIEW: Run the validation command and collect model review findings
5. FIX: Ask for fixes while blocking issues remain, bounded by review cycles
6. COMPLETE_PHASE: Record the PhaseState and move to the next phase

Every model and sandbox call is retried with exponential backoff. A call
that still fails becomes a blocking issue and marks its phase failed; later
phases still run against the files generated so far.

Events emitted:
- BLUEPRINT_GENERATED, PHASE_STARTED, PHASE_COMPLETED, PHASE_FAILED
- FILE_GENERATED, FILE_UPDATED, FILE_SKIPPED
- ISSUE_RAISED, ISSUE_RESOLVED, REVIEW_STARTED, COMMAND_COMPLETED
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypedDict, TypeVar

import structlog
from langgraph.graph import END, START, StateGraph

from codegen.file_manager import FileManager
from codegen.generation_context import GenerationContext
from codegen.model_output import ModelOutputProvider
from codegen.state_manager import StateManager
from config import Settings
from errors import (
    ModelOutputError,
    SandboxError,
    SandboxExecutionError,
    SandboxNotReadyError,
    ValidationError,
)
from events.broadcaster import ConnectionBroadcaster
from events.types import EventType
from models.schemas import (
    BlueprintPhase,
    FileOutput,
    GenerationStatus,
    GenerationSummary,
    Issue,
    IssueSeverity,
    IssueSource,
    PhaseState,
    PhaseStatus,
    TemplateDetails,
)
from sandbox.base import CommandResult, SandboxService

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Lines of command output quoted in a sandbox issue.
OUTPUT_TAIL_LINES = 20

# Step labels of sandbox calls; commands are labelled "command:<cmd>".
SANDBOX_STEPS = frozenset({"write_files"})


class RetryExhaustedError(Exception):
    """Raised when a step still fails after every retry attempt."""

    def __init__(self, label: str, cause: BaseException) -> None:
        super().__init__(f"{label} failed: {cause}")
        self.label = label
        self.cause = cause


class OrchestratorState(TypedDict):
    """Per-run bookkeeping carried through the graph.

    Durable data (files, issues, phase history) lives in the FileManager and
    StateManager; this state only tracks the phase currently in flight.

    Attributes:
        phase_index: Index of the phase being executed
        review_cycles: Maximum fix cycles per phase
        cycles_run: Fix cycles run in the current phase
        files_touched: Paths written in the current phase
        issues_discovered: Issue ids raised in the current phase
        issues_resolved: Issue ids resolved in the current phase
        phase_failed: Whether a step of the current phase exhausted its retries
        blueprint_failed: Whether blueprint synthesis failed
        cancelled: Whether cancellation was observed
    """

    phase_index: int
    review_cycles: int
    cycles_run: int
    files_touched: list[str]
    issues_discovered: list[str]
    issues_resolved: list[str]
    phase_failed: bool
    blueprint_failed: bool
    cancelled: bool


class PhaseOrchestrator:
    """Sequences blueprint, per-phase generation, review and fix cycles.

    Usage:
        >>> orchestrator = PhaseOrchestrator(
        ...     session_id, template, file_manager, state_manager, provider, settings
        ... )
        >>> summary = await orchestrator.run(review_cycles=3)
    """

    def __init__(
        self,
        session_id: str,
        template_details: TemplateDetails,
        file_manager: FileManager,
        state_manager: StateManager,
        model_output: ModelOutputProvider,
        settings: Settings,
        *,
        sandbox: SandboxService | None = None,
        broadcaster: ConnectionBroadcaster | None = None,
        cancel_event: asyncio.Event | None = None,
        sandbox_lock: asyncio.Lock | None = None,
    ) -> None:
        self.session_id = session_id
        self.template_details = template_details
        self.file_manager = file_manager
        self.state_manager = state_manager
        self.model_output = model_output
        self.settings = settings
        self.sandbox = sandbox
        self.broadcaster = broadcaster
        self.cancel_event = cancel_event or asyncio.Event()
        self.sandbox_lock = sandbox_lock or asyncio.Lock()
        self._run_phases: list[PhaseState] = []
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(OrchestratorState)

        graph.add_node("blueprint", self._blueprint)
        graph.add_node("generate", self._generate)
        graph.add_node("implement", self._implement)
        graph.add_node("review", self._review)
        graph.add_node("fix", self._fix)
        graph.add_node("complete_phase", self._complete_phase)
        graph.add_node("finalize", self._finalize)

        graph.add_edge(START, "blueprint")
        graph.add_conditional_edges(
            "blueprint",
            self._after_blueprint,
            {"generate": "generate", "finalize": "finalize"},
        )
        graph.add_edge("generate", "implement")
        graph.add_edge("implement", "review")
        graph.add_conditional_edges(
            "review",
            self._after_review,
            {"fix": "fix", "complete": "complete_phase"},
        )
        graph.add_edge("fix", "review")
        graph.add_conditional_edges(
            "complete_phase",
            self._after_phase,
            {"next": "generate", "finalize": "finalize"},
        )
        graph.add_edge("finalize", END)

        return graph.compile()

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(self, review_cycles: int | None = None) -> GenerationSummary:
        """Run generation until every phase is done or cancellation is observed.

        Args:
            review_cycles: Maximum fix cycles per phase (defaults to settings).

        Returns:
            GenerationSummary of completed/failed phases and unresolved issues.
        """
        cycles = self.settings.default_review_cycles if review_cycles is None else max(0, review_cycles)
        self._run_phases = []

        initial = OrchestratorState(
            phase_index=self.state_manager.get_state().current_phase,
            review_cycles=cycles,
            cycles_run=0,
            files_touched=[],
            issues_discovered=[],
            issues_resolved=[],
            phase_failed=False,
            blueprint_failed=False,
            cancelled=False,
        )

        # blueprint + finalize, then generate/implement/review/complete plus
        # a fix and a review per cycle, for every phase.
        recursion_limit = 10 + self.settings.max_phases * (4 + 2 * cycles)
        final_state = await self._compiled_graph.ainvoke(
            initial, config={"recursion_limit": recursion_limit}
        )
        return self._summarize(final_state)

    # =========================================================================
    # Nodes
    # =========================================================================

    async def _blueprint(self, state: OrchestratorState) -> dict[str, Any]:
        if self._is_cancelled():
            return {"cancelled": True}

        current = self.state_manager.get_state()
        if current.blueprint is not None:
            logger.info(
                "blueprint_reused",
                session_id=self.session_id,
                current_phase=current.current_phase,
                max_phases=current.max_phases,
            )
            return {"phase_index": current.current_phase}

        context = self._context()
        try:
            blueprint = await self._with_retry(
                "blueprint",
                lambda: self.model_output.generate_blueprint(context),
                timeout=self.settings.model_call_timeout_seconds,
            )
        except RetryExhaustedError as e:
            await self._record_issue(self._issue_from_failure(e, phase_index=None))
            return {"blueprint_failed": True}

        max_phases = min(len(blueprint.phases), self.settings.max_phases)
        self.state_manager.set_blueprint(blueprint, max_phases)
        await self._broadcast(
            EventType.BLUEPRINT_GENERATED,
            {
                "title": blueprint.title,
                "description": blueprint.description,
                "phases": [phase.name for phase in blueprint.phases[:max_phases]],
            },
        )
        logger.info(
            "blueprint_generated",
            session_id=self.session_id,
            phase_count=len(blueprint.phases),
            max_phases=max_phases,
        )
        return {"phase_index": 0}

    async def _generate(self, state: OrchestratorState) -> dict[str, Any]:
        reset: dict[str, Any] = {
            "cycles_run": 0,
            "files_touched": [],
            "issues_discovered": [],
            "issues_resolved": [],
            "phase_failed": False,
        }
        if self._is_cancelled():
            return {**reset, "cancelled": True}

        index = state["phase_index"]
        phase = self._phase(index)
        await self._broadcast(
            EventType.PHASE_STARTED,
            {"phase_index": index, "name": phase.name, "description": phase.description},
        )
        logger.info("phase_started", session_id=self.session_id, phase_index=index, name=phase.name)

        context = self._context()
        try:
            outputs = await self._with_retry(
                "generate_phase_files",
                lambda: self.model_output.generate_phase_files(context, phase, index, "generate"),
                timeout=self.settings.model_call_timeout_seconds,
            )
        except RetryExhaustedError as e:
            issue = await self._record_issue(self._issue_from_failure(e, phase_index=index))
            return {**reset, "phase_failed": True, "issues_discovered": [issue.id]}

        touched, issue_ids = await self._apply_outputs(outputs, index)
        sync_issues = await self._sync_sandbox(touched, index)
        return {
            **reset,
            "files_touched": touched,
            "issues_discovered": issue_ids + sync_issues,
        }

    async def _implement(self, state: OrchestratorState) -> dict[str, Any]:
        if state["phase_failed"] or state["cancelled"]:
            return {}
        if self._is_cancelled():
            return {"cancelled": True}

        index = state["phase_index"]
        phase = self._phase(index)
        context = self._context()
        try:
            outputs = await self._with_retry(
                "implement_phase_files",
                lambda: self.model_output.generate_phase_files(context, phase, index, "implement"),
                timeout=self.settings.model_call_timeout_seconds,
            )
        except RetryExhaustedError as e:
            issue = await self._record_issue(self._issue_from_failure(e, phase_index=index))
            return {"phase_failed": True, "issues_discovered": [*state["issues_discovered"], issue.id]}

        touched, issue_ids = await self._apply_outputs(outputs, index)
        issue_ids += await self._sync_sandbox(touched, index)

        command = self.settings.sandbox_install_command
        if self.sandbox is not None and command and not self._is_cancelled():
            try:
                result = await self._run_command(command, index)
            except RetryExhaustedError as e:
                issue = await self._record_issue(self._issue_from_failure(e, phase_index=index))
                return {
                    "phase_failed": True,
                    "files_touched": _merge(state["files_touched"], touched),
                    "issues_discovered": [*state["issues_discovered"], *issue_ids, issue.id],
                }
            if not result.succeeded:
                issue = await self._record_issue(self._issue_from_command(command, result, index))
                issue_ids.append(issue.id)

        return {
            "files_touched": _merge(state["files_touched"], touched),
            "issues_discovered": [*state["issues_discovered"], *issue_ids],
        }

    async def _review(self, state: OrchestratorState) -> dict[str, Any]:
        if state["phase_failed"] or state["cancelled"]:
            return {}
        if self._is_cancelled():
            return {"cancelled": True}

        index = state["phase_index"]
        phase = self._phase(index)
        await self._broadcast(
            EventType.REVIEW_STARTED,
            {"phase_index": index, "cycle": state["cycles_run"]},
        )

        issue_ids: list[str] = []
        command = self.settings.sandbox_validation_command
        if self.sandbox is not None and command:
            try:
                result = await self._run_command(command, index)
            except RetryExhaustedError as e:
                issue = await self._record_issue(self._issue_from_failure(e, phase_index=index))
                return {"phase_failed": True, "issues_discovered": [*state["issues_discovered"], issue.id]}
            if not result.succeeded:
                issue = await self._record_issue(self._issue_from_command(command, result, index))
                issue_ids.append(issue.id)

        if self._is_cancelled():
            return {"cancelled": True, "issues_discovered": [*state["issues_discovered"], *issue_ids]}

        context = self._context()
        try:
            findings = await self._with_retry(
                "review_phase",
                lambda: self.model_output.review_phase(context, phase, index),
                timeout=self.settings.model_call_timeout_seconds,
            )
        except RetryExhaustedError as e:
            issue = await self._record_issue(self._issue_from_failure(e, phase_index=index))
            return {
                "phase_failed": True,
                "issues_discovered": [*state["issues_discovered"], *issue_ids, issue.id],
            }

        for finding in findings:
            issue = await self._record_issue(
                finding.model_copy(update={"phase_index": index, "source": IssueSource.REVIEW})
            )
            issue_ids.append(issue.id)

        logger.info(
            "phase_reviewed",
            session_id=self.session_id,
            phase_index=index,
            cycle=state["cycles_run"],
            new_issues=len(issue_ids),
        )
        return {"issues_discovered": [*state["issues_discovered"], *issue_ids]}

    async def _fix(self, state: OrchestratorState) -> dict[str, Any]:
        index = state["phase_index"]
        cycles_run = state["cycles_run"] + 1
        if self._is_cancelled():
            return {"cycles_run": cycles_run, "cancelled": True}

        phase = self._phase(index)
        open_issues = self._open_issues(index)
        context = self._context()
        try:
            outputs = await self._with_retry(
                "fix_issues",
                lambda: self.model_output.fix_issues(context, phase, index, open_issues),
                timeout=self.settings.model_call_timeout_seconds,
            )
        except RetryExhaustedError as e:
            issue = await self._record_issue(self._issue_from_failure(e, phase_index=index))
            return {
                "cycles_run": cycles_run,
                "phase_failed": True,
                "issues_discovered": [*state["issues_discovered"], issue.id],
            }

        touched, issue_ids = await self._apply_outputs(outputs, index)
        issue_ids += await self._sync_sandbox(touched, index)

        resolved: list[str] = []
        if touched:
            for issue in open_issues:
                self.state_manager.resolve_issue(issue.id)
                resolved.append(issue.id)
                await self._broadcast(
                    EventType.ISSUE_RESOLVED,
                    {"issue": issue.model_copy(update={"resolved": True}).model_dump(mode="json")},
                )

        logger.info(
            "fix_cycle_complete",
            session_id=self.session_id,
            phase_index=index,
            cycle=cycles_run,
            files_changed=len(touched),
            issues_resolved=len(resolved),
        )
        return {
            "cycles_run": cycles_run,
            "files_touched": _merge(state["files_touched"], touched),
            "issues_discovered": [*state["issues_discovered"], *issue_ids],
            "issues_resolved": [*state["issues_resolved"], *resolved],
        }

    async def _complete_phase(self, state: OrchestratorState) -> dict[str, Any]:
        index = state["phase_index"]
        phase = self._phase(index)
        cancelled = state["cancelled"] or self._is_cancelled()

        if cancelled:
            status = PhaseStatus.CANCELLED
        elif state["phase_failed"]:
            status = PhaseStatus.FAILED
        else:
            status = PhaseStatus.COMPLETED

        record = PhaseState(
            index=index,
            name=phase.name,
            status=status,
            files_touched=tuple(state["files_touched"]),
            issues_discovered=tuple(state["issues_discovered"]),
            issues_resolved=tuple(state["issues_resolved"]),
            review_cycles_run=state["cycles_run"],
        )
        self._run_phases.append(record)
        self.state_manager.set_files(self.file_manager.get_paths())

        # A cancelled phase is not committed, so a later run redoes it.
        if status != PhaseStatus.CANCELLED:
            self.state_manager.advance_phase(record)

        payload = {
            "phase_index": index,
            "name": phase.name,
            "status": status.value,
            "files_touched": list(record.files_touched),
        }
        if status == PhaseStatus.COMPLETED:
            await self._broadcast(EventType.PHASE_COMPLETED, payload)
        else:
            await self._broadcast(EventType.PHASE_FAILED, payload)

        logger.info(
            "phase_finished",
            session_id=self.session_id,
            phase_index=index,
            status=status.value,
            files_touched=len(record.files_touched),
            review_cycles_run=record.review_cycles_run,
        )
        return {"phase_index": index + 1, "cancelled": cancelled}

    async def _finalize(self, state: OrchestratorState) -> dict[str, Any]:
        self.state_manager.set_files(self.file_manager.get_paths())
        logger.info(
            "generation_finalized",
            session_id=self.session_id,
            phases_run=len(self._run_phases),
            file_count=self.file_manager.get_file_count(),
            cancelled=state["cancelled"],
        )
        return {}

    # =========================================================================
    # Routing
    # =========================================================================

    def _after_blueprint(self, state: OrchestratorState) -> str:
        if state["blueprint_failed"] or state["cancelled"]:
            return "finalize"
        current = self.state_manager.get_state()
        if current.current_phase >= current.max_phases:
            return "finalize"
        return "generate"

    def _after_review(self, state: OrchestratorState) -> str:
        if state["phase_failed"] or state["cancelled"]:
            return "complete"
        if state["cycles_run"] >= state["review_cycles"]:
            return "complete"
        if self._open_issues(state["phase_index"]):
            return "fix"
        return "complete"

    def _after_phase(self, state: OrchestratorState) -> str:
        if state["cancelled"]:
            return "finalize"
        current = self.state_manager.get_state()
        if current.current_phase >= current.max_phases:
            return "finalize"
        return "next"

    # =========================================================================
    # Helpers
    # =========================================================================

    def _is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _context(self) -> GenerationContext:
        return GenerationContext.from_sources(
            self.template_details,
            self.file_manager.get_all_files(),
            self.state_manager.get_state(),
        )

    def _phase(self, index: int) -> BlueprintPhase:
        blueprint = self.state_manager.get_state().blueprint
        if blueprint is None or index >= len(blueprint.phases):
            return BlueprintPhase(name=f"Phase {index + 1}")
        return blueprint.phases[index]

    def _open_issues(self, phase_index: int) -> list[Issue]:
        return [
            issue
            for issue in self.state_manager.unresolved_issues(blocking_only=True)
            if issue.phase_index == phase_index
        ]

    async def _with_retry(
        self,
        label: str,
        call: Callable[[], Awaitable[T]],
        *,
        timeout: float,
    ) -> T:
        """Run ``call`` with a timeout, retrying transient failures.

        Retried: transient ModelOutputError, SandboxNotReadyError,
        SandboxExecutionError and TimeoutError. The delay before attempt n+1
        is ``retry_base_delay_seconds * 2**n``, capped at
        ``retry_max_delay_seconds``.

        Any other failure, except a ValidationError, ends the step at once.

        Raises:
            RetryExhaustedError: When the last attempt fails, on a permanent
                ModelOutputError, or on an unexpected error.
            ValidationError: Passed through for the caller to record.
        """
        attempts = max(1, self.settings.retry_attempts)
        last_error: BaseException | None = None

        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(call(), timeout=timeout)
            except ModelOutputError as e:
                last_error = e
                if not e.transient:
                    break
            except (SandboxNotReadyError, SandboxExecutionError, TimeoutError) as e:
                last_error = e
            except ValidationError:
                raise
            except Exception as e:
                logger.exception(
                    "step_unexpected_error",
                    session_id=self.session_id,
                    step=label,
                    error_type=type(e).__name__,
                )
                last_error = e
                break

            if attempt < attempts - 1:
                delay = min(
                    self.settings.retry_base_delay_seconds * (2 ** attempt),
                    self.settings.retry_max_delay_seconds,
                )
                logger.warning(
                    "step_retry",
                    session_id=self.session_id,
                    step=label,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error_type=type(last_error).__name__,
                    error=str(last_error),
                    retry_delay=delay,
                )
                await self._sleep(delay)

        logger.error(
            "step_failed_all_retries",
            session_id=self.session_id,
            step=label,
            error_type=type(last_error).__name__,
            error=str(last_error),
        )
        raise RetryExhaustedError(label, last_error or RuntimeError("unknown failure"))

    async def _locked(self, call: Callable[[], Awaitable[T]]) -> T:
        async with self.sandbox_lock:
            return await call()

    async def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def _apply_outputs(self, outputs: list[FileOutput], phase_index: int) -> tuple[list[str], list[str]]:
        """Write model outputs through the FileManager.

        Protected paths and outputs the FileManager rejects are skipped and
        recorded as warning issues.

        Returns:
            (paths written, ids of issues raised)
        """
        context = self._context()
        touched: list[str] = []
        issue_ids: list[str] = []

        for output in outputs:
            if context.is_protected(output.file_path):
                issue = await self._skip_output(output, "protected file", phase_index)
                issue_ids.append(issue.id)
                continue

            existed = self.file_manager.file_exists(output.file_path)
            try:
                operation = self.file_manager.apply_output(output)
            except ValidationError as e:
                issue = await self._skip_output(output, e.message, phase_index)
                issue_ids.append(issue.id)
                continue

            record = self.file_manager.get_file(operation.path)
            await self._broadcast(
                EventType.FILE_UPDATED if existed else EventType.FILE_GENERATED,
                {
                    "path": operation.path,
                    "purpose": record.purpose if record else output.file_purpose,
                    "size": record.size if record else 0,
                    "phase_index": phase_index,
                },
            )
            if operation.path not in touched:
                touched.append(operation.path)

        return touched, issue_ids

    async def _skip_output(self, output: FileOutput, reason: str, phase_index: int) -> Issue:
        logger.warning(
            "file_output_skipped",
            session_id=self.session_id,
            path=output.file_path,
            reason=reason,
        )
        await self._broadcast(
            EventType.FILE_SKIPPED,
            {"path": output.file_path, "reason": reason, "phase_index": phase_index},
        )
        return await self._record_issue(
            Issue(
                message=f"Skipped {output.file_path}: {reason}",
                severity=IssueSeverity.WARNING,
                source=IssueSource.VALIDATION,
                phase_index=phase_index,
                file_path=output.file_path,
            )
        )

    async def _sync_sandbox(self, paths: list[str], phase_index: int) -> list[str]:
        """Write the given files to the sandbox, if one is attached.

        Returns:
            Ids of issues raised (empty on success).
        """
        if self.sandbox is None or not paths:
            return []

        files = {
            path: record.content
            for path in paths
            if (record := self.file_manager.get_file(path)) is not None
        }
        try:
            await self._with_retry(
                "write_files",
                lambda: self._locked(lambda: self.sandbox.write_files(files)),
                timeout=self.settings.sandbox_command_timeout_seconds,
            )
        except RetryExhaustedError as e:
            issue = await self._record_issue(self._issue_from_failure(e, phase_index=phase_index))
            return [issue.id]
        except ValidationError as e:
            issue = await self._record_issue(
                Issue(
                    message=f"Sandbox rejected files: {e.message}",
                    severity=IssueSeverity.WARNING,
                    source=IssueSource.SANDBOX,
                    phase_index=phase_index,
                )
            )
            return [issue.id]
        return []

    async def _run_command(self, command: str, phase_index: int) -> CommandResult:
        timeout = self.settings.sandbox_command_timeout_seconds
        result = await self._with_retry(
            f"command:{command}",
            lambda: self._locked(lambda: self.sandbox.execute_command(command, timeout=timeout)),
            # The backend reports its own timeout; this only bounds a hung call.
            timeout=timeout + 30,
        )
        await self._broadcast(
            EventType.COMMAND_COMPLETED,
            {
                "command": command,
                "exit_code": result.exit_code,
                "timed_out": result.timed_out,
                "phase_index": phase_index,
            },
        )
        return result

    async def _record_issue(self, issue: Issue) -> Issue:
        self.state_manager.record_issue(issue)
        await self._broadcast(EventType.ISSUE_RAISED, {"issue": issue.model_dump(mode="json")})
        return issue

    def _issue_from_failure(self, error: RetryExhaustedError, *, phase_index: int | None) -> Issue:
        cause = error.cause
        if isinstance(cause, TimeoutError):
            source = IssueSource.TIMEOUT
        elif isinstance(cause, ModelOutputError):
            source = IssueSource.MODEL
        elif isinstance(cause, SandboxError) or _is_sandbox_step(error.label):
            source = IssueSource.SANDBOX
        else:
            source = IssueSource.MODEL
        return Issue(
            message=f"{error.label} failed after retries: {cause}",
            severity=IssueSeverity.BLOCKING,
            source=source,
            phase_index=phase_index,
        )

    def _issue_from_command(self, command: str, result: CommandResult, phase_index: int) -> Issue:
        output = (result.stderr or result.stdout).strip().splitlines()
        tail = "\n".join(output[-OUTPUT_TAIL_LINES:])
        if result.timed_out:
            message = f"`{command}` timed out"
            source = IssueSource.TIMEOUT
        else:
            message = f"`{command}` exited with code {result.exit_code}"
            source = IssueSource.SANDBOX
        if tail:
            message = f"{message}:\n{tail}"
        return Issue(
            message=message,
            severity=IssueSeverity.BLOCKING,
            source=source,
            phase_index=phase_index,
        )

    async def _broadcast(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.broadcast(event_type, payload)

    def _summarize(self, final_state: OrchestratorState) -> GenerationSummary:
        state = self.state_manager.get_state()
        completed = [p.index for p in self._run_phases if p.status == PhaseStatus.COMPLETED]
        failed = [p.index for p in self._run_phases if p.status == PhaseStatus.FAILED]
        unresolved = self.state_manager.unresolved_issues(blocking_only=True)

        if final_state["cancelled"] or self._is_cancelled():
            status = GenerationStatus.CANCELLED
        elif final_state["blueprint_failed"]:
            status = GenerationStatus.FAILED
        elif failed or unresolved:
            status = GenerationStatus.PARTIAL if completed else GenerationStatus.FAILED
        else:
            status = GenerationStatus.COMPLETED

        summary = GenerationSummary(
            session_id=self.session_id,
            status=status,
            completed_phases=completed,
            failed_phases=failed,
            unresolved_issues=unresolved,
            files=list(state.files),
            phases=list(self._run_phases),
        )
        logger.info(
            "generation_summary",
            session_id=self.session_id,
            status=status.value,
            completed_phases=len(completed),
            failed_phases=len(failed),
            unresolved_issues=len(unresolved),
        )
        return summary


def _is_sandbox_step(label: str) -> bool:
    return label in SANDBOX_STEPS or label.startswith("command:")


def _merge(existing: list[str], new: list[str]) -> list[str]:
    return existing + [path for path in new if path not in existing]
