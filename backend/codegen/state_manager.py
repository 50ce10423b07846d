"""Persisted generation state and its version history.

The StateManager owns the CodeGenState of one session. Every mutation
produces a new immutable copy and a versioned snapshot, so callers can
inspect or roll back to earlier versions.
"""

import json
import time
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field

from errors import (
    ImportFailedError,
    NotFoundError,
    NotInitializedError,
    StateTransitionError,
)
from models.schemas import (
    AgentInitArgs,
    Blueprint,
    CodeGenState,
    Issue,
    IssueSeverity,
    PhaseState,
    StateSnapshot,
)

logger = structlog.get_logger(__name__)


class _ExportedState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_state: CodeGenState | None = Field(default=None, alias="currentState")
    version: int = 0
    history: list[StateSnapshot] = Field(default_factory=list)
    timestamp: float | None = None


class StateManager:
    """State machine over ``current_phase`` with snapshot history.

    Transitions:
        initialize      -> initialized, current_phase = 0
        set_blueprint   -> blueprint and max_phases fixed
        advance_phase   -> current_phase += 1, phase record appended
        record_issue / resolve_issue
        update_config   -> merged into config (no-op before initialize)

    The session is complete when ``current_phase == max_phases`` and no
    blocking issue is unresolved.
    """

    def __init__(self, max_history: int = 50) -> None:
        self.max_history = max_history
        self._state: CodeGenState | None = None
        self._history: list[StateSnapshot] = []
        self._version = 0

    @property
    def is_initialized(self) -> bool:
        return self._state is not None and self._state.initialized

    @property
    def version(self) -> int:
        return self._version

    def get_state(self) -> CodeGenState:
        """Return a copy of the current state.

        Raises:
            NotInitializedError: If initialize() has not been called.
        """
        return self._require_state().model_copy(deep=True)

    # =========================================================================
    # Transitions
    # =========================================================================

    def initialize(
        self,
        args: AgentInitArgs,
        *,
        max_phases: int = 0,
        config: dict[str, Any] | None = None,
    ) -> CodeGenState:
        """Start a fresh state for a session, discarding any previous history."""
        now = time.time()
        self._state = CodeGenState(
            agent_mode=args.agent_mode,
            query=args.query,
            user_id=args.user_id,
            session_id=args.session_id,
            initialized=True,
            current_phase=0,
            max_phases=max_phases,
            config=dict(config or {}),
            created_at=now,
            last_updated=now,
        )
        self._version = 0
        self._history = []
        self._save_snapshot()
        logger.info(
            "state_initialized",
            session_id=args.session_id,
            agent_mode=args.agent_mode,
            max_phases=max_phases,
        )
        return self.get_state()

    def set_blueprint(self, blueprint: Blueprint, max_phases: int) -> CodeGenState:
        state = self._require_state()
        if state.current_phase > max_phases:
            raise StateTransitionError(
                f"Cannot set max_phases={max_phases} below current phase {state.current_phase}"
            )
        return self._commit(blueprint=blueprint, max_phases=max_phases)

    def set_files(self, paths: list[str]) -> CodeGenState:
        self._require_state()
        return self._commit(files=list(paths))

    def advance_phase(self, phase_state: PhaseState) -> CodeGenState:
        """Append a phase record and move to the next phase.

        Raises:
            StateTransitionError: If the last phase has already been reached
                or the record's index does not match the current phase.
        """
        state = self._require_state()
        if state.current_phase >= state.max_phases:
            raise StateTransitionError(
                f"Cannot advance past phase {state.current_phase} (max_phases={state.max_phases})"
            )
        if phase_state.index != state.current_phase:
            raise StateTransitionError(
                f"Phase record index {phase_state.index} does not match current phase {state.current_phase}"
            )

        updated = self._commit(
            current_phase=state.current_phase + 1,
            phase_history=[*state.phase_history, phase_state],
        )
        logger.info(
            "phase_advanced",
            session_id=state.session_id,
            phase_index=phase_state.index,
            status=phase_state.status.value,
            current_phase=updated.current_phase,
        )
        return updated

    def record_issue(self, issue: Issue) -> Issue:
        state = self._require_state()
        self._commit(issues=[*state.issues, issue])
        logger.info(
            "issue_recorded",
            session_id=state.session_id,
            issue_id=issue.id,
            severity=issue.severity.value,
            source=issue.source.value,
            phase_index=issue.phase_index,
        )
        return issue

    def resolve_issue(self, issue_id: str) -> Issue:
        """Mark an issue resolved.

        Raises:
            NotFoundError: If no issue has this id.
        """
        state = self._require_state()
        resolved: Issue | None = None
        issues: list[Issue] = []
        for issue in state.issues:
            if issue.id == issue_id:
                issue = issue.model_copy(update={"resolved": True})
                resolved = issue
            issues.append(issue)

        if resolved is None:
            raise NotFoundError(f"Issue '{issue_id}' not found")

        self._commit(issues=issues)
        logger.debug("issue_resolved", session_id=state.session_id, issue_id=issue_id)
        return resolved

    def update_config(self, patch: dict[str, Any]) -> None:
        """Merge ``patch`` into the config. Silently ignored before initialize()."""
        if not self.is_initialized:
            logger.debug("config_update_ignored", reason="not_initialized", keys=sorted(patch))
            return
        state = self._require_state()
        self._commit(config={**state.config, **patch})

    # =========================================================================
    # Queries
    # =========================================================================

    def get_config(self) -> dict[str, Any]:
        return dict(self._require_state().config)

    def unresolved_issues(self, *, blocking_only: bool = False) -> list[Issue]:
        return [
            issue
            for issue in self._require_state().issues
            if not issue.resolved
            and (not blocking_only or issue.severity == IssueSeverity.BLOCKING)
        ]

    def is_complete(self) -> bool:
        if not self.is_initialized:
            return False
        state = self._require_state()
        return (
            state.current_phase == state.max_phases
            and not self.unresolved_issues(blocking_only=True)
        )

    def validate_state(self) -> bool:
        """Check the state's structural invariants. False until initialized."""
        if not self.is_initialized:
            return False
        state = self._require_state()

        if not 0 <= state.current_phase <= state.max_phases:
            logger.error(
                "state_invalid",
                reason="phase_out_of_range",
                current_phase=state.current_phase,
                max_phases=state.max_phases,
            )
            return False
        if len(state.phase_history) != state.current_phase:
            logger.error("state_invalid", reason="phase_history_mismatch")
            return False
        ids = [issue.id for issue in state.issues]
        if len(ids) != len(set(ids)):
            logger.error("state_invalid", reason="duplicate_issue_ids")
            return False
        return True

    def get_state_statistics(self) -> dict[str, Any]:
        return {
            "current_version": self._version,
            "history_length": len(self._history),
            "has_state": self._state is not None,
            "current_phase": self._state.current_phase if self._state else None,
            "max_phases": self._state.max_phases if self._state else None,
            "issue_count": len(self._state.issues) if self._state else 0,
            "last_update": self._history[-1].timestamp if self._history else None,
        }

    # =========================================================================
    # History
    # =========================================================================

    def get_state_history(self) -> list[StateSnapshot]:
        return [snapshot.model_copy(deep=True) for snapshot in self._history]

    def get_state_at_version(self, version: int) -> CodeGenState | None:
        for snapshot in self._history:
            if snapshot.version == version:
                return snapshot.state.model_copy(deep=True)
        return None

    def rollback_to_previous(self) -> bool:
        """Restore the snapshot before the current one.

        Returns:
            False if there is no earlier snapshot.
        """
        if len(self._history) < 2:
            logger.warning("rollback_unavailable", history_length=len(self._history))
            return False

        self._history.pop()
        previous = self._history[-1]
        self._state = previous.state.model_copy(deep=True)
        self._version = previous.version
        logger.info("state_rolled_back", version=self._version)
        return True

    def rollback_to_version(self, version: int) -> bool:
        """Restore a retained snapshot and drop every later one.

        Returns:
            False if the version is not in the retained history.
        """
        target = next((s for s in self._history if s.version == version), None)
        if target is None:
            logger.warning("rollback_version_not_found", version=version)
            return False

        self._state = target.state.model_copy(deep=True)
        self._version = version
        self._history = [s for s in self._history if s.version <= version]
        logger.info("state_rolled_back", version=version)
        return True

    def clear_history(self) -> None:
        self._history = []
        logger.info("state_history_cleared")

    # =========================================================================
    # Export / import and persistence
    # =========================================================================

    def export_state(self) -> str:
        payload = {
            "currentState": self._state.model_dump(mode="json") if self._state else None,
            "version": self._version,
            "history": [snapshot.model_dump(mode="json") for snapshot in self._history],
            "timestamp": time.time(),
        }
        return json.dumps(payload, indent=2)

    def import_state(self, data: str) -> None:
        """Restore state, version and history from export_state() output.

        Raises:
            ImportFailedError: On malformed JSON or an invalid payload.
        """
        try:
            imported = _ExportedState.model_validate_json(data)
        except pydantic.ValidationError as e:
            logger.error("state_import_failed", error_count=e.error_count())
            raise ImportFailedError("Failed to import state") from e

        self._state = imported.current_state
        self._version = imported.version
        self._history = imported.history[-self.max_history:] if self.max_history else []
        logger.info(
            "state_imported",
            version=self._version,
            history_length=len(self._history),
        )

    def to_record(self) -> dict[str, Any]:
        """Serialize the current state for the persistence layer."""
        return self._require_state().model_dump(mode="json")

    def from_record(self, record: dict[str, Any]) -> CodeGenState:
        """Load a persisted state as a new baseline version.

        Raises:
            ImportFailedError: If the record is not a valid CodeGenState.
        """
        try:
            state = CodeGenState.model_validate(record)
        except pydantic.ValidationError as e:
            logger.error("state_record_invalid", error_count=e.error_count())
            raise ImportFailedError("Invalid state record") from e

        self._state = state
        self._version = 0
        self._history = []
        self._save_snapshot()
        logger.info("state_loaded", session_id=state.session_id, current_phase=state.current_phase)
        return self.get_state()

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_state(self) -> CodeGenState:
        if self._state is None or not self._state.initialized:
            raise NotInitializedError("State not initialized")
        return self._state

    def _commit(self, **updates: Any) -> CodeGenState:
        state = self._require_state()
        updates["last_updated"] = time.time()
        self._state = state.model_copy(update=updates, deep=True)
        self._version += 1
        self._save_snapshot()
        return self.get_state()

    def _save_snapshot(self) -> None:
        if self._state is None or self.max_history <= 0:
            return
        self._history.append(
            StateSnapshot(state=self._state.model_copy(deep=True), version=self._version)
        )
        if len(self._history) > self.max_history:
            self._history = self._history[-self.max_history:]
