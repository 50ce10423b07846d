"""Pydantic schemas for the code generation domain.

This module defines the data models shared by the file manager, generation
context, state manager, phase orchestrator and the agent. All models use
Pydantic v2.
"""

import time
import uuid
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class FileStatus(StrEnum):
    """Lifecycle status of a tracked file."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class FileOperationKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FileRecord(BaseModel):
    """A file owned by the file manager.

    ``path`` is always normalized (root-relative, forward slashes).
    ``size`` is the UTF-8 byte length of ``content``.
    """

    path: str
    content: str
    purpose: str = ""
    status: FileStatus = FileStatus.CREATED
    last_modified: float = Field(default_factory=time.time)
    size: int = 0


class FileOperation(BaseModel):
    """Descriptor returned for every successful file mutation."""

    path: str
    content: str
    operation: FileOperationKind
    timestamp: float = Field(default_factory=time.time)


class FileOutput(BaseModel):
    """A file produced by the model-output boundary."""

    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath")
    file_contents: str = Field(alias="fileContents")
    file_purpose: str = Field(default="", alias="filePurpose")


class FileTreeNode(BaseModel):
    """A node of a project file tree.

    Directory nodes carry an ordered ``children`` list; file nodes carry None.
    """

    path: str
    type: Literal["file", "directory"]
    children: list["FileTreeNode"] | None = None


class TemplateDescription(BaseModel):
    selection: str = ""
    usage: str = ""


class TemplateFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath")
    file_contents: str = Field(alias="fileContents")


class TemplateDetails(BaseModel):
    """The starting project skeleton supplied at session start.

    Immutable: tree synthesis always works on copies of ``file_tree``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: TemplateDescription = Field(default_factory=TemplateDescription)
    file_tree: FileTreeNode = Field(
        default_factory=lambda: FileTreeNode(path="", type="directory", children=[]),
        alias="fileTree",
    )
    files: list[TemplateFile] = Field(default_factory=list)
    language: str = "typescript"
    deps: dict[str, str] = Field(default_factory=dict)
    frameworks: list[str] = Field(default_factory=list)
    dont_touch_files: list[str] = Field(default_factory=list, alias="dontTouchFiles")
    redacted_files: list[str] = Field(default_factory=list, alias="redactedFiles")


class BlueprintPhase(BaseModel):
    """One planned phase of generation."""

    name: str
    description: str = ""
    files: list[str] = Field(default_factory=list)


class Blueprint(BaseModel):
    """The high-level plan produced before per-phase generation begins."""

    title: str = ""
    description: str = ""
    phases: list[BlueprintPhase] = Field(default_factory=list)


class IssueSeverity(StrEnum):
    BLOCKING = "blocking"
    WARNING = "warning"


class IssueSource(StrEnum):
    VALIDATION = "validation"
    SANDBOX = "sandbox"
    MODEL = "model"
    REVIEW = "review"
    TIMEOUT = "timeout"


def _issue_id() -> str:
    return f"issue_{uuid.uuid4().hex[:10]}"


class Issue(BaseModel):
    """A recorded problem attached to generation state."""

    id: str = Field(default_factory=_issue_id)
    message: str
    severity: IssueSeverity = IssueSeverity.BLOCKING
    source: IssueSource = IssueSource.REVIEW
    phase_index: int | None = None
    file_path: str | None = None
    resolved: bool = False
    created_at: float = Field(default_factory=time.time)


class PhaseStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PhaseState(BaseModel):
    """History entry for one executed phase. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    index: int
    name: str
    status: PhaseStatus = PhaseStatus.COMPLETED
    files_touched: tuple[str, ...] = ()
    issues_discovered: tuple[str, ...] = ()
    issues_resolved: tuple[str, ...] = ()
    review_cycles_run: int = 0
    timestamp: float = Field(default_factory=time.time)


class AgentInitArgs(BaseModel):
    """Arguments for initializing a code generation session."""

    query: str = Field(min_length=1, max_length=20000)
    user_id: str = ""
    session_id: str = ""
    agent_mode: str = "deterministic"
    language: str | None = None
    frameworks: list[str] = Field(default_factory=list)


class CodeGenState(BaseModel):
    """Persisted generation state; the single source of truth for resumability."""

    agent_mode: str = "deterministic"
    query: str = ""
    user_id: str = ""
    session_id: str = ""
    initialized: bool = False
    current_phase: int = 0
    max_phases: int = 0
    files: list[str] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    blueprint: Blueprint | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    phase_history: list[PhaseState] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    last_updated: float = Field(default_factory=time.time)


class StateSnapshot(BaseModel):
    state: CodeGenState
    timestamp: float = Field(default_factory=time.time)
    version: int


class GenerationStatus(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GenerationSummary(BaseModel):
    """Result of a generate_all_files run.

    ``status`` is ``completed`` when every phase finished without unresolved
    blocking issues, ``partial`` when some phases failed or blocking issues
    remain, ``failed`` when no phase completed, ``cancelled`` when the run
    was cancelled.
    """

    session_id: str
    status: GenerationStatus
    completed_phases: list[int] = Field(default_factory=list)
    failed_phases: list[int] = Field(default_factory=list)
    unresolved_issues: list[Issue] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    phases: list[PhaseState] = Field(default_factory=list)
