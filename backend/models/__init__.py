"""Models module for Pydantic schemas.

This module exposes the domain models used across the backend.
"""

from models.schemas import (
    AgentInitArgs,
    Blueprint,
    BlueprintPhase,
    CodeGenState,
    FileOperation,
    FileOperationKind,
    FileOutput,
    FileRecord,
    FileStatus,
    FileTreeNode,
    GenerationStatus,
    GenerationSummary,
    Issue,
    IssueSeverity,
    IssueSource,
    PhaseState,
    PhaseStatus,
    StateSnapshot,
    TemplateDescription,
    TemplateDetails,
    TemplateFile,
)

__all__ = [
    "AgentInitArgs",
    "Blueprint",
    "BlueprintPhase",
    "CodeGenState",
    "FileOperation",
    "FileOperationKind",
    "FileOutput",
    "FileRecord",
    "FileStatus",
    "FileTreeNode",
    "GenerationStatus",
    "GenerationSummary",
    "Issue",
    "IssueSeverity",
    "IssueSource",
    "PhaseState",
    "PhaseStatus",
    "StateSnapshot",
    "TemplateDescription",
    "TemplateDetails",
    "TemplateFile",
]
