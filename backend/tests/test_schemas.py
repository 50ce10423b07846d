"""Tests for models/schemas.py -- Pydantic model validation."""

import pydantic
import pytest

from events.types import AgentEvent, EventType
from models.schemas import (
    AgentInitArgs,
    FileOutput,
    FileTreeNode,
    Issue,
    IssueSeverity,
    PhaseState,
    TemplateDetails,
)


class TestTemplateDetails:
    def test_accepts_camel_case_payload(self) -> None:
        template = TemplateDetails.model_validate({
            "name": "react-vite",
            "fileTree": {"path": "", "type": "directory", "children": [{"path": "index.html", "type": "file"}]},
            "files": [{"filePath": "index.html", "fileContents": "<div id=root></div>"}],
            "dontTouchFiles": ["package.json"],
            "redactedFiles": [".env"],
        })

        assert template.file_tree.children is not None
        assert template.file_tree.children[0].path == "index.html"
        assert template.files[0].file_path == "index.html"
        assert template.dont_touch_files == ["package.json"]
        assert template.redacted_files == [".env"]
        assert template.language == "typescript"

    def test_is_frozen(self) -> None:
        template = TemplateDetails(name="t")
        with pytest.raises(pydantic.ValidationError):
            template.name = "other"  # type: ignore[misc]

    def test_default_tree_is_empty_root(self) -> None:
        assert TemplateDetails(name="t").file_tree == FileTreeNode(path="", type="directory", children=[])


class TestFileOutput:
    def test_alias_and_field_names(self) -> None:
        by_alias = FileOutput.model_validate({"filePath": "a.ts", "fileContents": "x"})
        by_name = FileOutput(file_path="a.ts", file_contents="x")
        assert by_alias == by_name
        assert by_alias.file_purpose == ""

    def test_contents_required(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            FileOutput.model_validate({"filePath": "a.ts"})


class TestFileTreeNode:
    def test_rejects_unknown_type(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            FileTreeNode(path="a", type="symlink")  # type: ignore[arg-type]


class TestAgentInitArgs:
    @pytest.mark.parametrize("query", ["", "x" * 20001])
    def test_query_length_bounds(self, query: str) -> None:
        with pytest.raises(pydantic.ValidationError):
            AgentInitArgs(query=query)

    def test_defaults(self) -> None:
        args = AgentInitArgs(query="Build a blog")
        assert args.session_id == ""
        assert args.agent_mode == "deterministic"
        assert args.frameworks == []


class TestIssue:
    def test_generated_ids_are_unique(self) -> None:
        first, second = Issue(message="a"), Issue(message="b")
        assert first.id.startswith("issue_")
        assert first.id != second.id
        assert first.severity == IssueSeverity.BLOCKING
        assert first.resolved is False


class TestPhaseState:
    def test_is_immutable(self) -> None:
        record = PhaseState(index=0, name="Foundation", files_touched=("a.ts",))
        with pytest.raises(pydantic.ValidationError):
            record.name = "changed"  # type: ignore[misc]


class TestAgentEvent:
    def test_to_message(self) -> None:
        event = AgentEvent(type=EventType.FILE_GENERATED, session_id="sess_1", data={"path": "a.ts"})
        message = event.to_message()
        assert message["type"] == "file_generated"
        assert message["session_id"] == "sess_1"
        assert message["data"] == {"path": "a.ts"}
        assert isinstance(message["timestamp"], float)

    def test_unknown_event_type(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            AgentEvent(type="not_an_event", session_id="sess_1")  # type: ignore[arg-type]
