"""Read-only view of a session used to build prompts and file trees.

A GenerationContext is assembled from the template, the live file set and the
current state whenever the orchestrator or a client needs a consistent
picture of the project. It never mutates its inputs.
"""

from dataclasses import dataclass, field
from typing import Any

from codegen.paths import ancestor_directories, normalize_path, parent_directory
from models.schemas import (
    Blueprint,
    CodeGenState,
    FileOutput,
    FileRecord,
    FileTreeNode,
    Issue,
    PhaseState,
    TemplateDetails,
)

REDACTED_PLACEHOLDER = "[redacted]"


@dataclass
class GenerationContext:
    """Snapshot of everything a generation step may look at.

    Attributes:
        query: The user's original request.
        blueprint: The current plan, or None before blueprint synthesis.
        template_details: The immutable starting template.
        config: Free-form session configuration.
        all_files: Generated files, possibly with unnormalized or duplicate paths.
        phase_history: Completed phase records, oldest first.
        issues: All recorded issues.
    """

    query: str
    blueprint: Blueprint | None
    template_details: TemplateDetails
    config: dict[str, Any] = field(default_factory=dict)
    all_files: list[FileOutput] = field(default_factory=list)
    phase_history: list[PhaseState] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)

    @classmethod
    def from_sources(
        cls,
        template_details: TemplateDetails,
        files: list[FileRecord],
        state: CodeGenState,
    ) -> "GenerationContext":
        return cls(
            query=state.query,
            blueprint=state.blueprint,
            template_details=template_details,
            config=dict(state.config),
            all_files=[
                FileOutput(file_path=record.path, file_contents=record.content, file_purpose=record.purpose)
                for record in files
            ],
            phase_history=list(state.phase_history),
            issues=list(state.issues),
        )

    def get_file_tree(self) -> FileTreeNode:
        """Synthesize the project tree from the template and the live files.

        Every call works on a fresh directory index, so the returned tree
        shares no objects with the template. Paths escaping the project root
        are dropped. Duplicate paths yield one entry. Each directory lists its
        subdirectories first, then its files, each group sorted by path.
        """
        directories: set[str] = {""}
        files: dict[str, None] = {}

        def add_directory(path: str) -> None:
            directories.update(ancestor_directories(path))
            directories.add(path)

        def add_file(path: str) -> None:
            directories.update(ancestor_directories(path))
            files[path] = None

        def index_template(node: FileTreeNode) -> None:
            normalized = normalize_path(node.path)
            if normalized is None:
                return
            if node.type == "directory":
                add_directory(normalized)
                for child in node.children or []:
                    index_template(child)
            elif normalized:
                add_file(normalized)

        index_template(self.template_details.file_tree)

        for template_file in self.template_details.files:
            normalized = normalize_path(template_file.file_path)
            if normalized:
                add_file(normalized)

        for output in self.all_files:
            normalized = normalize_path(output.file_path)
            if normalized:
                add_file(normalized)

        children: dict[str, tuple[list[str], list[str]]] = {path: ([], []) for path in directories}
        for path in directories:
            if path:
                children[parent_directory(path)][0].append(path)
        for path in files:
            # A directory already claims this path.
            if path in directories:
                continue
            children[parent_directory(path)][1].append(path)

        def render(path: str) -> FileTreeNode:
            subdirectories, leaves = children[path]
            return FileTreeNode(
                path=path,
                type="directory",
                children=[render(sub) for sub in sorted(subdirectories)]
                + [FileTreeNode(path=leaf, type="file") for leaf in sorted(leaves)],
            )

        return render("")

    def get_files(self) -> list[FileOutput]:
        """Return template seed files and generated files, one per path.

        Later entries replace the content of earlier ones with the same
        normalized path but keep the first-seen position.
        """
        merged: dict[str, FileOutput] = {}
        sources = [
            FileOutput(file_path=f.file_path, file_contents=f.file_contents)
            for f in self.template_details.files
        ] + list(self.all_files)

        for output in sources:
            normalized = normalize_path(output.file_path)
            if not normalized:
                continue
            merged[normalized] = output.model_copy(update={"file_path": normalized})
        return list(merged.values())

    def get_file(self, path: str) -> FileOutput | None:
        normalized = normalize_path(path)
        if not normalized:
            return None
        for output in self.get_files():
            if output.file_path == normalized:
                return output
        return None

    def is_protected(self, path: str) -> bool:
        """Return True if generation must never create or overwrite ``path``.

        An entry protects everything beneath it when it ends with "/" or names
        a directory of the template, so "node_modules" covers
        "node_modules/x.js" just as "node_modules/" does.
        """
        normalized = normalize_path(path)
        if normalized is None:
            return True
        template_directories = self._template_directories()
        for entry in [*self.template_details.dont_touch_files, *self.template_details.redacted_files]:
            protected = normalize_path(entry)
            if protected is None:
                continue
            if normalized == protected:
                return True
            is_directory = entry.endswith("/") or protected in template_directories
            if is_directory and normalized.startswith(f"{protected}/"):
                return True
        return False

    def _template_directories(self) -> set[str]:
        directories: set[str] = set()

        def visit(node: FileTreeNode) -> None:
            if node.type != "directory":
                return
            normalized = normalize_path(node.path)
            if normalized is None:
                return
            if normalized:
                directories.update(ancestor_directories(normalized))
                directories.add(normalized)
            for child in node.children or []:
                visit(child)

        visit(self.template_details.file_tree)
        for template_file in self.template_details.files:
            normalized = normalize_path(template_file.file_path)
            if normalized:
                directories.update(ancestor_directories(normalized))
        directories.discard("")
        return directories

    def is_redacted(self, path: str) -> bool:
        normalized = normalize_path(path)
        return normalized is not None and normalized in {
            normalize_path(entry) for entry in self.template_details.redacted_files
        }

    def visible_files(self) -> list[FileOutput]:
        """Files safe to expose to the model; redacted contents are hidden."""
        return [
            output.model_copy(update={"file_contents": REDACTED_PLACEHOLDER})
            if self.is_redacted(output.file_path)
            else output
            for output in self.get_files()
        ]

    def unresolved_issues(self, *, blocking_only: bool = False) -> list[Issue]:
        return [
            issue
            for issue in self.issues
            if not issue.resolved and (not blocking_only or issue.severity == "blocking")
        ]
