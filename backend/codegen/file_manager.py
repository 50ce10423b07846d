"""Authoritative in-memory file state for a generation session.

The FileManager owns every generated file of a session. All mutations go
through it so that paths are normalized, limits are enforced, and each change
is recorded as a FileOperation.
"""

import json
import time
from collections import deque

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from codegen.paths import normalize_path
from config import DEFAULT_ALLOWED_EXTENSIONS, Settings
from errors import (
    ContentTooLargeError,
    DisallowedExtensionError,
    ImportFailedError,
    InvalidContentTypeError,
    InvalidPathError,
    PathTooLongError,
    ProjectFileNotFoundError,
    ValidationError,
)
from models.schemas import (
    FileOperation,
    FileOperationKind,
    FileOutput,
    FileRecord,
    FileStatus,
)

logger = structlog.get_logger(__name__)


class _ExportedFile(BaseModel):
    """Wire shape of one record in an exported file set."""

    model_config = ConfigDict(populate_by_name=True)

    path: str
    content: str
    status: FileStatus = FileStatus.CREATED
    last_modified: float | None = Field(default=None, alias="lastModified")
    size: int | None = None


_EXPORT_ADAPTER = TypeAdapter(list[_ExportedFile])


def file_extension(path: str) -> str:
    """Return the lower-cased extension used for allow-list checks.

    The extension is the part of the basename after its last dot. A basename
    without a dot is checked as a whole (``Dockerfile`` -> ``dockerfile``).
    """
    basename = path.rsplit("/", 1)[-1]
    return basename.rsplit(".", 1)[-1].lower()


class FileManager:
    """Validated, normalized store of the files generated in one session.

    Usage:
        >>> manager = FileManager()
        >>> manager.create_file("src/App.tsx", "export default App;")
        >>> manager.update_file("src/App.tsx", "export default function App() {}")
        >>> manager.get_file("src/App.tsx").status
        <FileStatus.MODIFIED: 'modified'>

    Attributes:
        max_file_size_bytes: Largest accepted content, in UTF-8 bytes.
        max_path_length: Longest accepted path, in characters.
        allowed_extensions: Lower-cased extensions without leading dots.
        max_operations: Operations kept in the log; older ones are dropped.
    """

    def __init__(
        self,
        *,
        max_file_size_bytes: int = 1_000_000,
        max_path_length: int = 500,
        allowed_extensions: list[str] | None = None,
        max_operations: int = 1000,
    ) -> None:
        self.max_file_size_bytes = max_file_size_bytes
        self.max_path_length = max_path_length
        self.allowed_extensions = frozenset(
            ext.lstrip(".").lower()
            for ext in (allowed_extensions if allowed_extensions is not None else DEFAULT_ALLOWED_EXTENSIONS)
        )
        self._files: dict[str, FileRecord] = {}
        self._operations: deque[FileOperation] = deque(maxlen=max(1, max_operations))

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileManager":
        return cls(
            max_file_size_bytes=settings.max_file_size_bytes,
            max_path_length=settings.max_path_length,
            allowed_extensions=list(settings.allowed_extensions),
            max_operations=settings.max_operation_history,
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_file(self, path: str, content: str, purpose: str = "") -> FileOperation:
        """Create a file, or overwrite it if the path is already tracked.

        The first write of a path yields status ``created``; writing a path
        that already exists yields ``modified`` and an ``update`` operation.

        Raises:
            InvalidPathError: Empty path or a path escaping the project root.
            PathTooLongError: Path longer than ``max_path_length``.
            DisallowedExtensionError: Extension outside the allow-list.
            InvalidContentTypeError: Content is not text.
            ContentTooLargeError: Content larger than ``max_file_size_bytes``.
        """
        normalized = self._validate_path(path)
        size = self._validate_content(content)

        existing = self._files.get(normalized)
        if existing is not None:
            return self._write(
                existing.model_copy(
                    update={
                        "content": content,
                        "purpose": purpose or existing.purpose,
                        "status": FileStatus.MODIFIED,
                        "last_modified": time.time(),
                        "size": size,
                    }
                ),
                FileOperationKind.UPDATE,
            )

        record = FileRecord(path=normalized, content=content, purpose=purpose, size=size)
        return self._write(record, FileOperationKind.CREATE)

    def update_file(self, path: str, content: str) -> FileOperation:
        """Replace the content of a tracked file.

        Raises:
            ProjectFileNotFoundError: If the path is not tracked.
            ValidationError: If the path or content is rejected.
        """
        normalized = self._validate_path(path)
        size = self._validate_content(content)

        existing = self._files.get(normalized)
        if existing is None:
            raise ProjectFileNotFoundError(normalized)

        record = existing.model_copy(
            update={
                "content": content,
                "status": FileStatus.MODIFIED,
                "last_modified": time.time(),
                "size": size,
            }
        )
        return self._write(record, FileOperationKind.UPDATE)

    def delete_file(self, path: str) -> FileOperation:
        """Remove a file from the live set.

        The returned operation (also kept in the operation log) is the only
        remaining trace of the file.

        Raises:
            ProjectFileNotFoundError: If the path is not tracked.
        """
        normalized = normalize_path(path) if isinstance(path, str) else None
        if not normalized or normalized not in self._files:
            raise ProjectFileNotFoundError(normalized or str(path))

        del self._files[normalized]
        operation = FileOperation(path=normalized, content="", operation=FileOperationKind.DELETE)
        self._operations.append(operation)
        logger.debug("file_deleted", path=normalized)
        return operation

    def apply_output(self, output: FileOutput) -> FileOperation:
        """Create or update a file from a model-output record."""
        return self.create_file(output.file_path, output.file_contents, output.file_purpose)

    def clear_all_files(self) -> None:
        count = len(self._files)
        self._files.clear()
        logger.info("all_files_cleared", count=count)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_file(self, path: str) -> FileRecord | None:
        normalized = normalize_path(path)
        if not normalized:
            return None
        return self._files.get(normalized)

    def get_all_files(self) -> list[FileRecord]:
        return list(self._files.values())

    def get_files_by_status(self, status: FileStatus | str) -> list[FileRecord]:
        return [record for record in self._files.values() if record.status == status]

    def file_exists(self, path: str) -> bool:
        return self.get_file(path) is not None

    def get_file_count(self) -> int:
        return len(self._files)

    def get_paths(self) -> list[str]:
        return list(self._files)

    def get_operations(self) -> list[FileOperation]:
        """Return the retained mutations, oldest first."""
        return list(self._operations)

    # =========================================================================
    # Export / import
    # =========================================================================

    def export_to_json(self) -> str:
        """Serialize the live file set as a JSON array, in insertion order."""
        payload = [
            {
                "path": record.path,
                "content": record.content,
                "status": record.status.value,
                "lastModified": record.last_modified,
                "size": record.size,
            }
            for record in self._files.values()
        ]
        return json.dumps(payload, indent=2)

    def import_from_json(self, data: str) -> int:
        """Replace the live file set with an exported one.

        The existing set is cleared first. The payload is then decoded and
        every record validated before any of them is installed, so a failed
        import leaves the set empty rather than partially populated.

        Args:
            data: JSON produced by :meth:`export_to_json`.

        Returns:
            The number of files imported.

        Raises:
            ImportFailedError: Malformed JSON, wrong shape, or a record that
                fails path/content validation.
        """
        self.clear_all_files()

        try:
            entries = _EXPORT_ADAPTER.validate_json(data)
        except pydantic.ValidationError as e:
            logger.error("file_import_failed", error=str(e), error_count=e.error_count())
            raise ImportFailedError("Failed to import files: malformed payload") from e

        staged: dict[str, FileRecord] = {}
        for entry in entries:
            try:
                normalized = self._validate_path(entry.path)
                size = self._validate_content(entry.content)
            except ValidationError as e:
                logger.error("file_import_failed", path=entry.path, error=e.message)
                raise ImportFailedError(f"Failed to import files: {e.message}") from e

            staged[normalized] = FileRecord(
                path=normalized,
                content=entry.content,
                status=entry.status,
                last_modified=entry.last_modified if entry.last_modified is not None else time.time(),
                size=size,
            )

        self._files.update(staged)
        logger.info("files_imported", count=len(staged))
        return len(staged)

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_path(self, path: str) -> str:
        if not isinstance(path, str) or not path.strip():
            raise InvalidPathError("Invalid file path")

        if len(path) > self.max_path_length:
            raise PathTooLongError(f"File path too long: {len(path)} > {self.max_path_length}")

        normalized = normalize_path(path)
        if not normalized:
            raise InvalidPathError(f"Invalid file path: {path}")

        extension = file_extension(normalized)
        if extension not in self.allowed_extensions:
            raise DisallowedExtensionError(extension)

        return normalized

    def _validate_content(self, content: str) -> int:
        if not isinstance(content, str):
            raise InvalidContentTypeError("File content must be a string")
        if "\x00" in content:
            raise InvalidContentTypeError("File content must be text (contains NUL byte)")

        try:
            size = len(content.encode("utf-8"))
        except UnicodeEncodeError as e:
            raise InvalidContentTypeError("File content must be valid Unicode text") from e
        if size > self.max_file_size_bytes:
            raise ContentTooLargeError(f"File content too large: {size} bytes")
        return size

    def _write(self, record: FileRecord, kind: FileOperationKind) -> FileOperation:
        self._files[record.path] = record
        operation = FileOperation(path=record.path, content=record.content, operation=kind)
        self._operations.append(operation)
        logger.debug(
            "file_written",
            path=record.path,
            operation=kind.value,
            size=record.size,
        )
        return operation
