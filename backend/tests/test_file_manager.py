"""Tests for codegen/file_manager.py -- the authoritative file store.

Covers path and content validation, create/update/delete semantics, status
tracking, the operation log, and JSON export/import.
"""

import json

import pytest

from codegen.file_manager import FileManager, file_extension
from config import Settings
from errors import (
    ContentTooLargeError,
    DisallowedExtensionError,
    ImportFailedError,
    InvalidContentTypeError,
    InvalidPathError,
    PathTooLongError,
    ProjectFileNotFoundError,
)
from models.schemas import FileOperationKind, FileOutput, FileStatus


@pytest.fixture()
def manager() -> FileManager:
    return FileManager(
        max_file_size_bytes=1_000_000,
        allowed_extensions=["js", "ts", "tsx", "jsx", "json", "md", "css", "html"],
    )


# =========================================================================
# create_file
# =========================================================================


class TestCreateFile:
    def test_creates_new_file(self, manager: FileManager) -> None:
        operation = manager.create_file("test.js", 'console.log("hello");')

        assert operation.path == "test.js"
        assert operation.content == 'console.log("hello");'
        assert operation.operation == FileOperationKind.CREATE
        assert operation.timestamp > 0

        record = manager.get_file("test.js")
        assert record is not None
        assert record.status == FileStatus.CREATED
        assert record.size == len('console.log("hello");')

    def test_path_is_normalized(self, manager: FileManager) -> None:
        operation = manager.create_file("./src\\components//Button.tsx", "export {}")
        assert operation.path == "src/components/Button.tsx"
        assert manager.file_exists("src/components/Button.tsx")

    def test_existing_path_becomes_modified(self, manager: FileManager) -> None:
        manager.create_file("src/App.tsx", "v1", purpose="root component")
        operation = manager.create_file("/src/App.tsx", "v2")

        assert operation.operation == FileOperationKind.UPDATE
        record = manager.get_file("src/App.tsx")
        assert record is not None
        assert record.content == "v2"
        assert record.status == FileStatus.MODIFIED
        assert record.purpose == "root component"
        assert manager.get_file_count() == 1

    def test_size_counts_utf8_bytes(self, manager: FileManager) -> None:
        manager.create_file("i18n.json", '{"greeting": "héllo"}')
        record = manager.get_file("i18n.json")
        assert record is not None
        assert record.size == len('{"greeting": "héllo"}'.encode())

    @pytest.mark.parametrize("path", ["", "   ", ".", "/", "src/.."])
    def test_invalid_path(self, manager: FileManager, path: str) -> None:
        with pytest.raises(InvalidPathError, match="Invalid file path"):
            manager.create_file(path, "content")

    @pytest.mark.parametrize("path", ["../secrets.js", "src/../../etc/passwd.js"])
    def test_path_escaping_root(self, manager: FileManager, path: str) -> None:
        with pytest.raises(InvalidPathError):
            manager.create_file(path, "content")

    def test_path_too_long(self, manager: FileManager) -> None:
        with pytest.raises(PathTooLongError, match="File path too long"):
            manager.create_file("a" * 498 + ".js", "content")

    def test_disallowed_extension(self, manager: FileManager) -> None:
        with pytest.raises(DisallowedExtensionError, match="File extension not allowed: exe") as exc_info:
            manager.create_file("test.exe", "content")
        assert exc_info.value.extension == "exe"

    def test_extension_check_is_case_insensitive(self, manager: FileManager) -> None:
        manager.create_file("README.MD", "# Title")
        assert manager.file_exists("README.MD")

    def test_content_too_large(self, manager: FileManager) -> None:
        with pytest.raises(ContentTooLargeError, match="File content too large"):
            manager.create_file("test.js", "a" * 1_000_001)

    def test_content_at_limit_is_accepted(self, manager: FileManager) -> None:
        manager.create_file("test.js", "a" * 1_000_000)
        assert manager.get_file_count() == 1

    def test_non_string_content(self, manager: FileManager) -> None:
        with pytest.raises(InvalidContentTypeError, match="File content must be a string"):
            manager.create_file("test.js", 123)  # type: ignore[arg-type]

    def test_binary_content(self, manager: FileManager) -> None:
        with pytest.raises(InvalidContentTypeError):
            manager.create_file("test.js", "abc\x00def")

    def test_lone_surrogate_content(self, manager: FileManager) -> None:
        with pytest.raises(InvalidContentTypeError, match="valid Unicode"):
            manager.create_file("a.ts", "x\udc80y")
        assert not manager.file_exists("a.ts")
        assert manager.get_operations() == []

    def test_rejected_write_leaves_state_untouched(self, manager: FileManager) -> None:
        manager.create_file("test.js", "original")
        with pytest.raises(ContentTooLargeError):
            manager.create_file("test.js", "a" * 1_000_001)
        record = manager.get_file("test.js")
        assert record is not None
        assert record.content == "original"
        assert len(manager.get_operations()) == 1


# =========================================================================
# update / delete
# =========================================================================


class TestUpdateFile:
    def test_updates_existing_file(self, manager: FileManager) -> None:
        manager.create_file("test.js", "original content")
        operation = manager.update_file("test.js", "updated content")

        assert operation.path == "test.js"
        assert operation.content == "updated content"
        assert operation.operation == FileOperationKind.UPDATE
        assert manager.get_file("test.js").status == FileStatus.MODIFIED  # type: ignore[union-attr]

    def test_missing_file(self, manager: FileManager) -> None:
        with pytest.raises(ProjectFileNotFoundError, match="File not found: nonexistent.js"):
            manager.update_file("nonexistent.js", "content")


class TestDeleteFile:
    def test_deletes_existing_file(self, manager: FileManager) -> None:
        manager.create_file("test.js", "content")
        operation = manager.delete_file("test.js")

        assert operation.path == "test.js"
        assert operation.operation == FileOperationKind.DELETE
        assert operation.content == ""
        assert not manager.file_exists("test.js")

    def test_delete_is_logged(self, manager: FileManager) -> None:
        manager.create_file("test.js", "content")
        manager.delete_file("test.js")
        kinds = [op.operation for op in manager.get_operations()]
        assert kinds == [FileOperationKind.CREATE, FileOperationKind.DELETE]

    def test_operation_log_is_bounded(self) -> None:
        manager = FileManager(max_operations=3)
        for name in ("a", "b", "c", "d", "e"):
            manager.create_file(f"{name}.ts", name)

        assert [op.path for op in manager.get_operations()] == ["c.ts", "d.ts", "e.ts"]
        assert manager.get_file_count() == 5

    def test_missing_file(self, manager: FileManager) -> None:
        with pytest.raises(ProjectFileNotFoundError, match="File not found: nonexistent.js"):
            manager.delete_file("nonexistent.js")


# =========================================================================
# Queries
# =========================================================================


class TestQueries:
    def test_get_file_missing(self, manager: FileManager) -> None:
        assert manager.get_file("nonexistent.js") is None

    def test_get_all_files_in_insertion_order(self, manager: FileManager) -> None:
        manager.create_file("file2.ts", "content2")
        manager.create_file("file1.js", "content1")
        assert [f.path for f in manager.get_all_files()] == ["file2.ts", "file1.js"]

    def test_get_files_by_status(self, manager: FileManager) -> None:
        manager.create_file("file1.js", "content1")
        manager.create_file("file2.ts", "content2")
        manager.update_file("file1.js", "updated content")

        created = manager.get_files_by_status("created")
        modified = manager.get_files_by_status(FileStatus.MODIFIED)
        assert [f.path for f in created] == ["file2.ts"]
        assert [f.path for f in modified] == ["file1.js"]

    def test_counts(self, manager: FileManager) -> None:
        assert manager.get_file_count() == 0
        manager.create_file("file1.js", "content1")
        manager.create_file("file2.ts", "content2")
        manager.create_file("file3.json", "{}")
        assert manager.get_file_count() == 3
        assert manager.get_paths() == ["file1.js", "file2.ts", "file3.json"]

    def test_clear_all_files(self, manager: FileManager) -> None:
        manager.create_file("file1.js", "content1")
        manager.clear_all_files()
        assert manager.get_all_files() == []

    def test_apply_output(self, manager: FileManager) -> None:
        manager.apply_output(FileOutput(filePath="src/App.tsx", fileContents="app", filePurpose="root"))
        record = manager.get_file("src/App.tsx")
        assert record is not None
        assert record.purpose == "root"


class TestFileExtension:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("src/App.tsx", "tsx"),
            ("archive.tar.gz", "gz"),
            (".gitignore", "gitignore"),
            ("docker/Dockerfile", "dockerfile"),
            ("a.b/README", "readme"),
        ],
    )
    def test_extension(self, path: str, expected: str) -> None:
        assert file_extension(path) == expected


class TestFromSettings:
    def test_limits_come_from_settings(self) -> None:
        settings = Settings(max_file_size_bytes=10, allowed_extensions="ts,md")
        manager = FileManager.from_settings(settings)
        manager.create_file("a.ts", "short")
        with pytest.raises(ContentTooLargeError):
            manager.create_file("b.ts", "far too long for ten bytes")
        with pytest.raises(DisallowedExtensionError):
            manager.create_file("c.js", "x")

    def test_operation_history_from_settings(self) -> None:
        manager = FileManager.from_settings(Settings(max_operation_history=2))
        for name in ("a", "b", "c"):
            manager.create_file(f"{name}.ts", name)
        assert [op.path for op in manager.get_operations()] == ["b.ts", "c.ts"]


# =========================================================================
# Export / import
# =========================================================================


class TestExportImport:
    def test_export_shape(self, manager: FileManager) -> None:
        manager.create_file("src/index.ts", "export {};")
        exported = json.loads(manager.export_to_json())

        assert len(exported) == 1
        entry = exported[0]
        assert entry["path"] == "src/index.ts"
        assert entry["content"] == "export {};"
        assert entry["status"] == "created"
        assert entry["size"] == 10
        assert "lastModified" in entry

    def test_round_trip_preserves_files(self, manager: FileManager) -> None:
        manager.create_file("a.ts", "a")
        manager.create_file("b.md", "# b")
        manager.update_file("a.ts", "a2")
        data = manager.export_to_json()

        restored = FileManager()
        assert restored.import_from_json(data) == 2
        assert [f.path for f in restored.get_all_files()] == ["a.ts", "b.md"]
        assert restored.get_file("a.ts").status == FileStatus.MODIFIED  # type: ignore[union-attr]
        assert restored.get_file("a.ts").content == "a2"  # type: ignore[union-attr]

    def test_import_replaces_existing_files(self, manager: FileManager) -> None:
        manager.create_file("old.ts", "old")
        manager.import_from_json(json.dumps([{"path": "new.ts", "content": "new"}]))
        assert manager.get_paths() == ["new.ts"]

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            '{"path": "a.ts"}',
            '[{"path": "a.ts"}]',
            '[{"path": "a.ts", "content": 5}]',
        ],
    )
    def test_malformed_payload(self, manager: FileManager, payload: str) -> None:
        manager.create_file("keep.ts", "x")
        with pytest.raises(ImportFailedError):
            manager.import_from_json(payload)
        assert manager.get_file_count() == 0

    def test_invalid_record_imports_nothing(self, manager: FileManager) -> None:
        payload = json.dumps([
            {"path": "ok.ts", "content": "fine"},
            {"path": "../escape.ts", "content": "bad"},
        ])
        with pytest.raises(ImportFailedError):
            manager.import_from_json(payload)
        assert manager.get_all_files() == []

    def test_lone_surrogate_import_fails(self, manager: FileManager) -> None:
        payload = json.dumps([{"path": "a.ts", "content": "x\udc80y"}])
        with pytest.raises(ImportFailedError):
            manager.import_from_json(payload)
        assert manager.get_all_files() == []
