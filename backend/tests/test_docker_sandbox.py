"""Tests for sandbox/docker_sandbox.py using a mocked Docker SDK client.

No Docker daemon is needed: the client and container are MagicMocks and the
blocking SDK calls still go through the executor path.
"""

import tarfile
import time
from io import BytesIO
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from docker.errors import DockerException, NotFound

from errors import InvalidPathError, SandboxExecutionError, SandboxNotReadyError
from sandbox.base import TIMEOUT_EXIT_CODE, SandboxStatus
from sandbox.docker_sandbox import CONTAINER_CONFIG, SANDBOX_UID, DockerSandboxClient


def _exec_result(stdout: bytes | None = b"", stderr: bytes | None = b"", exit_code: int = 0) -> Any:
    return SimpleNamespace(output=(stdout, stderr), exit_code=exit_code)


def _make_client(container: MagicMock | None = None) -> tuple[MagicMock, MagicMock]:
    container = container or MagicMock()
    container.id = "abc123def4567890"
    client = MagicMock()
    client.containers.run.return_value = container
    return client, container


async def _provisioned(**kwargs: Any) -> tuple[DockerSandboxClient, MagicMock, MagicMock]:
    client, container = _make_client()
    sandbox = DockerSandboxClient("sess_1", client=client, **kwargs)
    await sandbox.provision()
    return sandbox, client, container


def _archive_members(archive: bytes) -> dict[str, tarfile.TarInfo]:
    with tarfile.open(fileobj=BytesIO(archive)) as tar:
        return {member.name: member for member in tar.getmembers()}


def _archive_file(archive: bytes, name: str) -> str:
    with tarfile.open(fileobj=BytesIO(archive)) as tar:
        extracted = tar.extractfile(name)
        assert extracted is not None
        return extracted.read().decode("utf-8")


# =========================================================================
# Provisioning
# =========================================================================


class TestProvision:
    async def test_provision_starts_container(self) -> None:
        sandbox, client, container = await _provisioned()

        assert sandbox.status == SandboxStatus.PROVISIONED
        assert sandbox.handle is not None
        assert sandbox.handle.sandbox_id == container.id
        assert sandbox.handle.backend == "docker"
        assert sandbox.handle.workspace_path == "/workspace"

        args, kwargs = client.containers.run.call_args
        assert args == ("codegen-sandbox:latest",)
        assert kwargs["name"] == "sandbox-sess_1"
        assert kwargs["working_dir"] == "/workspace"
        assert kwargs["environment"] == {"NODE_ENV": "development"}
        assert kwargs["cap_drop"] == CONTAINER_CONFIG["cap_drop"]

    async def test_provision_config_overrides(self) -> None:
        client, _ = _make_client()
        sandbox = DockerSandboxClient("sess_1", client=client)

        await sandbox.provision({"image": "custom:1", "environment": {"PORT": "5173"}})

        args, kwargs = client.containers.run.call_args
        assert args == ("custom:1",)
        assert kwargs["environment"] == {"NODE_ENV": "development", "PORT": "5173"}

    async def test_provision_failure(self) -> None:
        client, _ = _make_client()
        client.containers.run.side_effect = DockerException("daemon not running")
        sandbox = DockerSandboxClient("sess_1", client=client)

        with pytest.raises(SandboxExecutionError, match="Failed to create sandbox"):
            await sandbox.provision()
        assert sandbox.handle is None
        client.containers.get.assert_called_once_with("sandbox-sess_1")
        client.containers.get.return_value.remove.assert_called_once_with(force=True)

    async def test_provision_timeout_removes_container(self) -> None:
        client, container = _make_client()

        def slow_run(*args: Any, **kwargs: Any) -> MagicMock:
            time.sleep(0.3)
            return container

        client.containers.run.side_effect = slow_run
        sandbox = DockerSandboxClient("sess_1", client=client, provision_timeout=0.05)

        with pytest.raises(SandboxExecutionError, match="Failed to create sandbox"):
            await sandbox.provision()

        assert sandbox.handle is None
        client.containers.get.assert_called_once_with("sandbox-sess_1")
        client.containers.get.return_value.remove.assert_called_once_with(force=True)

    async def test_provision_cleanup_tolerates_missing_container(self) -> None:
        client, _ = _make_client()
        client.containers.run.side_effect = DockerException("image not found")
        client.containers.get.side_effect = NotFound("no such container")
        sandbox = DockerSandboxClient("sess_1", client=client)

        with pytest.raises(SandboxExecutionError, match="image not found"):
            await sandbox.provision()

    async def test_provision_cleanup_failure_keeps_original_error(self) -> None:
        client, _ = _make_client()
        client.containers.run.side_effect = DockerException("daemon not running")
        client.containers.get.side_effect = DockerException("daemon still not running")
        sandbox = DockerSandboxClient("sess_1", client=client)

        with pytest.raises(SandboxExecutionError, match="Failed to create sandbox: daemon not running"):
            await sandbox.provision()

    async def test_provision_twice_rejected(self) -> None:
        sandbox, _, _ = await _provisioned()
        with pytest.raises(SandboxNotReadyError):
            await sandbox.provision()


# =========================================================================
# File writes
# =========================================================================


class TestWriteFiles:
    async def test_writes_single_archive(self) -> None:
        sandbox, _, container = await _provisioned()

        await sandbox.write_files({
            "src/components/Card.tsx": "export const Card = 1;",
            "README.md": "# App",
        })

        container.put_archive.assert_called_once()
        destination, archive = container.put_archive.call_args.args
        assert destination == "/workspace"

        members = _archive_members(archive)
        assert set(members) == {"src", "src/components", "src/components/Card.tsx", "README.md"}
        assert members["src"].isdir()
        assert members["src/components/Card.tsx"].uid == SANDBOX_UID
        assert _archive_file(archive, "src/components/Card.tsx") == "export const Card = 1;"

    async def test_invalid_path_writes_nothing(self) -> None:
        sandbox, _, container = await _provisioned()

        with pytest.raises(InvalidPathError):
            await sandbox.write_files({"src/ok.ts": "ok", "../escape.ts": "bad"})

        container.put_archive.assert_not_called()

    async def test_empty_write_is_noop(self) -> None:
        sandbox, _, container = await _provisioned()
        await sandbox.write_files({})
        container.put_archive.assert_not_called()

    async def test_daemon_failure(self) -> None:
        sandbox, _, container = await _provisioned()
        container.put_archive.side_effect = DockerException("disk full")

        with pytest.raises(SandboxExecutionError, match="Failed to write files"):
            await sandbox.write_files({"a.ts": "x"})

    async def test_write_requires_provision(self) -> None:
        client, _ = _make_client()
        sandbox = DockerSandboxClient("sess_1", client=client)
        with pytest.raises(SandboxNotReadyError):
            await sandbox.write_files({"a.ts": "x"})


# =========================================================================
# Command execution
# =========================================================================


class TestExecuteCommand:
    async def test_demuxed_output(self) -> None:
        sandbox, _, container = await _provisioned()
        container.exec_run.return_value = _exec_result(b"built in 1.2s\n", b"\x1b[33mwarn\x1b[0m", 0)

        result = await sandbox.execute_command("npm run build")

        assert result.stdout == "built in 1.2s\n"
        assert result.stderr == "warn"
        assert result.exit_code == 0
        assert result.timed_out is False
        assert sandbox.status == SandboxStatus.IDLE

        args, kwargs = container.exec_run.call_args
        assert args == (["/bin/bash", "-lc", "npm run build"],)
        assert kwargs["workdir"] == "/workspace"
        assert kwargs["demux"] is True

    async def test_missing_streams(self) -> None:
        sandbox, _, container = await _provisioned()
        container.exec_run.return_value = _exec_result(None, None, 2)

        result = await sandbox.execute_command("npm test")

        assert result.stdout == ""
        assert result.stderr == ""
        assert result.exit_code == 2

    async def test_non_demuxed_output(self) -> None:
        sandbox, _, container = await _provisioned()
        container.exec_run.return_value = SimpleNamespace(output=b"combined", exit_code=0)

        result = await sandbox.execute_command("ls")

        assert result.stdout == "combined"

    async def test_strict_policy_rejects(self) -> None:
        sandbox, _, container = await _provisioned(allow_unrestricted_commands=False)

        result = await sandbox.execute_command("curl http://example.com")

        assert result.exit_code == 1
        assert result.stderr.startswith("Command rejected: ")
        container.exec_run.assert_not_called()
        assert sandbox.status == SandboxStatus.PROVISIONED

    async def test_timeout_returns_124(self) -> None:
        sandbox, _, container = await _provisioned()
        container.exec_run.side_effect = lambda *args, **kwargs: time.sleep(0.5)

        result = await sandbox.execute_command("npm run dev", timeout=0.05)

        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert result.timed_out is True
        assert sandbox.status == SandboxStatus.IDLE

    async def test_daemon_failure_raises(self) -> None:
        sandbox, _, container = await _provisioned()
        container.exec_run.side_effect = DockerException("connection aborted")

        with pytest.raises(SandboxExecutionError, match="Command execution failed"):
            await sandbox.execute_command("npm install")
        assert sandbox.status == SandboxStatus.IDLE

    async def test_execute_requires_provision(self) -> None:
        client, _ = _make_client()
        sandbox = DockerSandboxClient("sess_1", client=client)
        with pytest.raises(SandboxNotReadyError):
            await sandbox.execute_command("ls")


# =========================================================================
# Teardown
# =========================================================================


class TestTeardown:
    async def test_stops_and_removes(self) -> None:
        sandbox, _, container = await _provisioned()

        await sandbox.teardown()
        await sandbox.teardown()

        container.stop.assert_called_once_with(timeout=5)
        container.remove.assert_called_once_with(force=True)
        assert sandbox.status == SandboxStatus.TORN_DOWN

    async def test_already_removed_is_tolerated(self) -> None:
        sandbox, _, container = await _provisioned()
        container.stop.side_effect = NotFound("No such container")

        await sandbox.teardown()

        assert sandbox.status == SandboxStatus.TORN_DOWN

    async def test_daemon_failure_raises(self) -> None:
        sandbox, _, container = await _provisioned()
        container.stop.side_effect = DockerException("daemon gone")

        with pytest.raises(SandboxExecutionError, match="Failed to destroy sandbox"):
            await sandbox.teardown()
        assert sandbox.status == SandboxStatus.TORN_DOWN

    async def test_teardown_without_provision(self) -> None:
        client, _ = _make_client()
        sandbox = DockerSandboxClient("sess_1", client=client)

        await sandbox.teardown()

        assert sandbox.status == SandboxStatus.TORN_DOWN
        client.containers.run.assert_not_called()

    async def test_commands_rejected_after_teardown(self) -> None:
        sandbox, _, _ = await _provisioned()
        await sandbox.teardown()
        with pytest.raises(SandboxNotReadyError):
            await sandbox.execute_command("ls")
