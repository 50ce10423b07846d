"""In-process Docker sandbox backend.

This module provides DockerSandboxClient, a SandboxService that runs one
container per session through the Docker SDK. All blocking SDK calls run in
the default executor under asyncio.wait_for so the event loop never stalls.
"""

import asyncio
import tarfile
import time
from collections.abc import Callable, Mapping
from io import BytesIO
from typing import Any, TypeVar

import docker
import structlog
from docker.errors import DockerException, NotFound

from errors import InvalidPathError, SandboxExecutionError
from sandbox.base import (
    TIMEOUT_EXIT_CODE,
    CommandResult,
    SandboxHandle,
    SandboxLifecycle,
    SandboxStatus,
)
from sandbox.security import sanitize_output, validate_command, validate_path

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# uid/gid of the "node" user in the sandbox image.
SANDBOX_UID = 1000

# Container security configuration
CONTAINER_CONFIG: dict[str, Any] = {
    "mem_limit": "2048m",
    "cpu_period": 100000,
    "cpu_quota": 50000,  # 50% of one CPU core
    "network_mode": "bridge",  # npm install needs the registry
    "security_opt": ["no-new-privileges"],
    "cap_drop": ["ALL"],
    "cap_add": ["CHOWN", "SETUID", "SETGID"],
    "user": "node",
}


class DockerSandboxClient:
    """SandboxService backed by a local Docker daemon.

    Attributes:
        session_id: Session owning the sandbox; used in the container name.
        image_name: Image the container is started from.
        workspace_path: Project root inside the container.
        provision_timeout: Seconds allowed for container start.
        command_timeout: Default seconds allowed per command.
        allow_unrestricted_commands: If False, the strict command policy applies.
    """

    backend_name = "docker"

    def __init__(
        self,
        session_id: str,
        *,
        image_name: str = "codegen-sandbox:latest",
        workspace_path: str = "/workspace",
        provision_timeout: float = 60,
        command_timeout: float = 120,
        allow_unrestricted_commands: bool = True,
        client: docker.DockerClient | None = None,
    ) -> None:
        self.session_id = session_id
        self.image_name = image_name
        self.workspace_path = workspace_path
        self.provision_timeout = provision_timeout
        self.command_timeout = command_timeout
        self.allow_unrestricted_commands = allow_unrestricted_commands
        self._client = client
        self._container: Any = None
        self._handle: SandboxHandle | None = None
        self._lifecycle = SandboxLifecycle(f"sandbox-{session_id}")

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    @property
    def container_name(self) -> str:
        return f"sandbox-{self.session_id}"

    @property
    def status(self) -> SandboxStatus:
        return self._lifecycle.status

    @property
    def handle(self) -> SandboxHandle | None:
        return self._handle

    async def provision(self, config: Mapping[str, Any] | None = None) -> SandboxHandle:
        """Start the session container.

        Args:
            config: Optional overrides: ``image`` and ``environment``.

        Raises:
            SandboxNotReadyError: If the sandbox was already provisioned.
            SandboxExecutionError: If the container cannot be started.
        """
        self._lifecycle.begin_provision()
        config = dict(config or {})
        image = config.get("image") or self.image_name
        environment = {"NODE_ENV": "development", **config.get("environment", {})}

        try:
            self._container = await self._run_blocking(
                self._create_container, image, environment, timeout=self.provision_timeout
            )
        except (DockerException, TimeoutError) as e:
            logger.error("sandbox_creation_failed", session_id=self.session_id, error=str(e))
            await self._remove_partial_container()
            raise SandboxExecutionError(f"Failed to create sandbox: {e}") from e

        self._handle = SandboxHandle(
            sandbox_id=self._container.id,
            backend=self.backend_name,
            workspace_path=self.workspace_path,
        )
        self._lifecycle.mark_provisioned()
        logger.info(
            "sandbox_created",
            session_id=self.session_id,
            container_id=self._container.id[:12],
            image=image,
        )
        return self._handle

    def _create_container(self, image: str, environment: dict[str, str]) -> Any:
        return self.client.containers.run(
            image,
            name=self.container_name,
            detach=True,
            remove=False,
            working_dir=self.workspace_path,
            environment=environment,
            **CONTAINER_CONFIG,
        )

    async def _remove_partial_container(self) -> None:
        """Force-remove a container a failed or timed-out start left behind.

        The daemon may have created the container even though ``run`` did not
        return in time, so the lookup goes by name. Cleanup failures are
        logged and never replace the original provisioning error.
        """
        try:
            await self._run_blocking(self._remove_by_name, self.container_name, timeout=self.provision_timeout)
            logger.info("sandbox_partial_container_removed", session_id=self.session_id)
        except NotFound:
            logger.debug("sandbox_no_partial_container", session_id=self.session_id)
        except (DockerException, TimeoutError) as e:
            logger.warning("sandbox_partial_cleanup_failed", session_id=self.session_id, error=str(e))

    def _remove_by_name(self, name: str) -> None:
        self.client.containers.get(name).remove(force=True)

    async def write_files(self, files: Mapping[str, str]) -> None:
        """Write files into the workspace as one tar archive.

        Raises:
            SandboxNotReadyError: Outside ``provisioned``/``idle``.
            InvalidPathError: If any path fails validation; nothing is written.
            SandboxExecutionError: If the daemon rejects the archive.
        """
        self._lifecycle.require_ready("write files")

        entries: list[tuple[str, bytes]] = []
        for path, content in files.items():
            is_valid, error_msg, resolved = validate_path(self.workspace_path, path)
            if not is_valid:
                raise InvalidPathError(f"{error_msg}: {path}")
            relative = resolved[len(self.workspace_path):].lstrip("/")
            entries.append((relative, content.encode("utf-8")))

        if not entries:
            return

        archive = _build_archive(entries)
        try:
            await self._run_blocking(
                self._container.put_archive, self.workspace_path, archive, timeout=self.command_timeout
            )
        except (DockerException, TimeoutError) as e:
            logger.error("sandbox_write_failed", session_id=self.session_id, error=str(e))
            raise SandboxExecutionError(f"Failed to write files: {e}") from e

        logger.debug("files_written", session_id=self.session_id, count=len(entries))

    async def execute_command(self, command: str, timeout: float | None = None) -> CommandResult:
        """Execute a shell command inside the workspace.

        Returns:
            CommandResult. Policy rejections have exit code 1, timeouts exit
            code 124 with ``timed_out=True``.

        Raises:
            SandboxNotReadyError: Outside ``provisioned``/``idle``.
            SandboxExecutionError: If the Docker daemon call fails.
        """
        self._lifecycle.require_ready("execute commands")
        timeout = timeout or self.command_timeout

        is_valid, error_msg = validate_command(command, unrestricted=self.allow_unrestricted_commands)
        if not is_valid:
            logger.warning("command_rejected", session_id=self.session_id, reason=error_msg)
            return CommandResult(stdout="", stderr=f"Command rejected: {error_msg}", exit_code=1)

        self._lifecycle.begin_execution()
        started = time.monotonic()
        try:
            result = await self._run_blocking(self._execute_in_container, command, timeout=timeout)
        except TimeoutError:
            logger.warning(
                "command_timeout",
                session_id=self.session_id,
                command=command[:50],
                timeout=timeout,
            )
            return CommandResult(
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )
        except DockerException as e:
            logger.error("command_failed", session_id=self.session_id, error=str(e))
            raise SandboxExecutionError(f"Command execution failed: {e}") from e
        finally:
            self._lifecycle.end_execution()

        logger.debug(
            "command_executed",
            session_id=self.session_id,
            command=command[:50],
            exit_code=result.exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    def _execute_in_container(self, command: str) -> CommandResult:
        result = self._container.exec_run(
            ["/bin/bash", "-lc", command],
            user="node",
            workdir=self.workspace_path,
            demux=True,
        )

        stdout_bytes: bytes = b""
        stderr_bytes: bytes = b""
        if isinstance(result.output, tuple):
            stdout_bytes = result.output[0] or b""
            stderr_bytes = result.output[1] or b""
        elif result.output:
            stdout_bytes = result.output

        return CommandResult(
            stdout=sanitize_output(stdout_bytes.decode("utf-8", errors="replace")),
            stderr=sanitize_output(stderr_bytes.decode("utf-8", errors="replace")),
            exit_code=result.exit_code,
        )

    async def teardown(self) -> None:
        """Stop and remove the container. Safe to call more than once."""
        if self._lifecycle.status == SandboxStatus.TORN_DOWN:
            return

        container = self._container
        self._lifecycle.mark_torn_down()
        self._container = None
        if container is None:
            return

        try:
            await self._run_blocking(self._destroy_container, container, timeout=self.provision_timeout)
            logger.info("sandbox_destroyed", session_id=self.session_id)
        except NotFound:
            logger.warning("sandbox_already_removed", session_id=self.session_id)
        except (DockerException, TimeoutError) as e:
            logger.error("sandbox_destroy_failed", session_id=self.session_id, error=str(e))
            raise SandboxExecutionError(f"Failed to destroy sandbox: {e}") from e

    @staticmethod
    def _destroy_container(container: Any) -> None:
        container.stop(timeout=5)
        container.remove(force=True)

    async def _run_blocking(self, func: Callable[..., T], *args: Any, timeout: float) -> T:
        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, func, *args),
            timeout=timeout,
        )


def _build_archive(entries: list[tuple[str, bytes]]) -> bytes:
    """Pack files, plus their parent directories, into an uncompressed tar."""
    stream = BytesIO()
    now = time.time()
    with tarfile.open(fileobj=stream, mode="w") as tar:
        directories: set[str] = set()
        for path, data in entries:
            parts = path.split("/")[:-1]
            for i in range(1, len(parts) + 1):
                directory = "/".join(parts[:i])
                if directory in directories:
                    continue
                directories.add(directory)
                dir_info = tarfile.TarInfo(name=directory)
                dir_info.type = tarfile.DIRTYPE
                dir_info.mode = 0o755
                dir_info.uid = dir_info.gid = SANDBOX_UID
                dir_info.mtime = now
                tar.addfile(dir_info)

            info = tarfile.TarInfo(name=path)
            info.size = len(data)
            info.mode = 0o644
            info.uid = info.gid = SANDBOX_UID
            info.mtime = now
            tar.addfile(info, BytesIO(data))
    return stream.getvalue()
