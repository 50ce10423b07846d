"""Remote-runner sandbox backend.

RemoteSandboxClient proxies the SandboxService contract to a runner service
over HTTP:

    POST   /instances                  -> {"id", "workspacePath", "previewUrl"}
    POST   /instances/{id}/files       {"files": [{"path", "content"}]}
    POST   /instances/{id}/commands    {"command", "timeout"}
                                       -> {"stdout", "stderr", "exitCode", "timedOut"}
    DELETE /instances/{id}

Command policy, path validation and timeout reporting are applied locally so
the remote backend behaves exactly like the Docker one.
"""

from collections.abc import Mapping
from typing import Any, TypeVar

import httpx
import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field

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

# Extra seconds granted to the HTTP request beyond the command timeout.
REQUEST_GRACE_SECONDS = 5.0


class RunnerInstance(BaseModel):
    """Reply to ``POST /instances``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | int | None = None
    workspace_path: str | None = Field(default=None, alias="workspacePath")
    preview_url: str | None = Field(default=None, alias="previewUrl")


class RunnerCommandResult(BaseModel):
    """Reply to ``POST /instances/{id}/commands``."""

    model_config = ConfigDict(populate_by_name=True)

    stdout: str | None = None
    stderr: str | None = None
    exit_code: int = Field(default=1, alias="exitCode")
    timed_out: bool = Field(default=False, alias="timedOut")


ReplyT = TypeVar("ReplyT", bound=BaseModel)


def parse_reply(model: type[ReplyT], data: dict[str, Any], what: str) -> ReplyT:
    """Validate a runner reply.

    Raises:
        SandboxExecutionError: If the reply does not match ``model``.
    """
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise SandboxExecutionError(f"Runner returned a malformed {what} reply: {e.error_count()} errors") from e


class RemoteSandboxClient:
    """SandboxService backed by a remote runner service.

    Attributes:
        session_id: Session owning the sandbox.
        base_url: Runner service base URL.
        workspace_path: Project root reported to callers.
        provision_timeout: Seconds allowed for instance creation.
        command_timeout: Default seconds allowed per command.
        allow_unrestricted_commands: If False, the strict command policy applies.
    """

    backend_name = "remote"

    def __init__(
        self,
        session_id: str,
        *,
        base_url: str,
        token: str = "",
        workspace_path: str = "/workspace",
        provision_timeout: float = 60,
        command_timeout: float = 120,
        allow_unrestricted_commands: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.session_id = session_id
        self.base_url = base_url.rstrip("/")
        self.workspace_path = workspace_path
        self.provision_timeout = provision_timeout
        self.command_timeout = command_timeout
        self.allow_unrestricted_commands = allow_unrestricted_commands

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, headers=headers)
        if http_client is not None and headers:
            self._http.headers.update(headers)

        self._instance_id: str | None = None
        self._handle: SandboxHandle | None = None
        self._lifecycle = SandboxLifecycle(f"remote-{session_id}")

    @property
    def status(self) -> SandboxStatus:
        return self._lifecycle.status

    @property
    def handle(self) -> SandboxHandle | None:
        return self._handle

    async def provision(self, config: Mapping[str, Any] | None = None) -> SandboxHandle:
        self._lifecycle.begin_provision()
        body = {"sessionId": self.session_id, **dict(config or {})}

        data = await self._request("POST", "/instances", json=body, timeout=self.provision_timeout)
        instance = parse_reply(RunnerInstance, data, "instance")
        if instance.id is None or instance.id == "":
            raise SandboxExecutionError("Runner did not return an instance id")

        self._instance_id = str(instance.id)
        self._handle = SandboxHandle(
            sandbox_id=self._instance_id,
            backend=self.backend_name,
            workspace_path=instance.workspace_path or self.workspace_path,
            preview_url=instance.preview_url,
        )
        self._lifecycle.mark_provisioned()
        logger.info("remote_sandbox_provisioned", session_id=self.session_id, instance_id=self._instance_id)
        return self._handle

    async def write_files(self, files: Mapping[str, str]) -> None:
        self._lifecycle.require_ready("write files")

        payload: list[dict[str, str]] = []
        for path, content in files.items():
            is_valid, error_msg, resolved = validate_path(self.workspace_path, path)
            if not is_valid:
                raise InvalidPathError(f"{error_msg}: {path}")
            payload.append({
                "path": resolved[len(self.workspace_path):].lstrip("/"),
                "content": content,
            })

        if not payload:
            return

        await self._request(
            "POST",
            f"/instances/{self._instance_id}/files",
            json={"files": payload},
            timeout=self.command_timeout,
        )
        logger.debug("files_written", session_id=self.session_id, count=len(payload))

    async def execute_command(self, command: str, timeout: float | None = None) -> CommandResult:
        self._lifecycle.require_ready("execute commands")
        timeout = timeout or self.command_timeout

        is_valid, error_msg = validate_command(command, unrestricted=self.allow_unrestricted_commands)
        if not is_valid:
            logger.warning("command_rejected", session_id=self.session_id, reason=error_msg)
            return CommandResult(stdout="", stderr=f"Command rejected: {error_msg}", exit_code=1)

        self._lifecycle.begin_execution()
        try:
            data = await self._request(
                "POST",
                f"/instances/{self._instance_id}/commands",
                json={"command": command, "timeout": timeout},
                timeout=timeout + REQUEST_GRACE_SECONDS,
            )
        except httpx.TimeoutException:
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
        finally:
            self._lifecycle.end_execution()

        reply = parse_reply(RunnerCommandResult, data, "command")
        result = CommandResult(
            stdout=sanitize_output(reply.stdout or ""),
            stderr=sanitize_output(reply.stderr or ""),
            exit_code=TIMEOUT_EXIT_CODE if reply.timed_out else reply.exit_code,
            timed_out=reply.timed_out,
        )
        logger.debug(
            "command_executed",
            session_id=self.session_id,
            command=command[:50],
            exit_code=result.exit_code,
        )
        return result

    async def teardown(self) -> None:
        if self._lifecycle.status == SandboxStatus.TORN_DOWN:
            return

        instance_id = self._instance_id
        self._lifecycle.mark_torn_down()
        self._instance_id = None
        try:
            if instance_id is not None:
                try:
                    await self._request("DELETE", f"/instances/{instance_id}", timeout=self.provision_timeout)
                    logger.info("remote_sandbox_destroyed", session_id=self.session_id, instance_id=instance_id)
                except SandboxExecutionError as e:
                    if isinstance(e.__cause__, httpx.HTTPStatusError) and e.__cause__.response.status_code == 404:
                        logger.warning("sandbox_already_removed", session_id=self.session_id)
                    else:
                        raise
        finally:
            if self._owns_client:
                await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float,
    ) -> dict[str, Any]:
        """Send a request to the runner.

        Raises:
            httpx.TimeoutException: Propagated so callers can report timeouts.
            SandboxExecutionError: On HTTP error status or transport failure.
        """
        try:
            response = await self._http.request(method, path, json=json, timeout=timeout)
            response.raise_for_status()
        except httpx.TimeoutException:
            if path.endswith("/commands"):
                raise
            logger.error("remote_sandbox_timeout", session_id=self.session_id, path=path)
            raise SandboxExecutionError(f"Runner request timed out: {method} {path}") from None
        except httpx.HTTPStatusError as e:
            logger.error(
                "remote_sandbox_http_error",
                session_id=self.session_id,
                path=path,
                status_code=e.response.status_code,
            )
            raise SandboxExecutionError(
                f"Runner returned {e.response.status_code} for {method} {path}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("remote_sandbox_transport_error", session_id=self.session_id, path=path, error=str(e))
            raise SandboxExecutionError(f"Runner request failed: {e}") from e

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise SandboxExecutionError(f"Runner returned invalid JSON for {method} {path}") from e
        return data if isinstance(data, dict) else {}
