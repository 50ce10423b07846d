"""Sandbox backend selection."""

import structlog

from config import Settings
from sandbox.base import SandboxService
from sandbox.docker_sandbox import DockerSandboxClient
from sandbox.remote_sandbox import RemoteSandboxClient

logger = structlog.get_logger(__name__)


def create_sandbox_service(session_id: str, settings: Settings) -> SandboxService:
    """Build the sandbox backend named by ``settings.sandbox_backend``.

    Args:
        session_id: Session that will own the sandbox.
        settings: Application settings; the backend choice is process-wide.

    Raises:
        ValueError: If the configured backend is unknown.
    """
    backend = settings.sandbox_backend
    common = {
        "workspace_path": settings.sandbox_workspace_path,
        "provision_timeout": settings.sandbox_provision_timeout_seconds,
        "command_timeout": settings.sandbox_command_timeout_seconds,
        "allow_unrestricted_commands": settings.sandbox_allow_unrestricted_commands,
    }

    if backend == "docker":
        service: SandboxService = DockerSandboxClient(
            session_id, image_name=settings.sandbox_image, **common
        )
    elif backend == "remote":
        service = RemoteSandboxClient(
            session_id,
            base_url=settings.remote_sandbox_url,
            token=settings.remote_sandbox_token,
            **common,
        )
    else:
        raise ValueError(f"Unknown sandbox backend: {backend}")

    logger.info("sandbox_service_created", session_id=session_id, backend=backend)
    return service
