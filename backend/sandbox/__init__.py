"""Sandbox execution backends.

This module provides the backend-agnostic SandboxService contract, the two
backends that implement it (local Docker and a remote runner), and the
factory that selects one from configuration.
"""

from sandbox.base import (
    CommandResult,
    SandboxHandle,
    SandboxLifecycle,
    SandboxService,
    SandboxStatus,
)
from sandbox.docker_sandbox import DockerSandboxClient
from sandbox.factory import create_sandbox_service
from sandbox.remote_sandbox import RemoteSandboxClient
from sandbox.security import sanitize_output, validate_command, validate_path

__all__ = [
    "CommandResult",
    "DockerSandboxClient",
    "RemoteSandboxClient",
    "SandboxHandle",
    "SandboxLifecycle",
    "SandboxService",
    "SandboxStatus",
    "create_sandbox_service",
    "sanitize_output",
    "validate_command",
    "validate_path",
]
