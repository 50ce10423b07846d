"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the code
generation backend. All settings can be overridden via environment variables
or a .env file.
"""

import json
import logging
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_EXTENSIONS: list[str] = [
    "js",
    "jsx",
    "ts",
    "tsx",
    "mjs",
    "cjs",
    "json",
    "md",
    "css",
    "scss",
    "html",
    "svg",
    "txt",
    "yml",
    "yaml",
    "toml",
    "gitignore",
    "npmrc",
    "dockerfile",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: LiteLLM model name used by the model-output boundary.
        model_temperature: Sampling temperature for generation calls.
        model_call_timeout_seconds: Timeout for a single model-output call.
        max_phases: Upper bound on the number of blueprint phases executed.
        default_review_cycles: Fix cycles per phase when the caller gives none.
        retry_attempts: Attempts per model/sandbox call before recording an issue.
        retry_base_delay_seconds: First backoff delay; doubled per attempt.
        retry_max_delay_seconds: Cap for the backoff delay.
        max_file_size_bytes: Largest file content accepted by the file manager.
        max_path_length: Longest file path accepted by the file manager.
        allowed_extensions: File extensions the file manager accepts.
        max_operation_history: File operations retained in the file manager log.
        max_state_history: Number of state snapshots retained for rollback.
        sandbox_backend: Which sandbox implementation to use ("docker" or "remote").
        sandbox_image: Docker image for the in-process sandbox backend.
        sandbox_workspace_path: Project root inside the sandbox.
        sandbox_provision_timeout_seconds: Timeout for provisioning a sandbox.
        sandbox_command_timeout_seconds: Timeout for a single sandbox command.
        sandbox_allow_unrestricted_commands: If False, enforce the strict
            command allowlist inside the sandbox.
        sandbox_install_command: Command run after a phase's files are written
            (empty string disables it).
        sandbox_validation_command: Command run during code review (empty
            string disables it).
        remote_sandbox_url: Base URL of the remote runner service.
        remote_sandbox_token: Bearer token for the remote runner service.
        broadcast_send_timeout_seconds: Per-connection send timeout.
        event_history_limit: Events retained per session for replay.
        backend_port: Port the development server binds to.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Model-output boundary
    default_model: str = "openai/gpt-4o-mini"
    model_temperature: float = 0.2
    model_call_timeout_seconds: float = 120

    # Phase orchestration
    max_phases: int = 12
    default_review_cycles: int = 10
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0

    # File manager limits
    max_file_size_bytes: int = 1_000_000
    max_path_length: int = 500
    allowed_extensions: str | list[str] = DEFAULT_ALLOWED_EXTENSIONS
    max_operation_history: int = 1000

    # State manager
    max_state_history: int = 50

    # Sandbox Configuration
    sandbox_backend: Literal["docker", "remote"] = "docker"
    sandbox_image: str = "codegen-sandbox:latest"
    sandbox_workspace_path: str = "/workspace"
    sandbox_provision_timeout_seconds: int = 60
    sandbox_command_timeout_seconds: int = 120
    sandbox_allow_unrestricted_commands: bool = True
    sandbox_install_command: str = "npm install"
    sandbox_validation_command: str = "npm run build"
    remote_sandbox_url: str = "http://localhost:8787"
    remote_sandbox_token: str = ""

    # Connections
    broadcast_send_timeout_seconds: float = 5.0
    event_history_limit: int = 5000

    # Server
    backend_port: int = 8000

    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("allowed_extensions", mode="before")
    @classmethod
    def parse_allowed_extensions(cls, v: Any) -> list[str]:
        """Parse allowed extensions from string or list.

        Accepts:
        - JSON array: '["ts", "tsx"]'
        - Comma-separated: 'ts,tsx,json'
        - Already a list: ["ts", "tsx"]

        Leading dots are stripped and values are lower-cased.
        """
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    v = json.loads(v)
                except json.JSONDecodeError:
                    v = v.strip("[]").split(",")
            else:
                v = v.split(",")
        if isinstance(v, list):
            return [str(ext).strip().strip("\"'").lstrip(".").lower() for ext in v if str(ext).strip()]
        return list(DEFAULT_ALLOWED_EXTENSIONS)

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
