"""Exception taxonomy for the code generation backend.

Every error carries a stable ``code`` string so callers (WebSocket clients,
issue records) can classify failures without matching on messages.

Hierarchy:
    CodegenError
    ├── ValidationError          bad path / extension / size / content type
    ├── NotFoundError            missing file or session
    ├── SandboxError             sandbox not ready or command failure
    ├── ModelOutputError         model-output boundary failure
    ├── ImportFailedError        malformed persisted files or state
    ├── NotInitializedError      operation on a never-initialized session
    ├── StateTransitionError     illegal state machine transition
    └── GenerationInProgressError  second concurrent generation run
"""


class CodegenError(Exception):
    """Base class for all code generation errors."""

    code = "codegen_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(CodegenError):
    """Input rejected by local validation. Never retried automatically."""

    code = "validation_error"


class InvalidPathError(ValidationError):
    code = "invalid_path"


class PathTooLongError(ValidationError):
    code = "path_too_long"


class DisallowedExtensionError(ValidationError):
    code = "disallowed_extension"

    def __init__(self, extension: str) -> None:
        super().__init__(f"File extension not allowed: {extension}")
        self.extension = extension


class ContentTooLargeError(ValidationError):
    code = "content_too_large"


class InvalidContentTypeError(ValidationError):
    code = "invalid_content_type"


class NotFoundError(CodegenError):
    code = "not_found"


class ProjectFileNotFoundError(NotFoundError):
    code = "file_not_found"

    def __init__(self, path: str) -> None:
        super().__init__(f"File not found: {path}")
        self.path = path


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id


class SandboxError(CodegenError):
    code = "sandbox_error"


class SandboxNotReadyError(SandboxError):
    """Raised when a sandbox operation is called in the wrong lifecycle state."""

    code = "sandbox_not_ready"


class SandboxExecutionError(SandboxError):
    """Raised when the sandbox backend fails (daemon, transport, provisioning)."""

    code = "sandbox_execution_error"


class ModelOutputError(CodegenError):
    """Raised when the model-output boundary fails.

    Attributes:
        transient: True if the failure may succeed on retry (rate limits,
            unavailable upstream, malformed output); False for permanent
            failures such as authentication errors.
    """

    code = "model_output_error"

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class ImportFailedError(CodegenError):
    code = "import_failed"


class NotInitializedError(CodegenError):
    code = "not_initialized"


class StateTransitionError(CodegenError):
    code = "invalid_state_transition"


class GenerationInProgressError(CodegenError):
    code = "generation_in_progress"
