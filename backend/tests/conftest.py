"""Shared test fixtures for backend tests.

Provides a scripted model-output provider, an in-memory sandbox, recording
client connections and fast settings so tests never touch real Docker
containers, runner services or LLM APIs.
"""

import sys
from collections.abc import Callable, Mapping
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from codegen.generation_context import GenerationContext  # noqa: E402
from config import Settings  # noqa: E402
from errors import SandboxExecutionError  # noqa: E402
from models.schemas import (  # noqa: E402
    Blueprint,
    BlueprintPhase,
    FileOutput,
    FileTreeNode,
    Issue,
    TemplateDetails,
    TemplateFile,
)
from sandbox.base import (  # noqa: E402
    CommandResult,
    SandboxHandle,
    SandboxLifecycle,
    SandboxStatus,
)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings with zero retry delays and short timeouts."""
    values: dict[str, Any] = {
        "retry_attempts": 3,
        "retry_base_delay_seconds": 0,
        "retry_max_delay_seconds": 0,
        "model_call_timeout_seconds": 5,
        "sandbox_command_timeout_seconds": 5,
        "sandbox_provision_timeout_seconds": 5,
        "max_phases": 5,
        "default_review_cycles": 2,
        "sandbox_install_command": "npm install",
        "sandbox_validation_command": "npm run build",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def test_settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------------


def make_template(
    *,
    dont_touch: list[str] | None = None,
    redacted: list[str] | None = None,
) -> TemplateDetails:
    return TemplateDetails(
        name="react-vite",
        file_tree=FileTreeNode(
            path="",
            type="directory",
            children=[
                FileTreeNode(path="package.json", type="file"),
                FileTreeNode(
                    path="src",
                    type="directory",
                    children=[FileTreeNode(path="src/main.tsx", type="file")],
                ),
            ],
        ),
        files=[
            TemplateFile(file_path="package.json", file_contents='{"name": "app"}'),
            TemplateFile(file_path="src/main.tsx", file_contents="import App from './App';"),
        ],
        frameworks=["react", "vite"],
        dont_touch_files=dont_touch if dont_touch is not None else ["package.json"],
        redacted_files=redacted if redacted is not None else ["src/config/secrets.ts"],
    )


@pytest.fixture()
def template_details() -> TemplateDetails:
    return make_template()


# ---------------------------------------------------------------------------
# Scripted model output
# ---------------------------------------------------------------------------


def file_output(path: str, contents: str = "// generated", purpose: str = "test") -> FileOutput:
    return FileOutput(file_path=path, file_contents=contents, file_purpose=purpose)


def two_phase_blueprint() -> Blueprint:
    return Blueprint(
        title="Todo app",
        description="A small todo list",
        phases=[
            BlueprintPhase(name="Foundation", description="Layout and state", files=["src/App.tsx"]),
            BlueprintPhase(name="Features", description="Todo CRUD", files=["src/Todo.tsx"]),
        ],
    )


class ScriptedModelOutput:
    """ModelOutputProvider returning canned results.

    Args:
        blueprint: Blueprint to return.
        files: (phase_index, stage) -> outputs. Missing "generate" entries
            default to one file per phase; missing "implement" entries to none.
        reviews: phase_index -> review results, consumed one per call.
        fixes: phase_index -> outputs returned by every fix call.
        failures: method name -> exceptions raised, in order, before the
            method starts succeeding.
        on_call: Called with (method, phase_index) before each call.
    """

    def __init__(
        self,
        blueprint: Blueprint | None = None,
        *,
        files: dict[tuple[int, str], list[FileOutput]] | None = None,
        reviews: dict[int, list[list[Issue]]] | None = None,
        fixes: dict[int, list[FileOutput]] | None = None,
        failures: dict[str, list[BaseException]] | None = None,
        on_call: Callable[[str, int | None], None] | None = None,
    ) -> None:
        self.blueprint = blueprint or two_phase_blueprint()
        self.files = files or {}
        self.reviews = {k: list(v) for k, v in (reviews or {}).items()}
        self.fixes = fixes or {}
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.on_call = on_call
        self.calls: list[tuple[str, int | None]] = []
        self.contexts: list[GenerationContext] = []
        self.fix_requests: list[list[Issue]] = []

    def _enter(self, method: str, phase_index: int | None, context: GenerationContext) -> None:
        self.calls.append((method, phase_index))
        self.contexts.append(context)
        if self.on_call is not None:
            self.on_call(method, phase_index)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    async def generate_blueprint(self, context: GenerationContext) -> Blueprint:
        self._enter("generate_blueprint", None, context)
        return self.blueprint

    async def generate_phase_files(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
        stage: str,
    ) -> list[FileOutput]:
        self._enter(f"phase_{stage}", phase_index, context)
        if (phase_index, stage) in self.files:
            return list(self.files[(phase_index, stage)])
        if stage == "generate":
            return [file_output(f"src/phase{phase_index}.ts", f"// {phase.name}")]
        return []

    async def review_phase(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
    ) -> list[Issue]:
        self._enter("review_phase", phase_index, context)
        pending = self.reviews.get(phase_index)
        if pending:
            return pending.pop(0)
        return []

    async def fix_issues(
        self,
        context: GenerationContext,
        phase: BlueprintPhase,
        phase_index: int,
        issues: list[Issue],
    ) -> list[FileOutput]:
        self._enter("fix_issues", phase_index, context)
        self.fix_requests.append(list(issues))
        return list(self.fixes.get(phase_index, []))

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


@pytest.fixture()
def scripted_output() -> ScriptedModelOutput:
    return ScriptedModelOutput()


# ---------------------------------------------------------------------------
# Fake sandbox
# ---------------------------------------------------------------------------


class FakeSandbox:
    """In-memory SandboxService.

    Args:
        results: command -> results returned in order; the last one repeats.
        provision_error: Raised by provision() if set.
        write_errors: Exceptions raised by write_files(), in order.
    """

    backend_name = "fake"

    def __init__(
        self,
        *,
        results: dict[str, list[CommandResult]] | None = None,
        provision_error: BaseException | None = None,
        write_errors: list[BaseException] | None = None,
    ) -> None:
        self.results = {k: list(v) for k, v in (results or {}).items()}
        self.provision_error = provision_error
        self.write_errors = list(write_errors or [])
        self.files: dict[str, str] = {}
        self.commands: list[str] = []
        self.teardown_calls = 0
        self._handle: SandboxHandle | None = None
        self._lifecycle = SandboxLifecycle("fake")

    @property
    def status(self) -> SandboxStatus:
        return self._lifecycle.status

    @property
    def handle(self) -> SandboxHandle | None:
        return self._handle

    async def provision(self, config: Mapping[str, Any] | None = None) -> SandboxHandle:
        self._lifecycle.begin_provision()
        if self.provision_error is not None:
            raise self.provision_error
        self._handle = SandboxHandle(sandbox_id="fake-1", backend=self.backend_name)
        self._lifecycle.mark_provisioned()
        return self._handle

    async def write_files(self, files: Mapping[str, str]) -> None:
        self._lifecycle.require_ready("write files")
        if self.write_errors:
            raise self.write_errors.pop(0)
        self.files.update(files)

    async def execute_command(self, command: str, timeout: float | None = None) -> CommandResult:
        self._lifecycle.begin_execution()
        try:
            self.commands.append(command)
            scripted = self.results.get(command)
            if not scripted:
                return CommandResult(stdout="ok", stderr="", exit_code=0)
            result = scripted[0] if len(scripted) == 1 else scripted.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self._lifecycle.end_execution()

    async def teardown(self) -> None:
        self.teardown_calls += 1
        if self._lifecycle.status != SandboxStatus.TORN_DOWN:
            self._lifecycle.mark_torn_down()


async def provisioned_sandbox(**kwargs: Any) -> FakeSandbox:
    sandbox = FakeSandbox(**kwargs)
    await sandbox.provision()
    return sandbox


def failing_command(exit_code: int = 1, stderr: str = "error TS2304: Cannot find name 'x'") -> CommandResult:
    return CommandResult(stdout="", stderr=stderr, exit_code=exit_code)


def sandbox_failure(message: str = "daemon unavailable") -> SandboxExecutionError:
    return SandboxExecutionError(message)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class RecordingConnection:
    """Connection that records every message it is sent."""

    def __init__(self, connection_id: str = "conn_1", *, fail: bool = False) -> None:
        self.id = connection_id
        self.fail = fail
        self.messages: list[dict[str, Any]] = []

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("client went away")
        self.messages.append(data)

    @property
    def types(self) -> list[str]:
        return [message["type"] for message in self.messages]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [message for message in self.messages if message["type"] == event_type]


@pytest.fixture()
def connection() -> RecordingConnection:
    return RecordingConnection()
