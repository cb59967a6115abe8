from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from enzyme_cli_bridge.domain.contracts import RunResult


class CliBridgeError(Exception):
    code = "ERR_UNKNOWN"


class InvalidInputError(CliBridgeError, ValueError):
    code = "ERR_INVALID_INPUT"


class DisallowedCommandError(CliBridgeError):
    code = "ERR_POLICY_BLOCKED"

    def __init__(self, command: str, reason: str = "") -> None:
        self.command = command
        self.reason = reason or f"Command '{command}' is not in the allowlist."
        super().__init__(f"Blocked by execution policy: {self.reason}")


class ToolNotFoundError(CliBridgeError):
    code = "ERR_CLI_NOT_FOUND"

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Error: {tool_name} CLI not found.")


class SpawnError(CliBridgeError):
    code = "ERR_SPAWN_FAILED"

    def __init__(self, executable: str, os_error: OSError) -> None:
        self.executable = executable
        self.os_error = os_error
        self.errno = os_error.errno
        super().__init__(f"Error: failed to start '{executable}': {os_error}")


class RunTimeoutError(CliBridgeError):
    code = "ERR_EXEC_TIMEOUT"

    def __init__(self, run_id: str, timeout_sec: float, stdout: str = "", stderr: str = "") -> None:
        self.run_id = run_id
        self.timeout_sec = timeout_sec
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Execution timeout after {timeout_sec:g}s.")


class RunCancelledError(CliBridgeError):
    code = "ERR_RUN_CANCELLED"

    def __init__(self, run_id: str, stdout: str = "", stderr: str = "") -> None:
        self.run_id = run_id
        self.stdout = stdout
        self.stderr = stderr
        super().__init__("Error: run was cancelled.")


class CommandFailedError(CliBridgeError):
    code = "ERR_CLI_EXIT_NONZERO"

    def __init__(self, result: "RunResult", command: str = "") -> None:
        self.result = result
        self.exit_code = result.exit_code
        message = f"Error: {command or 'command'} exited with code {result.exit_code}."
        tail = (result.stderr.strip() or result.stdout.strip())[:300]
        if tail:
            message += f" {tail}"
        super().__init__(message)


class JsonParseError(CliBridgeError):
    code = "ERR_JSON_PARSE"

    def __init__(self, stdout: str, detail: str = "") -> None:
        self.stdout = stdout
        self.detail = detail
        super().__init__(f"Error: CLI returned malformed JSON. {detail}".strip())


class RegistryError(CliBridgeError):
    code = "ERR_REGISTRY_UNAVAILABLE"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)
