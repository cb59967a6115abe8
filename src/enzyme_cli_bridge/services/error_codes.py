from dataclasses import dataclass
from typing import Any, Dict, List

from enzyme_cli_bridge.domain.errors import CliBridgeError


@dataclass(frozen=True)
class RecoveryAction:
    action_id: str
    label: str
    description: str


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    triggers: List[str]
    actions: List[RecoveryAction]


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_CLI_NOT_FOUND",
        title="Enzyme CLI not available",
        user_message="The Enzyme CLI could not be found locally, globally, or through npx.",
        triggers=["CLI not found."],
        actions=[
            RecoveryAction("install_cli", "Install CLI", "Install @enzymejs/cli with the workspace package manager."),
            RecoveryAction("refresh_detection", "Detect again", "Clear the detection cache and probe again."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_POLICY_BLOCKED",
        title="Command blocked",
        user_message="The command is not on the allowlist of executables this extension may start.",
        triggers=["Blocked by execution policy:"],
        actions=[
            RecoveryAction("install_cli", "Install CLI", "Use a supported installation of the Enzyme CLI."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_SPAWN_FAILED",
        title="Could not start process",
        user_message="The operating system refused to start the command.",
        triggers=["Error: failed to start"],
        actions=[
            RecoveryAction("refresh_detection", "Detect again", "The CLI may have moved or lost execute permission."),
            RecoveryAction("install_cli", "Reinstall CLI", "Reinstall @enzymejs/cli."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_EXEC_TIMEOUT",
        title="Execution timeout",
        user_message="The command exceeded the allowed execution time and was stopped.",
        triggers=["Execution timeout"],
        actions=[
            RecoveryAction("retry", "Retry", "Run the same command again."),
            RecoveryAction("open_settings", "Open settings", "Increase ENZYME_EXEC_TIMEOUT_SEC."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_RUN_CANCELLED",
        title="Run cancelled",
        user_message="The command was cancelled before completion.",
        triggers=["Error: run was cancelled."],
        actions=[
            RecoveryAction("retry", "Retry", "Run the same command again."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_CLI_EXIT_NONZERO",
        title="Enzyme CLI reported an error",
        user_message="The Enzyme CLI exited with a non-zero exit code.",
        triggers=["exited with code"],
        actions=[
            RecoveryAction("show_output", "Show output", "Inspect stdout and stderr of the run."),
            RecoveryAction("run_doctor", "Run doctor", "Run 'enzyme doctor' to check the project."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_JSON_PARSE",
        title="Unreadable CLI output",
        user_message="The Enzyme CLI did not return valid JSON.",
        triggers=["malformed JSON"],
        actions=[
            RecoveryAction("show_output", "Show output", "Inspect the raw stdout of the run."),
            RecoveryAction("update_cli", "Update CLI", "Older CLI versions may not support --json."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_INVALID_INPUT",
        title="Invalid input",
        user_message="The request was rejected before anything was run.",
        triggers=["Invalid name", "Invalid generator type", "Invalid feature", "Invalid option key"],
        actions=[
            RecoveryAction("edit_input", "Edit input", "Correct the highlighted value and try again."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_REGISTRY_UNAVAILABLE",
        title="Package registry unavailable",
        user_message="The npm registry could not be reached to check for updates.",
        triggers=["Registry "],
        actions=[
            RecoveryAction("retry", "Retry", "Check the network connection and retry."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_UNKNOWN",
        title="Unknown error",
        user_message="An unknown error occurred.",
        triggers=[],
        actions=[
            RecoveryAction("show_output", "Show output", "Inspect the extension log."),
        ],
    ),
]


def detect_error_code(text: str) -> str:
    value = text or ""
    for entry in ERROR_CATALOG:
        if any(trigger in value for trigger in entry.triggers):
            return entry.code
    return "ERR_UNKNOWN"


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == "ERR_UNKNOWN")


def describe_error(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, CliBridgeError):
        code = exc.code
    else:
        code = detect_error_code(str(exc))
    entry = get_catalog_entry(code)
    return {
        "code": entry.code,
        "title": entry.title,
        "message": entry.user_message,
        "detail": str(exc),
        "actions": [{"id": a.action_id, "label": a.label, "description": a.description} for a in entry.actions],
    }
