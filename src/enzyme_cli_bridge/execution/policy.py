import os
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Optional

ALLOWED_COMMANDS = frozenset({"enzyme", "npx", "npm", "node", "yarn", "pnpm", "bun"})

_EXECUTABLE_SUFFIXES = (".exe", ".cmd", ".bat", ".ps1")
_SHELL_METACHARACTERS = "!#$&'\"()*;<>?[\\]^`{|}~\r\n\x00"
_METACHAR_RE = re.compile("[" + re.escape(_SHELL_METACHARACTERS) + "]")
_SAFE_PATH_RE = re.compile(r"^[\w./-]+$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SAFE_ENV_KEYS = (
    "PATH",
    "HOME",
    "USER",
    "USERPROFILE",
    "LOGNAME",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TMPDIR",
    "TEMP",
    "TMP",
    "NODE_ENV",
)
_BLOCKED_ENV_KEYS = frozenset(
    {
        "LD_PRELOAD",
        "LD_LIBRARY_PATH",
        "DYLD_INSERT_LIBRARIES",
        "DYLD_LIBRARY_PATH",
        "NODE_OPTIONS",
    }
)


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str


def command_basename(command: str) -> str:
    name = str(command or "").strip().replace("\\", "/")
    base = PurePosixPath(name).name.lower()
    for suffix in _EXECUTABLE_SUFFIXES:
        if base.endswith(suffix):
            return base[: -len(suffix)]
    return base


def is_allowed_command(command: Any) -> bool:
    if not isinstance(command, str) or not command.strip():
        return False
    base = command_basename(command)
    if base in ALLOWED_COMMANDS:
        return True
    # versioned-extension form, e.g. "node.22" or "enzyme.js"
    stem, dot, ext = base.partition(".")
    return bool(dot and ext) and stem in ALLOWED_COMMANDS


def evaluate_command(command: Any) -> PolicyDecision:
    if not isinstance(command, str) or not command.strip():
        return PolicyDecision(allowed=False, reason="Empty command.")
    if not is_allowed_command(command):
        return PolicyDecision(
            allowed=False,
            reason=f"Command '{command_basename(command)}' is not in the allowlist.",
        )
    return PolicyDecision(allowed=True, reason="Allowed.")


def sanitize_argument(arg: Any) -> str:
    return _METACHAR_RE.sub("", str(arg if arg is not None else ""))


def validate_args(args: Iterable[Any]) -> List[str]:
    return [sanitize_argument(arg) for arg in (args or [])]


def is_valid_executable_path(path: Any) -> bool:
    if not isinstance(path, str) or not path:
        return False
    if not path.startswith("/"):
        return False
    if ".." in path.split("/"):
        return False
    if _METACHAR_RE.search(path):
        return False
    return bool(_SAFE_PATH_RE.match(path))


def get_safe_environment(
    overlay: Optional[Mapping[str, Optional[str]]] = None,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Build a child environment from a fixed whitelist.

    The parent environment is never copied wholesale. Overlay values win over
    the whitelist and the forced ``FORCE_COLOR`` flag, except for keys that are
    malformed or could inject code into the child's loader or runtime.
    """
    source = base if base is not None else os.environ
    env: Dict[str, str] = {}
    for key in SAFE_ENV_KEYS:
        value = source.get(key)
        if value:
            env[key] = str(value)
    env["FORCE_COLOR"] = "1"
    for raw_key, raw_value in (overlay or {}).items():
        key = str(raw_key or "")
        if raw_value is None or not _ENV_KEY_RE.match(key):
            continue
        if key.upper() in _BLOCKED_ENV_KEYS:
            continue
        env[key] = str(raw_value)
    return env
