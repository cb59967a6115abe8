"""Command-line construction for the Enzyme CLI operations.

Every builder here is pure and raises ``InvalidInputError`` before anything
is detected or spawned.
"""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

from enzyme_cli_bridge.domain.errors import InvalidInputError

NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
OPTION_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")
VERSION_SPEC_RE = re.compile(r"^(?:latest|next|\d+(?:\.\d+){0,2}(?:-[0-9A-Za-z.-]+)?)$")

_SCALAR_TYPES: Tuple[type, ...] = (bool, str, int, float)


class OperationKind(str, Enum):
    GENERATE = "generate"
    ADD = "add"
    ANALYZE = "analyze"
    DOCTOR = "doctor"


class GenerateKind(str, Enum):
    COMPONENT = "component"
    PAGE = "page"
    HOOK = "hook"
    SERVICE = "service"
    FEATURE = "feature"
    SLICE = "slice"
    API = "api"
    STORE = "store"
    ROUTE = "route"


class FeatureKind(str, Enum):
    AUTH = "auth"
    STATE = "state"
    ROUTING = "routing"
    REALTIME = "realtime"
    MONITORING = "monitoring"
    THEME = "theme"
    FLAGS = "flags"


# Known keys per operation and the value types each accepts. Keys missing
# from a table are still allowed when they match OPTION_KEY_RE and carry a
# scalar value.
OPTION_TABLE: Dict[OperationKind, Dict[str, Tuple[type, ...]]] = {
    OperationKind.GENERATE: {
        "path": (str,),
        "dry-run": (bool,),
        "force": (bool,),
        "skip-tests": (bool,),
        "skip-stories": (bool,),
        "style": (str,),
        "feature": (str,),
        "methods": (str,),
        "crud": (bool,),
    },
    OperationKind.ADD: {
        "dry-run": (bool,),
        "skip-install": (bool,),
        "skip-config": (bool,),
    },
    OperationKind.ANALYZE: {
        "path": (str,),
        "depth": (int,),
        "include-tests": (bool,),
        "verbose": (bool,),
    },
    OperationKind.DOCTOR: {
        "fix": (bool,),
        "verbose": (bool,),
    },
}

_E = TypeVar("_E", bound=Enum)


def parse_kind(enum_type: Type[_E], value: Any, label: str) -> _E:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value or "").strip().lower())
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        raise InvalidInputError(f"Invalid {label} '{value}'. Expected one of: {allowed}.") from None


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise InvalidInputError(
            f"Invalid name '{name}'. Use letters, digits, '_' or '-' only."
        )
    return name


def options_to_flags(operation: OperationKind, options: Optional[Mapping[str, Any]]) -> List[str]:
    table = OPTION_TABLE[operation]
    flags: List[str] = []
    for key, value in (options or {}).items():
        if not isinstance(key, str) or not OPTION_KEY_RE.match(key):
            raise InvalidInputError(f"Invalid option key '{key}'.")
        allowed = table.get(key, _SCALAR_TYPES)
        if not _matches_type(value, allowed):
            expected = "/".join(t.__name__ for t in allowed)
            raise InvalidInputError(
                f"Unsupported value for option '{key}': {type(value).__name__} (expected {expected})."
            )
        if isinstance(value, bool):
            if value:
                flags.append(f"--{key}")
            continue
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidInputError(f"Option '{key}' must be a finite number.")
        flags.extend([f"--{key}", str(value)])
    return flags


def build_generate_args(kind: Any, name: Any, options: Optional[Mapping[str, Any]] = None) -> List[str]:
    parsed = parse_kind(GenerateKind, kind, "generator type")
    valid_name = validate_name(name)
    flags = options_to_flags(OperationKind.GENERATE, options)
    return [OperationKind.GENERATE.value, parsed.value, valid_name, *flags]


def build_add_args(feature: Any, options: Optional[Mapping[str, Any]] = None) -> List[str]:
    parsed = parse_kind(FeatureKind, feature, "feature")
    flags = options_to_flags(OperationKind.ADD, options)
    return [OperationKind.ADD.value, parsed.value, *flags]


def build_analyze_args(options: Optional[Mapping[str, Any]] = None) -> List[str]:
    return [OperationKind.ANALYZE.value, *options_to_flags(OperationKind.ANALYZE, options)]


def build_doctor_args(options: Optional[Mapping[str, Any]] = None) -> List[str]:
    return [OperationKind.DOCTOR.value, *options_to_flags(OperationKind.DOCTOR, options)]


def build_install_command(
    package_manager: str,
    package_name: str,
    global_install: bool = True,
    version: Optional[str] = None,
) -> Tuple[str, List[str]]:
    manager = str(package_manager or "").strip().lower()
    if manager not in {"npm", "yarn", "pnpm", "bun"}:
        raise InvalidInputError(f"Unsupported package manager '{package_manager}'.")
    if version is not None and not VERSION_SPEC_RE.match(str(version)):
        raise InvalidInputError(f"Invalid version '{version}'.")
    spec = f"{package_name}@{version}" if version else package_name
    if manager == "npm":
        return "npm", ["install", "-g" if global_install else "--save-dev", spec]
    if manager == "yarn":
        return "yarn", ["global", "add", spec] if global_install else ["add", "-D", spec]
    return manager, ["add", "-g", spec] if global_install else ["add", "-D", spec]


def _matches_type(value: Any, allowed: Tuple[type, ...]) -> bool:
    # bool is an int subclass; only accept it where bool is listed.
    if isinstance(value, bool):
        return bool in allowed
    if isinstance(value, int) and float in allowed and int not in allowed:
        return True
    return isinstance(value, tuple(t for t in allowed if t is not bool))
