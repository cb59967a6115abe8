import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_TOOL_NAME = "enzyme"
DEFAULT_PACKAGE_NAME = "@enzymejs/cli"
DEFAULT_RUNNER_NAME = "npx"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"

DETECTION_TTL_SEC = 60
PROBE_TIMEOUT_SEC = 5
EXEC_TIMEOUT_SEC = 120
TERMINATE_GRACE_SEC = 5


@dataclass(frozen=True)
class Settings:
    tool_name: str = DEFAULT_TOOL_NAME
    package_name: str = DEFAULT_PACKAGE_NAME
    runner_name: str = DEFAULT_RUNNER_NAME
    detection_ttl_sec: int = DETECTION_TTL_SEC
    probe_timeout_sec: int = PROBE_TIMEOUT_SEC
    exec_timeout_sec: int = EXEC_TIMEOUT_SEC
    terminate_grace_sec: int = TERMINATE_GRACE_SEC
    workspace_root: Optional[Path] = None
    registry_url: str = DEFAULT_REGISTRY_URL


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"').strip("'")
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
    return data


def get_env_value(key: str, env: Mapping[str, str], env_file: Mapping[str, str]) -> Optional[str]:
    return env.get(key) or env_file.get(key)


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    env_file: Optional[Path] = None,
) -> Settings:
    """Resolve settings from the process environment, then an optional .env file."""
    source = env if env is not None else os.environ
    file_values = load_env_file(env_file) if env_file is not None else {}

    def _str(key: str, default: str) -> str:
        value = (get_env_value(key, source, file_values) or "").strip()
        return value or default

    def _int(key: str, default: int) -> int:
        raw = (get_env_value(key, source, file_values) or "").strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r.", key, raw)
            return default
        return max(1, value)

    root_raw = (get_env_value("ENZYME_WORKSPACE_ROOT", source, file_values) or "").strip()
    return Settings(
        tool_name=_str("ENZYME_CLI_NAME", DEFAULT_TOOL_NAME),
        package_name=_str("ENZYME_CLI_PACKAGE", DEFAULT_PACKAGE_NAME),
        runner_name=_str("ENZYME_CLI_RUNNER", DEFAULT_RUNNER_NAME),
        detection_ttl_sec=_int("ENZYME_DETECTION_TTL_SEC", DETECTION_TTL_SEC),
        probe_timeout_sec=_int("ENZYME_PROBE_TIMEOUT_SEC", PROBE_TIMEOUT_SEC),
        exec_timeout_sec=_int("ENZYME_EXEC_TIMEOUT_SEC", EXEC_TIMEOUT_SEC),
        terminate_grace_sec=_int("ENZYME_TERMINATE_GRACE_SEC", TERMINATE_GRACE_SEC),
        workspace_root=Path(root_raw).expanduser().resolve() if root_raw else None,
        registry_url=_str("ENZYME_REGISTRY_URL", DEFAULT_REGISTRY_URL).rstrip("/"),
    )
