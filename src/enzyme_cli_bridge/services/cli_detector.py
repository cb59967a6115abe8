from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, FrozenSet, Optional, Tuple, Union

from enzyme_cli_bridge.config import Settings
from enzyme_cli_bridge.domain.contracts import (
    CommandSpec,
    ExecutionEngine,
    InstallKind,
    RunRequest,
    ToolInfo,
    WorkspaceRootProvider,
)
from enzyme_cli_bridge.domain.errors import CliBridgeError
from enzyme_cli_bridge.execution.policy import is_valid_executable_path
from enzyme_cli_bridge.observability.structured_log import log_json
from enzyme_cli_bridge.util import resolve_workspace_root

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "0.0.0"
KNOWN_FEATURES: Tuple[str, ...] = (
    "generate",
    "analyze",
    "doctor",
    "add",
    "new",
    "create",
    "migrate",
    "docs",
    "config",
    "upgrade",
    "validate",
)
DEFAULT_FEATURES: FrozenSet[str] = frozenset({"generate", "analyze", "doctor"})

_VERSION_RE = re.compile(r"\d+(?:\.\d+){1,2}(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?")
_FEATURE_RE = re.compile(r"^\s*(" + "|".join(KNOWN_FEATURES) + r")\b", re.MULTILINE)
_LOCKFILES: Tuple[Tuple[str, str], ...] = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
)

_Location = Tuple[str, CommandSpec]


@dataclass(frozen=True)
class _CacheEntry:
    info: ToolInfo
    stored_at: float


class DetectionCache:
    """Single most-recent detection result; replaced whole, never mutated."""

    def __init__(self) -> None:
        self._entry: Optional[_CacheEntry] = None

    def get(self, now: float, ttl_sec: float) -> Optional[ToolInfo]:
        entry = self._entry
        if entry is None or now - entry.stored_at >= ttl_sec:
            return None
        return entry.info

    def store(self, info: ToolInfo, now: float) -> None:
        self._entry = _CacheEntry(info=info, stored_at=now)

    def clear(self) -> None:
        self._entry = None

    @property
    def is_empty(self) -> bool:
        return self._entry is None


def parse_version(text: str) -> str:
    match = _VERSION_RE.search((text or "").strip())
    return match.group(0) if match else DEFAULT_VERSION


def parse_features(help_text: str) -> FrozenSet[str]:
    found = frozenset(m.group(1) for m in _FEATURE_RE.finditer(help_text or ""))
    return found or DEFAULT_FEATURES


def version_tuple(version: str) -> Tuple[int, int, int]:
    cleaned = re.sub(r"^[\^~>=<vV\s]+", "", str(version or ""))
    parts = re.split(r"[.+-]", cleaned)[:3]
    numbers = [int(part) if part.isdigit() else 0 for part in parts]
    numbers.extend([0] * (3 - len(numbers)))
    return numbers[0], numbers[1], numbers[2]


def satisfies_version(installed: str, required: str) -> bool:
    return version_tuple(installed) >= version_tuple(required)


class CliDetector:
    def __init__(
        self,
        engine: ExecutionEngine,
        workspace_root: Union[None, str, Path, WorkspaceRootProvider] = None,
        settings: Optional[Settings] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._settings = settings or Settings()
        self._workspace_root = workspace_root if workspace_root is not None else self._settings.workspace_root
        self._which = which
        self._clock = clock
        self._cache = DetectionCache()

    @property
    def cache(self) -> DetectionCache:
        return self._cache

    @property
    def workspace_root(self) -> Optional[Path]:
        return resolve_workspace_root(self._workspace_root)

    async def detect(self, force_refresh: bool = False) -> Optional[ToolInfo]:
        if not force_refresh:
            cached = self._cache.get(self._clock(), self._settings.detection_ttl_sec)
            if cached is not None:
                log_json(logger, "cli.detect.hit", level=logging.DEBUG, path=cached.path)
                return cached

        log_json(logger, "cli.detect.start", tool=self._settings.tool_name, force_refresh=force_refresh)
        strategies = (
            (InstallKind.LOCAL, self._locate_local),
            (InstallKind.GLOBAL, self._locate_global),
            (InstallKind.ON_DEMAND, self._locate_on_demand),
        )
        for kind, locate in strategies:
            try:
                location = locate()
                if location is None:
                    continue
                info = await self._probe(kind, *location)
            except Exception:
                logger.warning("Detection strategy '%s' failed.", kind.value, exc_info=True)
                continue
            self._cache.store(info, self._clock())
            log_json(
                logger,
                "cli.detect.found",
                install_kind=kind.value,
                path=info.path,
                version=info.version,
                features=sorted(info.features),
            )
            return info

        self._cache.clear()
        log_json(logger, "cli.detect.miss", level=logging.WARNING, tool=self._settings.tool_name)
        return None

    async def get_executable_path(self) -> Optional[str]:
        info = await self.detect()
        return info.path if info else None

    async def get_command(self) -> Optional[CommandSpec]:
        info = await self.detect()
        return info.command if info else None

    async def get_version(self) -> Optional[str]:
        info = await self.detect()
        return info.version if info else None

    async def supports_feature(self, name: str) -> bool:
        info = await self.detect()
        return bool(info and info.supports(name))

    def clear_cache(self) -> None:
        self._cache.clear()

    def detect_package_manager(self) -> str:
        """Pick the package manager from workspace lockfiles; npm otherwise."""
        root = self.workspace_root
        if root is None:
            return "npm"
        for lockfile, manager in _LOCKFILES:
            if (root / lockfile).is_file():
                return manager
        return "npm"

    def _locate_local(self) -> Optional[_Location]:
        root = self.workspace_root
        if root is None:
            return None
        bin_dir = root / "node_modules" / ".bin"
        names = [self._settings.tool_name]
        if os.name == "nt":
            names.insert(0, self._settings.tool_name + ".cmd")
        for name in names:
            candidate = bin_dir / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate), CommandSpec(executable=str(candidate))
        return None

    def _locate_global(self) -> Optional[_Location]:
        resolved = self._which(self._settings.tool_name)
        if not resolved:
            return None
        if not is_valid_executable_path(resolved):
            log_json(logger, "cli.detect.rejected_path", level=logging.WARNING, path=resolved)
            return None
        return resolved, CommandSpec(executable=resolved)

    def _locate_on_demand(self) -> Optional[_Location]:
        runner = self._which(self._settings.runner_name)
        if not runner or not is_valid_executable_path(runner):
            return None
        command = CommandSpec(executable=runner, leading_args=("--yes", self._settings.package_name))
        return f"{self._settings.runner_name} {self._settings.package_name}", command

    async def _probe(self, kind: InstallKind, path: str, command: CommandSpec) -> ToolInfo:
        version = await self._probe_version(command)
        features = await self._probe_features(command)
        return ToolInfo(path=path, version=version, install_kind=kind, features=features, command=command)

    async def _probe_version(self, command: CommandSpec) -> str:
        try:
            result = await self._engine.run(self._probe_request(command, "--version"))
        except CliBridgeError as exc:
            logger.info("Version probe failed for %s: %s", command.display(), exc)
            return DEFAULT_VERSION
        if not result.success:
            return DEFAULT_VERSION
        return parse_version(result.stdout)

    async def _probe_features(self, command: CommandSpec) -> FrozenSet[str]:
        try:
            result = await self._engine.run(self._probe_request(command, "--help"))
        except CliBridgeError as exc:
            logger.info("Help probe failed for %s: %s", command.display(), exc)
            return DEFAULT_FEATURES
        return parse_features(result.stdout + "\n" + result.stderr)

    def _probe_request(self, command: CommandSpec, flag: str) -> RunRequest:
        return RunRequest(
            command=command,
            args=[flag],
            cwd=self.workspace_root,
            env={"FORCE_COLOR": "0", "NO_COLOR": "1"},
            timeout_sec=self._settings.probe_timeout_sec,
        )
