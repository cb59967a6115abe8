from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Protocol, Sequence, Tuple, Union

OutputCallback = Callable[[str], None]
WorkspaceRootProvider = Callable[[], Optional[Path]]


@dataclass(frozen=True)
class CommandSpec:
    """Executable plus the arguments that always precede the caller's own."""

    executable: str
    leading_args: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, command: str) -> "CommandSpec":
        tokens = shlex.split(str(command or ""))
        if not tokens:
            return cls(executable="")
        return cls(executable=tokens[0], leading_args=tuple(tokens[1:]))

    @classmethod
    def coerce(cls, command: Union["CommandSpec", str]) -> "CommandSpec":
        if isinstance(command, CommandSpec):
            return command
        return cls.parse(command)

    def display(self) -> str:
        return " ".join([self.executable, *self.leading_args])


class InstallKind(str, Enum):
    LOCAL = "local"
    GLOBAL = "global"
    ON_DEMAND = "on-demand"


@dataclass(frozen=True)
class ToolInfo:
    path: str
    version: str
    install_kind: InstallKind
    features: FrozenSet[str]
    command: CommandSpec = field(repr=False)

    def supports(self, feature: str) -> bool:
        return str(feature or "").strip().lower() in self.features

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "version": self.version,
            "installKind": self.install_kind.value,
            "features": sorted(self.features),
        }


@dataclass(frozen=True)
class RunRequest:
    command: Union[CommandSpec, str]
    args: Sequence[str] = ()
    cwd: Optional[Path] = None
    env: Optional[Mapping[str, Optional[str]]] = None
    timeout_sec: Optional[float] = None
    signal: Optional[asyncio.Event] = None
    on_stdout: Optional[OutputCallback] = None
    on_stderr: Optional[OutputCallback] = None


@dataclass(frozen=True)
class RunResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class OutputSink(Protocol):
    def write(self, text: str) -> None:
        ...


class ExecutionEngine(Protocol):
    async def run(self, request: RunRequest) -> RunResult:
        ...

    async def run_with_output(self, request: RunRequest, sink: OutputSink) -> RunResult:
        ...

    async def run_json(self, request: RunRequest) -> Any:
        ...
