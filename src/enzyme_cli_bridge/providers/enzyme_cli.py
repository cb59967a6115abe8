from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from enzyme_cli_bridge.config import Settings
from enzyme_cli_bridge.domain.contracts import (
    CommandSpec,
    ExecutionEngine,
    InstallKind,
    OutputSink,
    RunRequest,
    RunResult,
    ToolInfo,
)
from enzyme_cli_bridge.domain.errors import (
    CliBridgeError,
    CommandFailedError,
    InvalidInputError,
    ToolNotFoundError,
)
from enzyme_cli_bridge.observability.structured_log import log_json
from enzyme_cli_bridge.providers.operations import (
    build_add_args,
    build_analyze_args,
    build_doctor_args,
    build_generate_args,
    build_install_command,
)
from enzyme_cli_bridge.providers.registry_client import NpmRegistryClient
from enzyme_cli_bridge.services.cli_detector import CliDetector, satisfies_version, version_tuple

logger = logging.getLogger(__name__)


class EnzymeCliProvider:
    """Task-level Enzyme CLI operations on top of detection and execution."""

    def __init__(
        self,
        detector: CliDetector,
        engine: ExecutionEngine,
        settings: Optional[Settings] = None,
        registry: Optional[NpmRegistryClient] = None,
    ) -> None:
        self._detector = detector
        self._engine = engine
        self._settings = settings or Settings()
        self._registry = registry or NpmRegistryClient(base_url=self._settings.registry_url)

    async def get_version(self) -> Optional[str]:
        return await self._detector.get_version()

    async def generate(
        self,
        kind: str,
        name: str,
        options: Optional[Mapping[str, Any]] = None,
        *,
        cwd: Optional[Path] = None,
        signal: Optional[asyncio.Event] = None,
        sink: Optional[OutputSink] = None,
    ) -> RunResult:
        args = build_generate_args(kind, name, options)
        return await self._run_operation("generate", args, cwd=cwd, signal=signal, sink=sink)

    async def add_feature(
        self,
        feature: str,
        options: Optional[Mapping[str, Any]] = None,
        *,
        cwd: Optional[Path] = None,
        signal: Optional[asyncio.Event] = None,
        sink: Optional[OutputSink] = None,
    ) -> RunResult:
        args = build_add_args(feature, options)
        return await self._run_operation("add", args, cwd=cwd, signal=signal, sink=sink)

    async def analyze(
        self,
        options: Optional[Mapping[str, Any]] = None,
        *,
        cwd: Optional[Path] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> Any:
        args = build_analyze_args(options)
        command = await self._require_command()
        log_json(logger, "provider.operation.start", provider="enzyme_cli", operation="analyze")
        return await self._engine.run_json(self._request(command, args, cwd=cwd, signal=signal))

    async def doctor(
        self,
        options: Optional[Mapping[str, Any]] = None,
        *,
        cwd: Optional[Path] = None,
        sink: Optional[OutputSink] = None,
    ) -> RunResult:
        args = build_doctor_args(options)
        return await self._run_operation("doctor", args, cwd=cwd, sink=sink)

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        signal: Optional[asyncio.Event] = None,
        sink: Optional[OutputSink] = None,
        timeout_sec: Optional[float] = None,
    ) -> RunResult:
        if isinstance(args, (str, bytes)):
            raise InvalidInputError("Pass CLI arguments as a list, not a single string.")
        return await self._run_operation(
            "run", list(args), cwd=cwd, signal=signal, sink=sink, timeout_sec=timeout_sec
        )

    async def install(
        self,
        package_manager: Optional[str] = None,
        global_install: bool = True,
        version: Optional[str] = None,
        sink: Optional[OutputSink] = None,
    ) -> ToolInfo:
        manager = package_manager or self._detector.detect_package_manager()
        executable, args = build_install_command(
            manager,
            self._settings.package_name,
            global_install=global_install,
            version=version,
        )
        log_json(
            logger,
            "provider.install.start",
            provider="enzyme_cli",
            package_manager=manager,
            global_install=global_install,
            version=version or "latest",
        )
        request = RunRequest(
            command=CommandSpec(executable=executable),
            args=args,
            cwd=self._detector.workspace_root,
            timeout_sec=self._settings.exec_timeout_sec,
        )
        if sink is not None:
            result = await self._engine.run_with_output(request, sink)
        else:
            result = await self._engine.run(request)
        if not result.success:
            raise CommandFailedError(result, command=executable)

        self._detector.clear_cache()
        info = await self._detector.detect(force_refresh=True)
        if info is None:
            raise ToolNotFoundError(self._settings.tool_name)
        log_json(logger, "provider.install.finish", provider="enzyme_cli", version=info.version)
        return info

    async def update(self, sink: Optional[OutputSink] = None) -> ToolInfo:
        info = await self._detector.detect()
        if info is None:
            raise ToolNotFoundError(self._settings.tool_name)
        return await self.install(
            package_manager=self._detector.detect_package_manager(),
            global_install=info.install_kind == InstallKind.GLOBAL,
            sink=sink,
        )

    async def check_for_update(self) -> Dict[str, Any]:
        current = await self._detector.get_version()
        latest = await self._registry.latest_version(self._settings.package_name)
        return {
            "current": current,
            "latest": latest,
            "update_available": current is not None and version_tuple(latest) > version_tuple(current),
        }

    async def meets_minimum_version(self, required: str) -> bool:
        current = await self._detector.get_version()
        if current is None:
            return False
        return satisfies_version(current, required)

    async def health(self) -> Dict[str, Any]:
        info = await self._detector.detect()
        if info is None:
            return {
                "provider": "enzyme_cli",
                "status": "unhealthy",
                "reason": "cli_not_found",
            }
        try:
            result = await self._engine.run(
                self._request(info.command, ["--version"], timeout_sec=self._settings.probe_timeout_sec)
            )
        except CliBridgeError as exc:
            return {
                "provider": "enzyme_cli",
                "status": "unhealthy",
                "reason": exc.code,
                "detection": info.to_dict(),
            }
        if not result.success:
            return {
                "provider": "enzyme_cli",
                "status": "unhealthy",
                "reason": "version_check_nonzero",
                "exit_code": result.exit_code,
                "detection": info.to_dict(),
            }
        return {
            "provider": "enzyme_cli",
            "status": "healthy",
            "version": info.version,
            "detection": info.to_dict(),
        }

    def dispose(self) -> None:
        dispose = getattr(self._engine, "dispose", None)
        if dispose is not None:
            dispose()

    async def _run_operation(
        self,
        operation: str,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        signal: Optional[asyncio.Event] = None,
        sink: Optional[OutputSink] = None,
        timeout_sec: Optional[float] = None,
    ) -> RunResult:
        command = await self._require_command()
        request = self._request(command, args, cwd=cwd, signal=signal, timeout_sec=timeout_sec)
        log_json(logger, "provider.operation.start", provider="enzyme_cli", operation=operation)
        if sink is not None:
            result = await self._engine.run_with_output(request, sink)
        else:
            result = await self._engine.run(request)
        log_json(
            logger,
            "provider.operation.finish",
            provider="enzyme_cli",
            operation=operation,
            exit_code=result.exit_code,
            status="completed" if result.success else "failed",
        )
        return result

    async def _require_command(self) -> CommandSpec:
        command = await self._detector.get_command()
        if command is None:
            raise ToolNotFoundError(self._settings.tool_name)
        return command

    def _request(
        self,
        command: CommandSpec,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        signal: Optional[asyncio.Event] = None,
        timeout_sec: Optional[float] = None,
    ) -> RunRequest:
        return RunRequest(
            command=command,
            args=list(args),
            cwd=cwd or self._detector.workspace_root,
            timeout_sec=timeout_sec or self._settings.exec_timeout_sec,
            signal=signal,
        )
