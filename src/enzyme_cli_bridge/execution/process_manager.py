from __future__ import annotations

import asyncio
import codecs
import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from enzyme_cli_bridge.domain.contracts import (
    CommandSpec,
    OutputCallback,
    OutputSink,
    RunRequest,
    RunResult,
    WorkspaceRootProvider,
)
from enzyme_cli_bridge.domain.errors import (
    CommandFailedError,
    DisallowedCommandError,
    InvalidInputError,
    JsonParseError,
    RunCancelledError,
    RunTimeoutError,
    SpawnError,
)
from enzyme_cli_bridge.execution.policy import evaluate_command, get_safe_environment, validate_args
from enzyme_cli_bridge.execution.termination import TerminationPolicy
from enzyme_cli_bridge.observability.structured_log import log_json
from enzyme_cli_bridge.util import redact, resolve_workspace_root

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096
JSON_FLAG = "--json"

SpawnFn = Callable[..., Awaitable[Any]]


@dataclass
class _RunHandle:
    run_id: str
    argv: List[str]
    process: Any
    started_monotonic: float = field(default_factory=time.monotonic)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: str = ""
    settled: bool = False


class ProcessManager:
    """Spawns allowlisted commands and tracks every live child process."""

    def __init__(
        self,
        workspace_root: Union[None, str, Path, WorkspaceRootProvider] = None,
        terminator: Optional[TerminationPolicy] = None,
        spawn: Optional[SpawnFn] = None,
    ) -> None:
        self._workspace_root = workspace_root
        self._terminator = terminator or TerminationPolicy()
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._processes: Dict[str, _RunHandle] = {}
        self._background: Set[asyncio.Future] = set()

    @property
    def active_count(self) -> int:
        return len(self._processes)

    def active_run_ids(self) -> List[str]:
        return list(self._processes)

    async def run(self, request: RunRequest) -> RunResult:
        _require_arg_sequence(request.args)
        command = CommandSpec.coerce(request.command)
        decision = evaluate_command(command.executable)
        if not decision.allowed:
            log_json(
                logger,
                "process.run.blocked",
                level=logging.WARNING,
                command=command.executable,
                reason=decision.reason,
            )
            raise DisallowedCommandError(command.executable, decision.reason)

        # Leading args from the command string go through the same sanitizer.
        argv = [command.executable, *validate_args([*command.leading_args, *request.args])]
        cwd = self._resolve_cwd(request.cwd)
        run_id = "run-" + uuid.uuid4().hex[:16]
        try:
            process = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=get_safe_environment(request.env),
                start_new_session=True,
            )
        except OSError as exc:
            log_json(
                logger,
                "process.run.spawn_error",
                level=logging.ERROR,
                run_id=run_id,
                command=command.executable,
                error=str(exc),
            )
            raise SpawnError(command.executable, exc) from exc

        handle = _RunHandle(run_id=run_id, argv=argv, process=process)
        self._processes[run_id] = handle
        log_json(
            logger,
            "process.run.start",
            run_id=run_id,
            pid=getattr(process, "pid", None),
            argv=redact(" ".join(argv)),
            cwd=str(cwd) if cwd is not None else "",
            timeout_sec=request.timeout_sec,
        )
        if request.signal is not None and request.signal.is_set():
            handle.cancel_reason = "cancelled"
            handle.cancel_event.set()
        try:
            return await self._supervise(handle, request)
        finally:
            handle.settled = True
            self._processes.pop(run_id, None)

    async def run_with_output(self, request: RunRequest, sink: OutputSink) -> RunResult:
        _require_arg_sequence(request.args)
        command = CommandSpec.coerce(request.command)
        if evaluate_command(command.executable).allowed:
            shown = validate_args([*command.leading_args, *request.args])
            sink.write(redact("$ " + " ".join([command.executable, *shown])) + "\n")
        teed = replace(
            request,
            on_stdout=_tee(sink, request.on_stdout),
            on_stderr=_tee(sink, request.on_stderr),
        )
        return await self.run(teed)

    async def run_json(self, request: RunRequest) -> Any:
        _require_arg_sequence(request.args)
        args = list(request.args)
        if JSON_FLAG not in args:
            args.append(JSON_FLAG)
        env: Dict[str, Optional[str]] = {"FORCE_COLOR": "0", "NO_COLOR": "1"}
        env.update(request.env or {})
        result = await self.run(replace(request, args=args, env=env))
        if not result.success:
            raise CommandFailedError(result, command=CommandSpec.coerce(request.command).display())
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            log_json(logger, "process.run.json_error", level=logging.WARNING, error=str(exc))
            raise JsonParseError(result.stdout, detail=str(exc)) from exc

    def cancel(self, run_id: str) -> bool:
        handle = self._processes.get(run_id)
        if handle is None:
            return False
        handle.cancel_reason = handle.cancel_reason or "cancelled"
        handle.cancel_event.set()
        return True

    def cancel_all(self) -> int:
        return sum(1 for run_id in list(self._processes) if self.cancel(run_id))

    def dispose(self) -> None:
        handles = list(self._processes.values())
        self._processes.clear()
        for handle in handles:
            handle.cancel_reason = "disposed"
            handle.cancel_event.set()
            try:
                self._terminator.terminate(handle.process, group=True)
            except Exception:
                logger.exception("Failed to terminate %s during dispose.", handle.run_id)
        if handles:
            log_json(logger, "process.dispose", terminated=len(handles))

    async def _supervise(self, handle: _RunHandle, request: RunRequest) -> RunResult:
        process = handle.process
        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        exit_task = asyncio.ensure_future(
            self._collect(handle, stdout_parts, stderr_parts, request.on_stdout, request.on_stderr)
        )
        cancel_task = asyncio.ensure_future(_wait_cancelled(handle.cancel_event, request.signal))
        try:
            done, _ = await asyncio.wait(
                {exit_task, cancel_task},
                timeout=request.timeout_sec or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            self._abort(handle, exit_task)
            raise
        finally:
            cancel_task.cancel()

        elapsed_ms = int((time.monotonic() - handle.started_monotonic) * 1000)
        # A requested cancel wins over an exit it caused.
        cancelled = (
            cancel_task in done
            or handle.cancel_event.is_set()
            or (request.signal is not None and request.signal.is_set())
        )
        if exit_task in done and not cancelled:
            self._terminator.disarm(process)
            exit_code = exit_task.result()
            result = RunResult(
                stdout="".join(stdout_parts),
                stderr="".join(stderr_parts),
                exit_code=exit_code,
            )
            log_json(
                logger,
                "process.run.finish",
                run_id=handle.run_id,
                exit_code=exit_code,
                status="completed" if result.success else "failed",
                duration_ms=elapsed_ms,
            )
            if result.stdout:
                logger.debug("%s stdout:\n%s", handle.run_id, redact(result.stdout))
            if result.stderr:
                logger.debug("%s stderr:\n%s", handle.run_id, redact(result.stderr))
            return result

        self._abort(handle, exit_task)
        stdout, stderr = "".join(stdout_parts), "".join(stderr_parts)
        if cancelled:
            log_json(
                logger,
                "process.run.cancelled",
                run_id=handle.run_id,
                reason=handle.cancel_reason or "cancelled",
                duration_ms=elapsed_ms,
            )
            raise RunCancelledError(handle.run_id, stdout=stdout, stderr=stderr)
        log_json(
            logger,
            "process.run.timeout",
            level=logging.WARNING,
            run_id=handle.run_id,
            timeout_sec=request.timeout_sec,
        )
        raise RunTimeoutError(handle.run_id, float(request.timeout_sec or 0), stdout=stdout, stderr=stderr)

    async def _collect(
        self,
        handle: _RunHandle,
        stdout_parts: List[str],
        stderr_parts: List[str],
        on_stdout: Optional[OutputCallback],
        on_stderr: Optional[OutputCallback],
    ) -> int:
        process = handle.process
        await asyncio.gather(
            _pump(handle, process.stdout, stdout_parts, on_stdout),
            _pump(handle, process.stderr, stderr_parts, on_stderr),
        )
        returncode = await process.wait()
        return int(returncode or 0)

    def _abort(self, handle: _RunHandle, exit_task: asyncio.Future) -> None:
        handle.settled = True
        process = handle.process
        if exit_task.done():
            self._terminator.disarm(process)
            return
        # Pending output means the session is still alive even if the leader exited.
        self._terminator.terminate(process, group=True)
        self._background.add(exit_task)
        exit_task.add_done_callback(lambda task: self._reap(process, task))

    def _reap(self, process: Any, task: asyncio.Future) -> None:
        self._background.discard(task)
        self._terminator.disarm(process)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Terminated process %s ended with error: %s", getattr(process, "pid", "?"), exc)

    def _resolve_cwd(self, cwd: Optional[Path]) -> Optional[Path]:
        if cwd is not None:
            return Path(cwd).expanduser().resolve()
        return resolve_workspace_root(self._workspace_root)


async def _pump(
    handle: _RunHandle,
    stream: Optional[asyncio.StreamReader],
    parts: List[str],
    callback: Optional[OutputCallback],
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            parts.append(text)
            if callback is not None and not handle.settled:
                try:
                    callback(text)
                except Exception:
                    logger.exception("Output callback failed for %s.", handle.run_id)
        if not chunk:
            return


async def _wait_cancelled(own: asyncio.Event, external: Optional[asyncio.Event]) -> None:
    waiters = [asyncio.ensure_future(own.wait())]
    if external is not None:
        waiters.append(asyncio.ensure_future(external.wait()))
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()


def _require_arg_sequence(args: Any) -> None:
    if isinstance(args, (str, bytes)):
        raise InvalidInputError("Run arguments must be a sequence of strings, not a single string.")


def _tee(sink: OutputSink, callback: Optional[OutputCallback]) -> OutputCallback:
    def _write(text: str) -> None:
        sink.write(text)
        if callback is not None:
            callback(text)

    return _write
