import asyncio
import os
import sys
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from enzyme_cli_bridge.domain.contracts import CommandSpec, RunRequest
from enzyme_cli_bridge.domain.errors import (
    CommandFailedError,
    DisallowedCommandError,
    InvalidInputError,
    JsonParseError,
    RunCancelledError,
    RunTimeoutError,
    SpawnError,
)
from enzyme_cli_bridge.execution import policy
from enzyme_cli_bridge.execution.process_manager import ProcessManager
from enzyme_cli_bridge.execution.termination import TerminationPolicy

SCRIPTS = {
    "exit7.py": "import sys\nsys.stdout.write('out\\n')\nsys.stderr.write('err\\n')\nsys.exit(7)\n",
    "sleep.py": "import time\nprint('started', flush=True)\ntime.sleep(5)\n",
    "echo_args.py": "import sys\nprint('|'.join(sys.argv[1:]))\n",
    "env.py": "import os\nprint(os.environ.get('LEAKY_SECRET', 'missing'))\nprint(os.environ.get('FORCE_COLOR', ''))\n",
    "cwd.py": "import os\nprint(os.getcwd())\n",
    "json_ok.py": "import json, sys\nprint(json.dumps({'files': 3, 'args': sys.argv[1:]}))\n",
    "json_bad.py": "print('Analyzing... {not json')\n",
    "json_fail.py": "import sys\nsys.stderr.write('analyze crashed\\n')\nsys.exit(2)\n",
    "chunks.py": "import sys, time\nfor i in range(3):\n    print('chunk', i, flush=True)\n    time.sleep(0.05)\n",
    "orphan.py": "import subprocess, sys\nchild = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(5)'])\nprint(child.pid, flush=True)\n",
    "trap_term.py": (
        "import signal, sys, time\n"
        "def on_term(signum, frame):\n"
        "    with open(sys.argv[1], 'a') as fh:\n"
        "        fh.write('T')\n"
        "signal.signal(signal.SIGTERM, on_term)\n"
        "print('ready', flush=True)\n"
        "while True:\n"
        "    time.sleep(0.1)\n"
    ),
}


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # Zombies still answer kill(0) until their new parent reaps them.
    stat = Path(f"/proc/{pid}/stat")
    try:
        return stat.read_text().rsplit(")", 1)[-1].split()[0] != "Z"
    except (OSError, IndexError):
        return True


class _ListSink:
    def __init__(self) -> None:
        self.chunks = []

    def write(self, text: str) -> None:
        self.chunks.append(text)


@unittest.skipUnless(os.name == "posix", "process groups are POSIX only")
class TestProcessManager(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        for name, body in SCRIPTS.items():
            (self.root / name).write_text(body, encoding="utf-8")
        # The interpreter stands in for node; its basename joins the allowlist.
        allowed = policy.ALLOWED_COMMANDS | {policy.command_basename(sys.executable)}
        self._allow = patch.object(policy, "ALLOWED_COMMANDS", allowed)
        self._allow.start()
        self.terminator = TerminationPolicy(grace_sec=1.0)
        self.manager = ProcessManager(workspace_root=self.root, terminator=self.terminator)

    async def asyncTearDown(self):
        self.manager.dispose()
        await self._wait_for(lambda: self.terminator.pending_kills == 0)

    def tearDown(self):
        self._allow.stop()
        self._tmp.cleanup()

    def _request(self, script: str, *args: str, **kwargs) -> RunRequest:
        return RunRequest(
            command=CommandSpec(executable=sys.executable),
            args=[str(self.root / script), *args],
            **kwargs,
        )

    async def _wait_for(self, predicate, timeout_sec: float = 3.0):
        deadline = time.monotonic() + timeout_sec
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(0.01)
        return False

    async def test_nonzero_exit_resolves_with_output(self):
        result = await self.manager.run(self._request("exit7.py"))
        self.assertEqual(result.exit_code, 7)
        self.assertFalse(result.success)
        self.assertEqual(result.stdout, "out\n")
        self.assertEqual(result.stderr, "err\n")
        self.assertEqual(self.manager.active_count, 0)

    async def test_timeout_rejects_and_terminates(self):
        started = time.monotonic()
        with self.assertRaises(RunTimeoutError) as ctx:
            await self.manager.run(self._request("sleep.py", timeout_sec=0.05))
        self.assertLess(time.monotonic() - started, 0.5)
        self.assertEqual(self.manager.active_count, 0)
        self.assertEqual(ctx.exception.code, "ERR_EXEC_TIMEOUT")
        self.assertIn("Execution timeout", str(ctx.exception))
        self.assertTrue(await self._wait_for(lambda: self.terminator.pending_kills == 0))

    async def test_signal_cancels_run(self):
        signal_event = asyncio.Event()
        task = asyncio.ensure_future(self.manager.run(self._request("sleep.py", signal=signal_event)))
        self.assertTrue(await self._wait_for(lambda: self.manager.active_count == 1))
        signal_event.set()
        with self.assertRaises(RunCancelledError):
            await task
        self.assertEqual(self.manager.active_count, 0)

    async def test_pre_set_signal_cancels_immediately(self):
        signal_event = asyncio.Event()
        signal_event.set()
        with self.assertRaises(RunCancelledError):
            await self.manager.run(self._request("sleep.py", signal=signal_event))

    async def test_cancel_by_run_id(self):
        task = asyncio.ensure_future(self.manager.run(self._request("sleep.py")))
        self.assertTrue(await self._wait_for(lambda: self.manager.active_count == 1))
        run_id = self.manager.active_run_ids()[0]
        self.assertTrue(run_id.startswith("run-"))
        self.assertTrue(self.manager.cancel(run_id))
        self.assertFalse(self.manager.cancel("run-unknown"))
        with self.assertRaises(RunCancelledError) as ctx:
            await task
        self.assertEqual(ctx.exception.run_id, run_id)

    async def test_cancel_all(self):
        tasks = [asyncio.ensure_future(self.manager.run(self._request("sleep.py"))) for _ in range(2)]
        self.assertTrue(await self._wait_for(lambda: self.manager.active_count == 2))
        self.assertEqual(self.manager.cancel_all(), 2)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        self.assertTrue(all(isinstance(item, RunCancelledError) for item in results))
        self.assertEqual(self.manager.cancel_all(), 0)

    async def test_caller_cancellation_terminates_child(self):
        task = asyncio.ensure_future(self.manager.run(self._request("sleep.py")))
        self.assertTrue(await self._wait_for(lambda: self.manager.active_count == 1))
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.manager.active_count, 0)
        self.assertTrue(await self._wait_for(lambda: self.terminator.pending_kills == 0))

    async def test_dispose_empties_registry(self):
        tasks = [asyncio.ensure_future(self.manager.run(self._request("sleep.py"))) for _ in range(2)]
        self.assertTrue(await self._wait_for(lambda: self.manager.active_count == 2))
        self.manager.dispose()
        self.assertEqual(self.manager.active_count, 0)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for item in results:
            self.assertIsInstance(item, RunCancelledError)
        self.manager.dispose()
        self.assertEqual(self.manager.active_count, 0)

    async def test_dispose_sends_a_single_sigterm(self):
        marker = self.root / "terms.log"
        ready = asyncio.Event()

        def on_stdout(text):
            if "ready" in text:
                ready.set()

        task = asyncio.ensure_future(
            self.manager.run(self._request("trap_term.py", str(marker), on_stdout=on_stdout))
        )
        await asyncio.wait_for(ready.wait(), timeout=3)
        self.manager.dispose()
        with self.assertRaises(RunCancelledError):
            await task
        # The child ignores SIGTERM, so it lives until the forced kill.
        self.assertTrue(await self._wait_for(lambda: self.terminator.pending_kills == 0))
        self.assertEqual(marker.read_text(encoding="utf-8"), "T")

    async def test_timeout_reaches_descendants_of_exited_leader(self):
        with self.assertRaises(RunTimeoutError) as ctx:
            await self.manager.run(self._request("orphan.py", timeout_sec=0.5))
        descendant = int(ctx.exception.stdout.split()[0])
        self.assertTrue(
            await self._wait_for(
                lambda: not _pid_running(descendant),
                timeout_sec=self.terminator.grace_sec + 1.5,
            )
        )
        self.assertTrue(await self._wait_for(lambda: self.terminator.pending_kills == 0))

    async def test_dispose_with_empty_registry_is_noop(self):
        self.manager.dispose()
        self.assertEqual(self.manager.active_count, 0)

    async def test_concurrent_runs_have_independent_timeouts(self):
        slow = self.manager.run(self._request("sleep.py", timeout_sec=0.1))
        fast = self.manager.run(self._request("echo_args.py", "ok", timeout_sec=5))
        slow_result, fast_result = await asyncio.gather(slow, fast, return_exceptions=True)
        self.assertIsInstance(slow_result, RunTimeoutError)
        self.assertEqual(fast_result.exit_code, 0)
        self.assertEqual(fast_result.stdout.strip(), "ok")
        self.assertEqual(self.manager.active_count, 0)

    async def test_arguments_are_sanitized(self):
        result = await self.manager.run(self._request("echo_args.py", "a;b", "$(id)", "plain-name"))
        self.assertEqual(result.stdout.strip(), "ab|id|plain-name")

    async def test_child_environment_is_whitelisted(self):
        with patch.dict(os.environ, {"LEAKY_SECRET": "s3cr3t"}):
            result = await self.manager.run(self._request("env.py"))
        self.assertEqual(result.stdout.split(), ["missing", "1"])

    async def test_workspace_root_is_default_cwd(self):
        result = await self.manager.run(self._request("cwd.py"))
        self.assertEqual(Path(result.stdout.strip()).resolve(), self.root)

    async def test_streaming_callbacks_receive_chunks(self):
        seen = []
        result = await self.manager.run(self._request("chunks.py", on_stdout=seen.append))
        self.assertEqual("".join(seen), result.stdout)
        self.assertIn("chunk 2", result.stdout)

    async def test_run_with_output_writes_header_and_output(self):
        sink = _ListSink()
        result = await self.manager.run_with_output(self._request("echo_args.py", "hello"), sink)
        self.assertTrue(sink.chunks[0].startswith("$ "))
        self.assertIn("echo_args.py hello", sink.chunks[0])
        self.assertEqual("".join(sink.chunks[1:]), result.stdout)

    async def test_run_json_parses_stdout(self):
        data = await self.manager.run_json(self._request("json_ok.py"))
        self.assertEqual(data["files"], 3)
        self.assertEqual(data["args"], ["--json"])

    async def test_run_json_malformed_output(self):
        with self.assertRaises(JsonParseError) as ctx:
            await self.manager.run_json(self._request("json_bad.py"))
        self.assertIn("Analyzing", ctx.exception.stdout)

    async def test_run_json_command_failure_is_distinct(self):
        with self.assertRaises(CommandFailedError) as ctx:
            await self.manager.run_json(self._request("json_fail.py"))
        self.assertEqual(ctx.exception.exit_code, 2)
        self.assertIn("analyze crashed", str(ctx.exception))

    async def test_missing_executable_raises_spawn_error(self):
        request = RunRequest(command=CommandSpec(executable=str(self.root / "missing" / "node")))
        with self.assertRaises(SpawnError) as ctx:
            await self.manager.run(request)
        self.assertIsInstance(ctx.exception.os_error, FileNotFoundError)
        self.assertEqual(self.manager.active_count, 0)


class TestProcessManagerPolicy(unittest.IsolatedAsyncioTestCase):
    async def test_disallowed_command_never_spawns(self):
        spawn = AsyncMock()
        manager = ProcessManager(spawn=spawn)
        for command in ("bash", "/bin/sh -c whoami", "python3", ""):
            with self.assertRaises(DisallowedCommandError):
                await manager.run(RunRequest(command=command, args=["-c", "echo hi"]))
        spawn.assert_not_called()
        self.assertEqual(manager.active_count, 0)

    async def test_disallowed_command_with_sink_writes_nothing(self):
        sink = _ListSink()
        manager = ProcessManager(spawn=AsyncMock())
        with self.assertRaises(DisallowedCommandError):
            await manager.run_with_output(RunRequest(command="curl", args=["http://example.com"]), sink)
        self.assertEqual(sink.chunks, [])

    async def test_string_args_are_rejected_before_spawn(self):
        spawn = AsyncMock()
        manager = ProcessManager(spawn=spawn)
        request = RunRequest(command="enzyme", args="generate")
        with self.assertRaises(InvalidInputError):
            await manager.run(request)
        with self.assertRaises(InvalidInputError):
            await manager.run_with_output(request, _ListSink())
        with self.assertRaises(InvalidInputError):
            await manager.run_json(request)
        spawn.assert_not_called()

    async def test_string_command_is_split_and_sanitized(self):
        spawn = AsyncMock(side_effect=FileNotFoundError(2, "No such file"))
        manager = ProcessManager(spawn=spawn)
        with self.assertRaises(SpawnError):
            await manager.run(RunRequest(command="npx --yes @enzymejs/cli", args=["generate;", "page"]))
        argv = spawn.call_args.args
        self.assertEqual(argv, ("npx", "--yes", "@enzymejs/cli", "generate", "page"))
        kwargs = spawn.call_args.kwargs
        self.assertTrue(kwargs["start_new_session"])
        self.assertEqual(kwargs["env"]["FORCE_COLOR"], "1")


if __name__ == "__main__":
    unittest.main()
