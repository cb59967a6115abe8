from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any, Dict

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SEC = 5.0


class TerminationPolicy:
    """Graceful-then-forced termination for child processes.

    ``terminate`` sends SIGTERM to the child's process group and arms a SIGKILL
    timer; ``disarm`` must be called once the child has exited. Termination is
    one-shot per pid: repeated calls while a kill is armed send nothing.

    With ``group=True`` the group is signalled even after its leader exited;
    descendants left in the session may still hold the leader's pipes.
    """

    def __init__(self, grace_sec: float = TERMINATE_GRACE_SEC) -> None:
        self._grace_sec = max(0.0, float(grace_sec))
        self._timers: Dict[int, asyncio.TimerHandle] = {}

    @property
    def grace_sec(self) -> float:
        return self._grace_sec

    @property
    def pending_kills(self) -> int:
        return len(self._timers)

    def terminate(self, process: Any, group: bool = False) -> None:
        if process.returncode is not None and not group:
            return
        if process.pid in self._timers:
            return
        _signal_group(process, signal.SIGTERM)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; forced kill for pid %s not scheduled.", process.pid)
            return
        self._timers[process.pid] = loop.call_later(self._grace_sec, self._force_kill, process, group)

    def kill(self, process: Any) -> None:
        self.disarm(process)
        if process.returncode is None:
            _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))

    def disarm(self, process: Any) -> None:
        timer = self._timers.pop(process.pid, None)
        if timer is not None:
            timer.cancel()

    def _force_kill(self, process: Any, group: bool = False) -> None:
        self._timers.pop(process.pid, None)
        if process.returncode is not None and not group:
            return
        logger.warning("Process group %s ignored SIGTERM for %.1fs; sending SIGKILL.", process.pid, self._grace_sec)
        _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))


def _signal_group(process: Any, sig: int) -> None:
    killpg = getattr(os, "killpg", None)
    if killpg is not None:
        try:
            killpg(process.pid, sig)
            return
        except ProcessLookupError:
            return
        except OSError:
            pass
    # Fallback to direct process signaling if pgid kill fails.
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        return
