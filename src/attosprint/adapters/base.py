"""Process handles over agent subprocesses, plus PID and output-log helpers."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import Callable
from pathlib import Path

from attosprint.protocol.contracts import ExitCallback, OutputCallback
from attosprint.protocol.io import file_size, read_bytes_from

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 5.0
DEFAULT_POLL_SECONDS = 0.15
TAIL_READ_BYTES = 256 * 1024


def is_pid_alive(pid: int | None) -> bool:
    """True when *pid* names a live process (a zombie we cannot reap counts as alive)."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def kill_process_tree(pid: int, sig: int = signal.SIGTERM) -> None:
    """Signal the process group led by *pid*, then *pid* itself.

    Agents are spawned with ``start_new_session=True`` so the group holds
    every child the agent CLI started.  Our own group is never signalled.
    """
    try:
        pgid = os.getpgid(pid)
        if pgid != os.getpgrp():
            os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError, OSError):
        pass
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, PermissionError, OSError):
        pass


def schedule_termination(
    pid: int,
    grace_seconds: float,
    still_running: Callable[[], bool],
    kill: Callable[[int, int], None] = kill_process_tree,
) -> asyncio.TimerHandle:
    """SIGTERM the tree of *pid* now and SIGKILL it after *grace_seconds* if still running.

    Must be called from inside the event loop.  Cancel the returned handle
    once the process is known to have exited.
    """
    kill(pid, signal.SIGTERM)

    def force() -> None:
        if still_running():
            logger.warning("pid=%s ignored SIGTERM for %.1fs, sending SIGKILL", pid, grace_seconds)
            kill(pid, signal.SIGKILL)

    return asyncio.get_running_loop().call_later(grace_seconds, force)


class LogTail:
    """Incremental UTF-8 reader over an append-only log file."""

    def __init__(self, path: Path, offset: int | None = None) -> None:
        self.path = path
        self.offset = file_size(path) if offset is None else offset
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def read_new(self) -> str:
        """Everything appended since the last call (a split multibyte char waits for its tail)."""
        parts: list[str] = []
        while True:
            data = read_bytes_from(self.path, self.offset, TAIL_READ_BYTES)
            if not data:
                break
            self.offset += len(data)
            parts.append(self._decoder.decode(data))
            if len(data) < TAIL_READ_BYTES:
                break
        return "".join(parts)


class PidAgentHandle:
    """Handle over a process we did not spawn (re-attached after a restart)."""

    def __init__(self, pid: int, kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> None:
        self._pid = pid
        self._kill_grace_seconds = kill_grace_seconds
        self._force_kill: asyncio.TimerHandle | None = None

    @property
    def pid(self) -> int | None:
        return self._pid

    def kill(self) -> None:
        if self._force_kill is not None:
            return
        self._force_kill = schedule_termination(
            self._pid, self._kill_grace_seconds, lambda: is_pid_alive(self._pid)
        )


class SubprocessAgentHandle:
    """Handle over an agent CLI we spawned.

    The agent writes stdout and stderr straight into its output log, so
    the log keeps growing even if this supervisor goes away.  The handle
    tails the log into ``on_output`` and awaits ``on_exit`` once the
    process has exited and the last bytes were forwarded.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        tail: LogTail,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        self._process = process
        self._tail = tail
        self._on_output = on_output
        self._on_exit = on_exit
        self._kill_grace_seconds = kill_grace_seconds
        self._poll_seconds = poll_seconds
        self._watcher: asyncio.Task[None] | None = None
        self._force_kill: asyncio.TimerHandle | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def start(self) -> None:
        self._watcher = asyncio.create_task(self._watch())

    def kill(self) -> None:
        if self._process.returncode is not None or self._force_kill is not None:
            return
        self._force_kill = schedule_termination(
            self._process.pid, self._kill_grace_seconds, lambda: self._process.returncode is None
        )

    async def wait(self) -> int | None:
        if self._watcher is not None:
            await asyncio.shield(self._watcher)
        return self._process.returncode

    async def _watch(self) -> None:
        exited = asyncio.ensure_future(self._process.wait())
        while not exited.done():
            await asyncio.wait({exited}, timeout=self._poll_seconds)
            self._forward(self._tail.read_new())
        if self._force_kill is not None:
            self._force_kill.cancel()
        code = exited.result()
        try:
            await self._on_exit(code)
        except Exception:
            logger.exception("Agent exit handler failed (pid=%s)", self._process.pid)

    def _forward(self, text: str) -> None:
        if not text:
            return
        try:
            self._on_output(text)
        except Exception as exc:
            logger.debug("Agent output handler error: %s", exc)
