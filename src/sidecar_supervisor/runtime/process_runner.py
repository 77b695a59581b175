"""Spawning and stopping the sidecar process.

sidecar-supervisor runtime module v0.1.0

The sidecar runs in its own session (POSIX) or process group (Windows) so
a Ctrl+C in the host's terminal reaches the host only. Stopping it is an
escalation: a polite stop signal to the whole group, a bounded wait, then a
hard kill and a second bounded wait.

Key design points:
- stdin is DEVNULL, stdout/stderr are pipes drained by the event stream
- Signals target the process group so helpers forked by the sidecar go too,
  even after the sidecar itself has exited
- wait_exited() reports the sidecar's own exit; Process.wait() only returns
  once every pipe is closed, which a surviving helper can delay forever
- kill_process_tree_sync() works without an event loop (atexit hooks)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import weakref
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
    "group_alive",
    "kill_process_tree_sync",
    "wait_exited",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0

# Longest line asyncio.StreamReader returns in one piece
DEFAULT_LINE_LIMIT = 2**16

# Interval for checking whether an orphaned process group is gone
_GROUP_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class ProcessSpec:
    """What to run.

    Attributes:
        argv: Executable followed by its arguments
        cwd: Working directory (None = the host's)
        env: Full environment (None = the host's)
        line_limit: Pipe reader limit in bytes
    """

    argv: list[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    line_limit: int = DEFAULT_LINE_LIMIT


class _ExitNotifyingProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also resolves a future when the process exits."""

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[None] = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


_exit_futures: "weakref.WeakKeyDictionary[asyncio.subprocess.Process, asyncio.Future[None]]" = (
    weakref.WeakKeyDictionary()
)


async def wait_exited(process: asyncio.subprocess.Process) -> int:
    """Wait for the process itself to exit, whatever happens to its pipes.

    Returns:
        The return code
    """
    exited = _exit_futures.get(process)
    if exited is None:
        # Not spawned by ProcessRunner
        return await process.wait()
    if process.returncode is None:
        await asyncio.shield(exited)
    return process.returncode


def _has_live_member(pgid: int) -> bool:
    """Whether the process group has a member that is not a zombie.

    Orphaned zombies still answer killpg(pgid, 0) until init reaps them,
    which some container init processes never do.
    """
    try:
        os.killpg(pgid, 0)
    except (ProcessLookupError, PermissionError):
        return False

    proc = Path("/proc")
    if not proc.is_dir():
        return True
    for entry in proc.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text()
        except OSError:
            continue
        # "pid (comm) state ppid pgrp ...", comm may contain spaces
        fields = stat.rsplit(")", 1)[-1].split()
        if len(fields) > 2 and fields[2] == str(pgid) and fields[0] != "Z":
            return True
    return False


def group_alive(process: asyncio.subprocess.Process) -> bool:
    """True while the process, or on POSIX any live member of its group, exists."""
    if process.returncode is None:
        return True
    if IS_WINDOWS:
        return False
    return _has_live_member(process.pid)


def _isolation_kwargs() -> dict[str, Any]:
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    # setsid(): the child leads a new process group whose pgid is its pid
    return {"start_new_session": True}


def _signal_group(process: asyncio.subprocess.Process, force: bool) -> None:
    """Deliver the stop (force=False) or kill (force=True) signal.

    Raises:
        ProcessLookupError: Nothing left to signal
    """
    if IS_WINDOWS:
        if force:
            process.kill()
            return
        try:
            # Only valid because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
        except OSError as e:
            logger.debug(f"CTRL_BREAK_EVENT failed pid={process.pid}, terminating: {e}")
            process.terminate()
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        raise
    except OSError as e:
        # Group not ours: fall back to the leader alone
        logger.debug(f"killpg({process.pid}, {sig.name}) failed: {e}")
        process.send_signal(sig)


@dataclass
class ProcessRunner:
    """Starts a sidecar and stops it with SIGTERM -> wait -> SIGKILL -> wait.

    Example:
        runner = ProcessRunner(term_timeout=2.0)
        process = await runner.spawn(ProcessSpec(argv=["server", "--parent-pid", "42"]))
        ...
        await runner.terminate(process)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the process and return without waiting on it.

        Raises:
            OSError: The OS refused to start it (missing file, permissions,
                bad executable format, resource limits)
        """
        kwargs = _isolation_kwargs()
        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        loop = asyncio.get_running_loop()
        transport, protocol = await loop.subprocess_exec(
            lambda: _ExitNotifyingProtocol(spec.line_limit, loop),
            *spec.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )
        process = asyncio.subprocess.Process(transport, protocol, loop)
        _exit_futures[process] = protocol.exited

        logger.debug(f"Spawned pid={process.pid} argv={spec.argv} cwd={spec.cwd}")
        return process

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop the process group.

        No-op once the process and (on POSIX) every member of its group are
        gone. A group left behind by an exited leader is still signalled.

        Cancelling the caller does not abandon the child: the escalation is
        shielded, and on cancellation it is run to completion before the
        CancelledError is re-raised.
        """
        if not group_alive(process):
            return
        try:
            await asyncio.shield(self._escalate(process))
        except asyncio.CancelledError:
            await self._escalate(process)
            raise

    async def _escalate(self, process: asyncio.subprocess.Process) -> None:
        pid = process.pid
        stages = ((False, self.term_timeout), (True, self.kill_timeout))
        try:
            for force, timeout in stages:
                if not group_alive(process):
                    return
                logger.debug(f"{'Killing' if force else 'Stopping'} process group pid={pid}")
                _signal_group(process, force)
                if await self._wait_stopped(process, timeout):
                    logger.debug(f"pid={pid} stopped returncode={process.returncode}")
                    return
            logger.warning(f"Process group pid={pid} still alive after SIGKILL")
        except ProcessLookupError:
            logger.debug(f"pid={pid} already exited")
        except Exception as e:
            logger.warning(f"Error stopping pid={pid}: {e}")

    async def _wait_stopped(self, process: asyncio.subprocess.Process, timeout: float) -> bool:
        """Wait until the leader exited and its group is empty."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await asyncio.wait_for(wait_exited(process), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        # No exit notification exists for the rest of the group
        while group_alive(process):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(_GROUP_POLL_INTERVAL)
        return True


def kill_process_tree_sync(pid: int) -> bool:
    """Hard-kill a spawned process (its whole group on POSIX), no event loop.

    Returns:
        True if the signal was delivered
    """
    try:
        if IS_WINDOWS:
            # Any non-CTRL_* signal maps to TerminateProcess
            os.kill(pid, signal.SIGTERM)
        else:
            os.killpg(pid, signal.SIGKILL)
        return True
    except (ProcessLookupError, PermissionError):
        return False
    except OSError as e:
        logger.debug(f"Sync kill failed pid={pid}: {e}")
        return False
