"""Output events produced by a running sidecar process.

sidecar-supervisor runtime module v0.1.0

Events are transient values handed from the event stream to the relay:
- StdoutLine / StderrLine carry one raw line (bytes, newline included)
- Terminated carries the exit status and is always the last event
"""

from __future__ import annotations

import signal
import sys
from dataclasses import dataclass
from typing import Union

__all__ = [
    "ExitStatus",
    "OutputEvent",
    "StderrLine",
    "StdoutLine",
    "Terminated",
]

IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class ExitStatus:
    """Exit status of a terminated process.

    Exactly one of ``code`` / ``signal`` is set when built from a
    return code. On POSIX a negative asyncio return code means the
    process was killed by that signal.

    Attributes:
        code: Exit code if the process exited normally
        signal: Signal number if the process was killed by a signal
    """

    code: int | None = None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        if returncode < 0 and not IS_WINDOWS:
            return cls(signal=-returncode)
        return cls(code=returncode)

    @property
    def success(self) -> bool:
        return self.code == 0

    @property
    def kind(self) -> str:
        """Classification: exited (code 0), crashed (non-zero) or signaled."""
        if self.signal is not None:
            return "signaled"
        if self.code == 0:
            return "exited"
        return "crashed"

    def describe(self) -> str:
        if self.signal is not None:
            try:
                name = signal.Signals(self.signal).name
            except ValueError:
                name = "unknown"
            return f"signal={self.signal} ({name})"
        return f"code={self.code}"

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class StdoutLine:
    """One line read from the child's stdout."""

    data: bytes


@dataclass(frozen=True)
class StderrLine:
    """One line read from the child's stderr."""

    data: bytes


@dataclass(frozen=True)
class Terminated:
    """The child process exited. No events follow."""

    status: ExitStatus


OutputEvent = Union[StdoutLine, StderrLine, Terminated]
