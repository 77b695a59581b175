"""Runtime module for subprocess management and event streaming.

This module provides isolated process execution with reliable termination
and a merged event stream of a child's output and exit status.
"""

from __future__ import annotations

from .event_stream import EventStream
from .events import ExitStatus, OutputEvent, StderrLine, StdoutLine, Terminated
from .process_runner import ProcessRunner, ProcessSpec, kill_process_tree_sync

__all__ = [
    "EventStream",
    "ExitStatus",
    "OutputEvent",
    "ProcessRunner",
    "ProcessSpec",
    "StderrLine",
    "StdoutLine",
    "Terminated",
    "kill_process_tree_sync",
]
