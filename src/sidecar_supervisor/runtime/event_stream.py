"""Merged stdout/stderr/termination event stream for a running subprocess.

sidecar-supervisor runtime module v0.1.0

Two pump tasks drain stdout and stderr line by line into one bounded
anyio memory object stream while the producer waits for the process to
exit. After the exit the pumps get a drain window to reach EOF, then a
single Terminated event is sent, so every line written before the exit
is delivered before the termination notice.

Helpers forked by the sidecar inherit its stdout/stderr and can keep the
pipes open after the sidecar is gone. When the drain window expires the
pumps are cancelled; anything those helpers print later is not relayed.

Key design points:
- No polling: pumps suspend on the pipe reads, the consumer on receive()
- Bounded buffer: a slow consumer applies backpressure to the pumps
- Per-stream order is preserved, stdout/stderr interleaving is not
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Callable

import anyio
from anyio.streams.memory import MemoryObjectSendStream

from .events import ExitStatus, OutputEvent, StderrLine, StdoutLine, Terminated
from .process_runner import wait_exited

__all__ = ["EventStream", "iter_lines"]

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_SIZE = 256
DEFAULT_DRAIN_TIMEOUT = 1.0


def _utf8_boundary(data: bytes) -> int:
    """Length of the longest prefix that does not end inside a UTF-8 sequence."""
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            # Continuation byte, keep looking for the lead byte
            continue
        if byte < 0xC0:
            return len(data)
        needed = 2 if byte < 0xE0 else 3 if byte < 0xF0 else 4
        return len(data) - back if needed > back else len(data)
    return len(data)


async def iter_lines(reader: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield lines from a stream reader until EOF.

    A line longer than the reader's limit is yielded as successive chunks
    instead of raising; chunks are split on UTF-8 character boundaries. A
    trailing line without newline is yielded at EOF.

    Args:
        reader: The subprocess pipe reader

    Yields:
        Raw lines (newline included when present)
    """
    after_overrun = False
    carry = b""
    while True:
        try:
            line = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            rest = carry + e.partial
            if rest:
                yield rest
            return
        except asyncio.LimitOverrunError as e:
            chunk = carry + await reader.readexactly(e.consumed)
            cut = _utf8_boundary(chunk)
            carry = chunk[cut:]
            if cut:
                yield chunk[:cut]
            after_overrun = True
            continue

        line = carry + line
        carry = b""
        # The newline that terminated an oversized line
        if after_overrun and not line.strip(b"\r\n"):
            after_overrun = False
            continue
        after_overrun = False
        yield line


class EventStream:
    """Async iterator of OutputEvent values for one subprocess.

    Example:
        events = EventStream(process)
        events.start()
        async for event in events:
            ...
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
    ) -> None:
        self._process = process
        self._drain_timeout = drain_timeout
        self._send, self._receive = anyio.create_memory_object_stream(max_buffer_size)
        self._producer: asyncio.Task[None] | None = None
        self._open_pumps = 0
        self._pumps_done: anyio.Event | None = None
        self._finished = False
        self._closed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def is_closed(self) -> bool:
        """True once the termination event was consumed or aclose() was called."""
        return self._finished or self._closed

    def start(self) -> None:
        """Start draining the pipes. Safe to call more than once."""
        if self._producer is None and not self._closed:
            self._producer = asyncio.create_task(
                self._produce(), name=f"event-stream-{self._process.pid}"
            )

    async def _produce(self) -> None:
        """Pump both pipes until the process exits, then report the exit status."""
        pid = self._process.pid
        self._pumps_done = anyio.Event()
        self._open_pumps = 2
        try:
            async with self._send:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(self._pump, self._process.stdout, StdoutLine, self._send.clone())
                    tg.start_soon(self._pump, self._process.stderr, StderrLine, self._send.clone())

                    returncode = await wait_exited(self._process)
                    with anyio.move_on_after(self._drain_timeout):
                        await self._pumps_done.wait()
                    if not self._pumps_done.is_set():
                        logger.debug(
                            f"Output pipes of pid={pid} still open {self._drain_timeout}s "
                            f"after exit, held by descendants"
                        )
                    tg.cancel_scope.cancel()

                status = ExitStatus.from_returncode(returncode)
                logger.debug(f"Subprocess exited pid={pid} {status}")
                try:
                    await self._send.send(Terminated(status))
                except anyio.BrokenResourceError:
                    pass
        except Exception as e:
            logger.warning(f"Event stream failed pid={pid}: {e}")

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        make_event: Callable[[bytes], OutputEvent],
        send: MemoryObjectSendStream,
    ) -> None:
        """Forward every line of one pipe into the shared channel."""
        try:
            async with send:
                if reader is None:
                    return
                async for line in iter_lines(reader):
                    try:
                        await send.send(make_event(line))
                    except anyio.BrokenResourceError:
                        # Consumer is gone
                        return
        finally:
            self._open_pumps -= 1
            if self._open_pumps == 0 and self._pumps_done is not None:
                self._pumps_done.set()

    def __aiter__(self) -> "EventStream":
        self.start()
        return self

    async def __anext__(self) -> OutputEvent:
        if self.is_closed:
            raise StopAsyncIteration
        try:
            event = await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            self._finished = True
            self._receive.close()
            raise StopAsyncIteration
        if isinstance(event, Terminated):
            self._finished = True
            self._receive.close()
        return event

    async def aclose(self) -> None:
        """Stop the producer and release the channel."""
        if self._closed:
            return
        self._closed = True
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass
        self._send.close()
        await self._receive.aclose()
