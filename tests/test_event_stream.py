"""EventStream unit tests.

Test coverage:
- Line splitting (partial last line, oversized lines, UTF-8 boundaries)
- Per-stream ordering and stream separation
- Termination notice is last and unique, even when descendants hold the pipes
- Closing the stream
"""

from __future__ import annotations

import asyncio
import sys

import pytest

from sidecar_supervisor.runtime.event_stream import EventStream, _utf8_boundary, iter_lines
from sidecar_supervisor.runtime.events import StderrLine, StdoutLine, Terminated
from sidecar_supervisor.runtime.process_runner import (
    IS_WINDOWS,
    ProcessRunner,
    ProcessSpec,
    kill_process_tree_sync,
)


def _reader(data: bytes, limit: int = 2**16) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def _collect_lines(reader: asyncio.StreamReader) -> list[bytes]:
    return [line async for line in iter_lines(reader)]


async def _collect_events(stream: EventStream) -> list:
    return [event async for event in stream]


async def _spawn(script: str) -> asyncio.subprocess.Process:
    return await ProcessRunner().spawn(ProcessSpec(argv=[sys.executable, "-c", script]))


# =============================================================================
# iter_lines Tests
# =============================================================================


class TestIterLines:
    """Test line splitting."""

    @pytest.mark.asyncio
    async def test_lines_keep_newline(self):
        lines = await _collect_lines(_reader(b"one\ntwo\r\n"))

        assert lines == [b"one\n", b"two\r\n"]

    @pytest.mark.asyncio
    async def test_trailing_partial_line(self):
        lines = await _collect_lines(_reader(b"one\ntail"))

        assert lines == [b"one\n", b"tail"]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await _collect_lines(_reader(b"")) == []

    @pytest.mark.asyncio
    async def test_oversized_line_is_chunked(self):
        data = b"a" * 100 + b"\nnext\n"
        lines = await _collect_lines(_reader(data, limit=16))

        assert b"".join(lines[:-1]) == b"a" * 100
        assert all(b"\n" not in chunk for chunk in lines[:-1])
        assert lines[-1] == b"next\n"

    @pytest.mark.asyncio
    async def test_empty_lines_are_kept(self):
        lines = await _collect_lines(_reader(b"a\n\nb\n"))

        assert lines == [b"a\n", b"\n", b"b\n"]

    @pytest.mark.asyncio
    async def test_chunk_does_not_split_a_character(self):
        han = "中".encode()
        reader = asyncio.StreamReader(limit=16)
        reader.feed_data(b"a" * 16 + han[:1])
        lines = iter_lines(reader)

        first = await lines.__anext__()
        reader.feed_data(han[1:] + b"b\n")
        reader.feed_eof()
        rest = [line async for line in lines]

        assert first == b"a" * 16
        assert rest == ["中b\n".encode()]


class TestUtf8Boundary:
    """Test where an oversized chunk may be cut."""

    def test_ascii(self):
        assert _utf8_boundary(b"abc") == 3

    def test_complete_character(self):
        assert _utf8_boundary(b"a" + "中".encode()) == 4

    def test_lead_byte_only(self):
        assert _utf8_boundary(b"a" + "中".encode()[:1]) == 1

    def test_missing_last_byte(self):
        assert _utf8_boundary(b"a" + "中".encode()[:2]) == 1

    def test_four_byte_character(self):
        smile = "\U0001F600".encode()

        assert _utf8_boundary(smile) == 4
        assert _utf8_boundary(smile[:3]) == 0

    def test_empty(self):
        assert _utf8_boundary(b"") == 0


# =============================================================================
# EventStream Tests
# =============================================================================


@pytest.mark.skipif(IS_WINDOWS, reason="POSIX exit semantics")
class TestEventStream:
    """Test the merged event stream on real subprocesses."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stdout_order_and_termination_last(self):
        process = await _spawn("for i in range(50): print(f'line{i}', flush=True)")
        events = await _collect_events(EventStream(process, max_buffer_size=4))

        stdout = [e.data.strip().decode() for e in events if isinstance(e, StdoutLine)]
        assert stdout == [f"line{i}" for i in range(50)]
        assert isinstance(events[-1], Terminated)
        assert sum(isinstance(e, Terminated) for e in events) == 1
        assert events[-1].status.code == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stream_separation(self):
        process = await _spawn(
            "import sys\n"
            "for i in range(5):\n"
            "    print(f'out{i}', flush=True)\n"
            "    print(f'err{i}', file=sys.stderr, flush=True)\n"
        )
        events = await _collect_events(EventStream(process))

        stdout = [e.data.strip() for e in events if isinstance(e, StdoutLine)]
        stderr = [e.data.strip() for e in events if isinstance(e, StderrLine)]
        assert stdout == [f"out{i}".encode() for i in range(5)]
        assert stderr == [f"err{i}".encode() for i in range(5)]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_exit_code_reported(self):
        process = await _spawn("import sys; print('bye'); sys.exit(7)")
        events = await _collect_events(EventStream(process))

        assert isinstance(events[-1], Terminated)
        assert events[-1].status.code == 7
        assert not events[-1].status.success

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_no_events_after_termination(self):
        process = await _spawn("print('only')")
        stream = EventStream(process)
        await _collect_events(stream)

        assert stream.is_closed
        assert await _collect_events(stream) == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_aclose_stops_producer(self):
        process = await _spawn("import time; print('ready', flush=True); time.sleep(30)")
        stream = EventStream(process)
        stream.start()

        first = await stream.__anext__()
        assert isinstance(first, StdoutLine)
        assert not stream.is_closed

        await stream.aclose()
        assert stream.is_closed
        assert await _collect_events(stream) == []

        await ProcessRunner(term_timeout=0.5, kill_timeout=0.5).terminate(process)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_terminated_while_background_child_holds_pipes(self):
        process = await ProcessRunner().spawn(
            ProcessSpec(argv=["sh", "-c", "echo up; sleep 30 & exit 5"])
        )
        try:
            events = await asyncio.wait_for(
                _collect_events(EventStream(process, drain_timeout=0.3)), timeout=5
            )
        finally:
            kill_process_tree_sync(process.pid)

        assert [e.data for e in events if isinstance(e, StdoutLine)] == [b"up\n"]
        assert isinstance(events[-1], Terminated)
        assert sum(isinstance(e, Terminated) for e in events) == 1
        assert events[-1].status.code == 5
