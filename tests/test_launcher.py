"""Launcher 测试。

测试覆盖：
- --parent-pid 参数构建
- 启动成功返回句柄和未关闭的事件流
- 无法解析时抛出 ResolutionError 且不创建进程
- 操作系统拒绝执行时抛出 SpawnError
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest import mock

import pytest

from conftest import write_executable
from sidecar_supervisor.errors import LaunchError, ResolutionError, SpawnError
from sidecar_supervisor.launcher import build_sidecar_args, launch
from sidecar_supervisor.resolver import SidecarResolver
from sidecar_supervisor.runtime.events import StdoutLine, Terminated
from sidecar_supervisor.runtime.process_runner import ProcessRunner


class TestBuildSidecarArgs:
    """参数构建。"""

    @pytest.mark.parametrize("pid", [0, 1, 4242, 2**31 - 1])
    def test_exact_arguments(self, pid: int):
        assert build_sidecar_args(pid) == ["--parent-pid", str(pid)]

    def test_negative_pid_rejected(self):
        with pytest.raises(ValueError):
            build_sidecar_args(-1)

    @pytest.mark.parametrize("pid", ["42", 4.2, True, None])
    def test_non_int_rejected(self, pid):
        with pytest.raises(ValueError):
            build_sidecar_args(pid)  # type: ignore[arg-type]


class TestLaunch:
    """启动 sidecar。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_launch_success(self, make_sidecar, tmp_path: Path):
        make_sidecar(ECHO_ARGV="1", HANG="1")
        resolver = SidecarResolver([tmp_path / "bin"], allow_path=False)

        result = await launch("server", os.getpid(), resolver=resolver)
        try:
            assert result.handle.is_running
            assert result.handle.pid > 0
            assert result.handle.argv[1:] == ["--parent-pid", str(os.getpid())]
            assert not result.events.is_closed

            first = await result.events.__anext__()
            assert isinstance(first, StdoutLine)
            assert json.loads(first.data.decode().split("=", 1)[1]) == [
                "--parent-pid",
                str(os.getpid()),
            ]
        finally:
            await result.handle.terminate()

        events = [event async for event in result.events]
        assert isinstance(events[-1], Terminated)
        assert not result.handle.is_running

    @pytest.mark.asyncio
    async def test_unresolvable_reference_spawns_nothing(self, tmp_path: Path):
        runner = ProcessRunner()
        resolver = SidecarResolver([tmp_path], allow_path=False)

        with mock.patch.object(runner, "spawn") as spawn:
            with pytest.raises(ResolutionError):
                await launch("server", 1, resolver=resolver, runner=runner)
            spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_pid_spawns_nothing(self, tmp_path: Path):
        runner = ProcessRunner()

        with mock.patch.object(runner, "spawn") as spawn:
            with pytest.raises(ValueError):
                await launch("server", -5, runner=runner)
            spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_exec_format_error_is_spawn_error(self, tmp_path: Path):
        if os.name == "nt":
            pytest.skip("POSIX exec semantics")
        bogus = write_executable(tmp_path / "server", "")
        bogus.write_bytes(b"\x00\x01\x02 not a program")
        resolver = SidecarResolver([tmp_path], allow_path=False)

        with pytest.raises(SpawnError) as exc_info:
            await launch("server", os.getpid(), resolver=resolver)

        error = exc_info.value
        assert isinstance(error, LaunchError)
        assert isinstance(error.cause, OSError)
        assert error.argv == [str(bogus.resolve()), "--parent-pid", str(os.getpid())]

    @pytest.mark.asyncio
    async def test_os_refusal_is_spawn_error(self, tmp_path: Path):
        exe = write_executable(tmp_path / "server", "#!/bin/sh\n")
        runner = ProcessRunner()
        resolver = SidecarResolver([tmp_path], allow_path=False)

        with mock.patch.object(
            runner, "spawn", side_effect=PermissionError(13, "Permission denied")
        ):
            with pytest.raises(SpawnError) as exc_info:
                await launch("server", 7, resolver=resolver, runner=runner)

        assert exc_info.value.argv == [str(exe.resolve()), "--parent-pid", "7"]
        assert "Permission denied" in str(exc_info.value)


class TestSidecarHandle:
    """子进程句柄。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_kill_sync_reaches_leftover_group(self, tmp_path: Path):
        if os.name == "nt":
            pytest.skip("POSIX process groups")
        write_executable(tmp_path / "server", "#!/bin/sh\n(sleep 30) &\nexit 0\n")
        resolver = SidecarResolver([tmp_path], allow_path=False)

        result = await launch("server", os.getpid(), resolver=resolver, drain_timeout=0.2)
        status = await result.handle.wait()
        await result.events.aclose()

        assert status.code == 0
        assert result.handle.group_alive
        assert result.handle.kill_sync() is True

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_kill_sync_after_clean_exit(self, make_sidecar, tmp_path: Path):
        make_sidecar(EXIT_CODE="0")
        resolver = SidecarResolver([tmp_path / "bin"], allow_path=False)

        result = await launch("server", os.getpid(), resolver=resolver)
        events = [event async for event in result.events]

        assert isinstance(events[-1], Terminated)
        assert not result.handle.group_alive
        assert result.handle.kill_sync() is False
