"""Sidecar 进程启动器。

构建命令行 `<exe> --parent-pid <pid>` 并启动子进程：
- 标准输出/错误被捕获（不继承父进程控制台），由事件流转发
- 启动后立即返回，不等待子进程
- 失败以类型化异常返回：ResolutionError / SpawnError
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import SpawnError
from .resolver import SidecarResolver
from .runtime.event_stream import DEFAULT_DRAIN_TIMEOUT, DEFAULT_MAX_BUFFER_SIZE, EventStream
from .runtime.events import ExitStatus
from .runtime.process_runner import (
    DEFAULT_LINE_LIMIT,
    ProcessRunner,
    ProcessSpec,
    group_alive,
    kill_process_tree_sync,
    wait_exited,
)

__all__ = [
    "PARENT_PID_FLAG",
    "LaunchResult",
    "SidecarHandle",
    "build_sidecar_args",
    "launch",
]

logger = logging.getLogger(__name__)

PARENT_PID_FLAG = "--parent-pid"


def build_sidecar_args(parent_pid: int) -> list[str]:
    """构建传给 sidecar 的参数列表。

    Args:
        parent_pid: 父进程 pid（>= 0）

    Returns:
        ["--parent-pid", str(parent_pid)]

    Raises:
        ValueError: pid 不是非负整数
    """
    if isinstance(parent_pid, bool) or not isinstance(parent_pid, int):
        raise ValueError(f"parent_pid must be an int, got {parent_pid!r}")
    if parent_pid < 0:
        raise ValueError(f"parent_pid must be >= 0, got {parent_pid}")
    return [PARENT_PID_FLAG, str(parent_pid)]


class SidecarHandle:
    """运行中的 sidecar 进程句柄。

    用于等待、终止子进程；退出钩子中可使用 kill_sync()。
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        argv: list[str],
        runner: ProcessRunner,
    ) -> None:
        self._process = process
        self._runner = runner
        self.argv = list(argv)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_running(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> ExitStatus:
        """等待子进程退出。"""
        returncode = await wait_exited(self._process)
        return ExitStatus.from_returncode(returncode)

    @property
    def group_alive(self) -> bool:
        """子进程或其进程组中的后代进程是否仍存在。"""
        return group_alive(self._process)

    async def terminate(self) -> None:
        """优雅终止整个进程组（SIGTERM -> 超时 -> SIGKILL）。

        子进程已退出但后代进程仍占用进程组时，同样会结束它们。
        """
        await self._runner.terminate(self._process)

    def kill_sync(self) -> bool:
        """无事件循环时强制结束子进程（及其进程组）。"""
        if not self.group_alive:
            return False
        return kill_process_tree_sync(self.pid)

    def __repr__(self) -> str:
        return f"SidecarHandle(pid={self.pid}, argv={self.argv}, returncode={self.returncode})"


@dataclass(frozen=True)
class LaunchResult:
    """启动结果：进程句柄与事件流。"""

    handle: SidecarHandle
    events: EventStream


async def launch(
    executable_ref: str | os.PathLike[str],
    parent_pid: int,
    *,
    resolver: SidecarResolver | None = None,
    runner: ProcessRunner | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    line_limit: int = DEFAULT_LINE_LIMIT,
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
) -> LaunchResult:
    """解析并启动 sidecar。

    Args:
        executable_ref: 可执行文件名称或路径
        parent_pid: 父进程 pid，作为 --parent-pid 传给子进程
        resolver: 可执行文件解析器（默认仅查 PATH）
        runner: 进程运行器
        cwd: 子进程工作目录
        env: 子进程环境变量（None = 继承）
        line_limit: 单行最大字节数
        max_buffer_size: 事件通道容量
        drain_timeout: 子进程退出后等待输出管道关闭的时间

    Returns:
        LaunchResult(handle, events)，事件流已开始读取

    Raises:
        ValueError: parent_pid 无效
        ResolutionError: 找不到可执行文件（不会创建进程）
        SpawnError: 操作系统拒绝创建进程
    """
    args = build_sidecar_args(parent_pid)
    resolver = resolver or SidecarResolver()
    runner = runner or ProcessRunner()

    executable = resolver.resolve(executable_ref)
    argv = [str(executable), *args]

    try:
        process = await runner.spawn(
            ProcessSpec(argv=argv, cwd=cwd, env=env, line_limit=line_limit)
        )
    except OSError as e:
        raise SpawnError(argv, e) from e

    logger.info(f"Sidecar started pid={process.pid} argv={argv}")

    events = EventStream(
        process, max_buffer_size=max_buffer_size, drain_timeout=drain_timeout
    )
    events.start()
    return LaunchResult(handle=SidecarHandle(process, argv, runner), events=events)
