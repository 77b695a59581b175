"""Sidecar 监督器。

设计目标：
1. 单实例保证 - 每个监督器最多启动一个 sidecar，从不自动重启
2. 非阻塞启动 - start() 在子进程创建后立即返回，转发在后台任务中进行
3. 显式关闭 - shutdown() 终止子进程并在限定时间内等待转发结束，可重复调用
4. 退出兜底 - 主进程未调用 shutdown() 就退出时，atexit 钩子结束子进程组
   （sidecar 已退出但后代进程仍在时同样生效，因此实例在 shutdown() 前一直被追踪）

架构：
- launch(): 解析可执行文件，创建子进程和事件流
- relay 任务: consume() 转发输出并记录退出状态
- atexit: 进程退出时同步清理仍在运行的 sidecar
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
from enum import Enum
from typing import Callable

from .config import Config, get_config
from .errors import LaunchError, SupervisorStateError
from .launcher import SidecarHandle, launch
from .relay import consume
from .resolver import SidecarResolver
from .runtime.event_stream import EventStream
from .runtime.events import ExitStatus
from .runtime.process_runner import ProcessRunner

__all__ = ["Supervisor", "SupervisorState"]

logger = logging.getLogger(__name__)


class SupervisorState(Enum):
    """监督器生命周期状态。"""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"
    FAILED = "failed"


class Supervisor:
    """单个 sidecar 进程的监督器。

    Example:
        supervisor = Supervisor(get_config())
        await supervisor.start()
        ...
        await supervisor.shutdown()

    Attributes:
        config: 监督器配置
        parent_pid: 本进程 pid，启动时读取一次，作为 --parent-pid 传给子进程
    """

    # 类级别的实例追踪（用于 atexit 清理）
    _instances: list["Supervisor"] = []
    _atexit_registered = False

    def __init__(
        self,
        config: Config | None = None,
        *,
        resolver: SidecarResolver | None = None,
        runner: ProcessRunner | None = None,
        relay_logger: logging.Logger | None = None,
        on_exit: Callable[[ExitStatus], None] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.config = config or get_config()
        self.parent_pid = os.getpid()
        self.resolver = resolver or SidecarResolver(
            self.config.sidecar_dirs, allow_path=self.config.allow_path
        )
        self.runner = runner or ProcessRunner(
            term_timeout=self.config.term_timeout,
            kill_timeout=self.config.kill_timeout,
        )
        self._relay_logger = relay_logger
        self._on_exit = on_exit
        self._env = env

        self._state = SupervisorState.IDLE
        self._handle: SidecarHandle | None = None
        self._events: EventStream | None = None
        self._relay_task: asyncio.Task[ExitStatus | None] | None = None
        self._shutdown_task: asyncio.Future[None] | None = None
        self._exit_status: ExitStatus | None = None

    @classmethod
    def _register_atexit(cls) -> None:
        """注册全局 atexit 清理函数。"""
        if not cls._atexit_registered:
            atexit.register(cls._cleanup_all)
            cls._atexit_registered = True

    @classmethod
    def _cleanup_all(cls) -> None:
        """结束所有仍在运行的 sidecar（atexit 回调）。"""
        for instance in list(cls._instances):
            try:
                instance.kill_now()
            except Exception as e:
                logger.debug(f"Cleanup error: {e}")

    @property
    def name(self) -> str:
        return self.config.sidecar_name

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._handle.pid if self._handle else None

    @property
    def argv(self) -> list[str]:
        return list(self._handle.argv) if self._handle else []

    @property
    def exit_status(self) -> ExitStatus | None:
        """子进程退出状态（尚未退出时为 None）。"""
        return self._exit_status

    @property
    def is_running(self) -> bool:
        return self._handle is not None and self._handle.is_running

    @property
    def healthy(self) -> bool:
        """sidecar 是否处于正常运行状态。"""
        return self._state is SupervisorState.RUNNING and self.is_running

    async def start(self) -> SidecarHandle:
        """启动 sidecar 并在后台转发其输出。

        子进程创建后立即返回，不等待子进程。

        Returns:
            子进程句柄

        Raises:
            SupervisorStateError: 监督器已启动过
            ResolutionError: 找不到可执行文件
            SpawnError: 创建进程失败
        """
        if self._state is not SupervisorState.IDLE:
            raise SupervisorStateError(
                f"Supervisor for '{self.name}' already started (state={self._state.value})"
            )

        try:
            result = await launch(
                self.config.sidecar_name,
                self.parent_pid,
                resolver=self.resolver,
                runner=self.runner,
                env=self._env,
                line_limit=self.config.line_limit,
                max_buffer_size=self.config.queue_size,
                drain_timeout=self.config.drain_timeout,
            )
        except LaunchError as e:
            self._state = SupervisorState.FAILED
            logger.error(f"Failed to launch sidecar '{self.name}': {e}")
            raise

        self._handle = result.handle
        self._events = result.events
        self._state = SupervisorState.RUNNING

        if self.config.kill_on_exit:
            self._register_atexit()
            Supervisor._instances.append(self)

        self._relay_task = asyncio.create_task(self._relay(result.events), name="sidecar-relay")
        return self._handle

    async def _relay(self, events: EventStream) -> ExitStatus | None:
        """后台转发任务。"""
        try:
            status = await consume(
                events,
                tag=self.config.tag,
                relay_logger=self._relay_logger,
                on_exit=self._handle_exit,
            )
            if status is None:
                status = self._handle_lost_stream()
            return status
        finally:
            await events.aclose()

    def _handle_lost_stream(self) -> ExitStatus | None:
        """事件流在终止通知前结束：按子进程的实际状态更新生命周期。"""
        returncode = self._handle.returncode if self._handle else None
        if returncode is None:
            self._state = SupervisorState.FAILED
            logger.error(
                f"Sidecar '{self.name}' output stream ended while the process is still running"
            )
            return None

        status = ExitStatus.from_returncode(returncode)
        logger.warning(
            f"Sidecar '{self.name}' output stream ended without exit notice, process exited ({status})"
        )
        try:
            self._handle_exit(status)
        except Exception as e:
            logger.warning(f"Error in exit callback: {e}")
        return status

    def _handle_exit(self, status: ExitStatus) -> None:
        self._exit_status = status
        self._state = SupervisorState.EXITED
        if self._on_exit:
            self._on_exit(status)

    async def wait(self) -> ExitStatus | None:
        """等待 sidecar 退出并返回退出状态。"""
        if self._relay_task is None:
            return self._exit_status
        # shield: 调用方被取消时不影响转发任务
        return await asyncio.shield(self._relay_task)

    async def shutdown(self, timeout: float | None = None) -> None:
        """关闭 sidecar。

        可重复调用：子进程已退出或已关闭过时不会报错，也不会重复记录终止日志。

        Args:
            timeout: 等待转发任务结束的时间（默认 config.shutdown_timeout）
        """
        if self._handle is None:
            return
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._do_shutdown(self._handle, timeout))
        await asyncio.shield(self._shutdown_task)

    async def _do_shutdown(self, handle: SidecarHandle, timeout: float | None) -> None:
        timeout = self.config.shutdown_timeout if timeout is None else timeout

        if handle.is_running:
            self._state = SupervisorState.STOPPING
            logger.info(f"Stopping sidecar '{self.name}' pid={handle.pid}")
        elif handle.group_alive:
            logger.info(f"Stopping leftover processes of sidecar '{self.name}' pgid={handle.pid}")
        # 进程组为空时无操作
        await handle.terminate()

        task = self._relay_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Sidecar relay did not finish within {timeout}s, cancelling"
                )
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            except Exception as e:
                logger.warning(f"Sidecar relay failed: {e}")

        if self._exit_status is None and handle.returncode is not None:
            self._exit_status = ExitStatus.from_returncode(handle.returncode)
        if self._state is SupervisorState.STOPPING:
            self._state = SupervisorState.EXITED
        self._forget()
        logger.debug(f"Supervisor for '{self.name}' shut down")

    def kill_now(self) -> bool:
        """同步强制结束 sidecar（不需要事件循环）。

        Returns:
            是否发送了信号
        """
        if self._handle is None:
            return False
        killed = self._handle.kill_sync()
        if killed:
            logger.info(f"Killed sidecar '{self.name}' pid={self._handle.pid} on exit")
        self._forget()
        return killed

    def _forget(self) -> None:
        if self in Supervisor._instances:
            Supervisor._instances.remove(self)

    async def __aenter__(self) -> "Supervisor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
