"""宿主进程的信号处理。

sidecar 运行在独立的进程组中，终端的 Ctrl+C 不会送达子进程；
本模块把宿主收到的信号转换为两种结果：

- 优雅关闭: 首次 SIGINT，或任意 SIGTERM。run_app() 随后调用
  Supervisor.shutdown()（SIGTERM -> 等待 -> SIGKILL）
- 强制退出: 关闭进行中，双击窗口内的第二次 SIGINT。立即回调
  on_force_exit（通常是 Supervisor.kill_now），退出码 130

支持的配置：
- SIDECAR_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import get_config

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)

_POSIX_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SignalManager:
    """把 SIGINT / SIGTERM 转换为关闭请求。

    Example:
        ```python
        manager = SignalManager(on_force_exit=supervisor.kill_now)
        await manager.start()
        try:
            await manager.wait_for_shutdown()
        finally:
            await supervisor.shutdown()
            await manager.stop()
        ```

    Attributes:
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
        on_force_exit: Optional[Callable[[], None]] = None,
    ) -> None:
        if double_tap_window is None:
            double_tap_window = get_config().sigint_double_tap_window
        self.double_tap_window = double_tap_window
        self._on_shutdown = on_shutdown
        self._on_force_exit = on_force_exit

        self._last_sigint_time = 0.0
        self._shutdown_requested = False
        self._force_exit = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handler = None  # Windows only
        self._running = False

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """关闭过程中是否收到了双击 SIGINT。"""
        return self._force_exit

    async def start(self) -> None:
        """安装信号处理器，必须在事件循环中调用。"""
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform == "win32":
            # Windows 事件循环不支持 add_signal_handler，只能处理 SIGINT
            self._previous_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
        else:
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
        logger.debug(f"Signal handlers installed (double_tap_window={self.double_tap_window}s)")

    async def stop(self) -> None:
        """恢复原来的信号处理。"""
        if not self._running:
            return
        self._running = False

        try:
            if sys.platform == "win32":
                if self._previous_handler is not None:
                    signal.signal(signal.SIGINT, self._previous_handler)
            elif self._loop is not None:
                for sig in _POSIX_SIGNALS:
                    self._loop.remove_signal_handler(sig)
        except (ValueError, RuntimeError) as e:
            # 事件循环已关闭或不在主线程
            logger.debug(f"Error removing signal handlers: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """阻塞直到收到关闭请求。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_sigint_time
        self._last_sigint_time = now

        if not self._shutdown_requested:
            logger.info("SIGINT received, stopping sidecar")
            self._request_shutdown()
        elif elapsed < self.double_tap_window:
            logger.warning("Double SIGINT detected, killing sidecar")
            self._force_shutdown()
        else:
            logger.info(
                f"Shutdown already in progress. Press Ctrl+C again within "
                f"{self.double_tap_window}s to kill the sidecar."
            )

    def _handle_sigterm(self) -> None:
        # SIGTERM 从不强制退出，重复收到时忽略
        logger.info("SIGTERM received, stopping sidecar")
        self._request_shutdown()

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅关闭（例如 sidecar 已退出）。"""
        logger.info("Programmatic shutdown requested")
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self._notify(self._on_shutdown, "shutdown")

    def _force_shutdown(self) -> None:
        self._force_exit = True
        self._shutdown_requested = True
        self._notify(self._on_force_exit, "force exit")

    def _notify(self, callback: Optional[Callable[[], None]], what: str) -> None:
        """调用回调并唤醒 wait_for_shutdown()，回调异常只记录。"""
        if callback:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Error in {what} callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
