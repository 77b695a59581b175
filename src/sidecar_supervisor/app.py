"""Sidecar Supervisor 应用入口。

包含宿主应用生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys

from .config import Config, get_config
from .errors import ResolutionError, SpawnError
from .signal_manager import SignalManager
from .supervisor import Supervisor

__all__ = ["run_app", "main"]

logger = logging.getLogger(__name__)

# 进程退出码
EXIT_OK = 0
EXIT_SIDECAR_FAILED = 1
EXIT_RESOLUTION_FAILED = 2
EXIT_SPAWN_FAILED = 3
EXIT_FORCED = 130  # 128 + SIGINT(2)


async def run_app(config: Config | None = None) -> int:
    """运行宿主应用。

    启动 sidecar 一次，然后等待关闭信号：
    - SIGINT/SIGTERM: 优雅关闭 sidecar 后退出
    - 双击 SIGINT: 立即结束 sidecar 并退出
    - sidecar 退出: 仅记录日志；exit_with_child 时宿主随之退出

    启动失败不会直接崩溃，而是记录诊断信息并返回对应退出码。

    Returns:
        进程退出码
    """
    config = config or get_config()
    logger.info(f"Starting sidecar supervisor: {config}")

    supervisor = Supervisor(config)
    signal_manager = SignalManager(
        double_tap_window=config.sigint_double_tap_window,
        on_force_exit=supervisor.kill_now,
    )
    exit_watcher: asyncio.Task | None = None

    async def _watch_exit():
        """sidecar 退出时请求关闭宿主。"""
        status = await supervisor.wait()
        logger.info(f"Sidecar exited ({status}), shutting down")
        signal_manager.request_graceful_shutdown()

    try:
        await signal_manager.start()

        try:
            await supervisor.start()
        except ResolutionError as e:
            logger.error(f"Sidecar executable not found: {e}")
            return EXIT_RESOLUTION_FAILED
        except SpawnError as e:
            logger.error(f"Sidecar could not be started: {e}")
            return EXIT_SPAWN_FAILED

        if config.exit_with_child:
            exit_watcher = asyncio.create_task(_watch_exit(), name="sidecar-exit-watcher")

        await signal_manager.wait_for_shutdown()

    finally:
        logger.info("run_app: entering finally block")

        if exit_watcher and not exit_watcher.done():
            exit_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await exit_watcher

        await supervisor.shutdown()
        await signal_manager.stop()

        logger.info("run_app: cleanup completed")

    if signal_manager.is_force_exit:
        logger.warning("Force exit requested, terminating with exit code 130")
        return EXIT_FORCED

    status = supervisor.exit_status
    if config.exit_with_child and status is not None and not status.success:
        return EXIT_SIDECAR_FAILED
    return EXIT_OK


def configure_logging(config: Config) -> None:
    """配置日志输出。"""
    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # SIDECAR_LOG_DEBUG: 全部日志（含 sidecar 输出）写入临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # sidecar 的 stdout/stderr 已被捕获，转发后的日志统一写到宿主 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # root 只放行 WARNING 以上（asyncio 等）
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 sidecar_supervisor 命名空间启用详细日志（包括转发的 sidecar 输出）
    logging.getLogger("sidecar_supervisor").setLevel(log_level)


def main() -> None:
    """主入口点。"""
    config = get_config()
    configure_logging(config)
    sys.exit(asyncio.run(run_app(config)))


if __name__ == "__main__":
    main()
