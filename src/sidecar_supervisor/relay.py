"""Sidecar 输出转发与生命周期监控。

单一消费循环，按到达顺序处理事件：
- stdout 行 -> logger.info("[tag] ...")
- stderr 行 -> logger.error("[tag] ...")
- 进程终止 -> 记录一次退出状态后停止消费
- 其他事件 -> 忽略

解码使用替换字符，单个坏字节不会中断转发。
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable
from typing import Any, Callable

from .runtime.events import ExitStatus, StderrLine, StdoutLine, Terminated

__all__ = ["RELAY_LOGGER_NAME", "consume", "decode_line", "format_line"]

logger = logging.getLogger(__name__)

# sidecar 输出的默认日志通道
RELAY_LOGGER_NAME = "sidecar_supervisor.sidecar"


def decode_line(data: bytes) -> str:
    """解码一行输出，无效字节替换为 U+FFFD，去掉行尾换行。"""
    return data.decode("utf-8", errors="replace").rstrip("\r\n")


def format_line(tag: str, text: str) -> str:
    return f"[{tag}] {text}"


async def consume(
    events: AsyncIterable[Any],
    *,
    tag: str = "server",
    relay_logger: logging.Logger | None = None,
    on_exit: Callable[[ExitStatus], None] | None = None,
) -> ExitStatus | None:
    """消费事件流直到子进程终止。

    Args:
        events: OutputEvent 异步迭代器
        tag: 来源标签
        relay_logger: 转发目标 logger（默认 sidecar_supervisor.sidecar）
        on_exit: 终止时的回调（健康信号）

    Returns:
        子进程退出状态；事件流在终止前结束时返回 None
    """
    out = relay_logger or logging.getLogger(RELAY_LOGGER_NAME)

    async for event in events:
        if isinstance(event, StdoutLine):
            out.info(format_line(tag, decode_line(event.data)))
        elif isinstance(event, StderrLine):
            out.error(format_line(tag, decode_line(event.data)))
        elif isinstance(event, Terminated):
            status = event.status
            level = logging.WARNING if status.success else logging.ERROR
            out.log(level, format_line(tag, f"process terminated: {status.describe()}"))
            if on_exit:
                try:
                    on_exit(status)
                except Exception as e:
                    logger.warning(f"Error in exit callback: {e}")
            return status
        else:
            logger.debug(f"Ignoring unknown sidecar event: {type(event).__name__}")

    logger.debug(f"Event stream for [{tag}] ended without termination notice")
    return None
