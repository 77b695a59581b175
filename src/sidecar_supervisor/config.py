"""Sidecar 监督器环境变量配置管理。

环境变量:
    SIDECAR_NAME: sidecar 可执行文件引用
        - 名称（在搜索目录中查找）或路径（包含路径分隔符）
        - 默认 "server"

    SIDECAR_DIRS: sidecar 搜索目录
        - 以 os.pathsep 分割
        - 默认: 应用目录及其下的 binaries/ 子目录

    SIDECAR_ALLOW_PATH: 搜索目录未命中时是否回退到 PATH 查找
        - true/1/yes = 允许 (默认)
        - false/0/no = 不允许

    SIDECAR_TAG: 转发日志行的来源标签
        - 默认 "server"，输出形如 "[server] ..."

    SIDECAR_TERM_TIMEOUT: 发送 SIGTERM 后等待退出的时间（秒）
        - 默认 2.0，限制在 0.1-60 秒

    SIDECAR_KILL_TIMEOUT: 发送 SIGKILL 后等待退出的时间（秒）
        - 默认 1.0，限制在 0.1-60 秒

    SIDECAR_SHUTDOWN_TIMEOUT: 关闭时等待日志转发任务结束的时间（秒）
        - 默认 5.0，限制在 0.1-120 秒

    SIDECAR_DRAIN_TIMEOUT: sidecar 退出后等待其输出管道关闭的时间（秒）
        - 默认 1.0，限制在 0-30 秒
        - 后代进程继承并占用管道时，超时后不再转发它们的输出

    SIDECAR_KILL_ON_EXIT: 主进程退出时是否强制结束仍在运行的 sidecar
        - true/1/yes = 结束 (默认)
        - false/0/no = 保留（依赖 sidecar 自行检测 --parent-pid）

    SIDECAR_LINE_LIMIT: 单行最大字节数，超出部分分段转发
        - 默认 65536

    SIDECAR_QUEUE_SIZE: 事件通道容量
        - 默认 256

    SIDECAR_EXIT_WITH_CHILD: sidecar 退出时宿主是否随之退出
        - true/1/yes = 退出
        - false/0/no = 继续运行 (默认，仅记录日志)

    SIDECAR_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    SIDECAR_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒，限制在 0.1-10 秒
        - 关闭过程中在此时间窗口内第二次 Ctrl+C 将强制退出
"""

from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_SIDECAR_NAME = "server"
DEFAULT_TAG = "server"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float,
) -> float:
    """解析浮点环境变量并限制范围，无效值返回默认值。"""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    return max(minimum, min(number, maximum))


def _parse_int(value: str | None, default: int, minimum: int) -> int:
    """解析整数环境变量，小于下限或无效时返回默认值。"""
    if not value:
        return default
    try:
        number = int(value)
    except ValueError:
        return default
    return number if number >= minimum else default


def _app_dir() -> Path:
    """应用目录：打包后为可执行文件所在目录，否则为当前工作目录。"""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path.cwd()


def _default_sidecar_dirs() -> list[Path]:
    app_dir = _app_dir()
    return [app_dir, app_dir / "binaries"]


def _parse_dirs(value: str | None) -> list[Path]:
    """解析搜索目录列表，忽略空项。"""
    if not value or not value.strip():
        return _default_sidecar_dirs()
    return [Path(item.strip()) for item in value.split(os.pathsep) if item.strip()]


@dataclass
class Config:
    """Sidecar 监督器配置。

    Attributes:
        sidecar_name: sidecar 可执行文件引用
        sidecar_dirs: 搜索目录
        allow_path: 是否允许回退到 PATH 查找
        tag: 转发日志的来源标签
        term_timeout: SIGTERM 后等待时间（秒）
        kill_timeout: SIGKILL 后等待时间（秒）
        shutdown_timeout: 关闭时等待转发任务的时间（秒）
        drain_timeout: sidecar 退出后等待输出管道关闭的时间（秒）
        kill_on_exit: 主进程退出时是否结束 sidecar
        line_limit: 单行最大字节数
        queue_size: 事件通道容量
        exit_with_child: sidecar 退出时宿主是否退出
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    sidecar_name: str = DEFAULT_SIDECAR_NAME
    sidecar_dirs: list[Path] = field(default_factory=_default_sidecar_dirs)
    allow_path: bool = True
    tag: str = DEFAULT_TAG
    term_timeout: float = 2.0
    kill_timeout: float = 1.0
    shutdown_timeout: float = 5.0
    drain_timeout: float = 1.0
    kill_on_exit: bool = True
    line_limit: int = 2**16
    queue_size: int = 256
    exit_with_child: bool = False
    log_debug: bool = False
    log_file: str | None = None
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        dirs_str = os.pathsep.join(str(d) for d in self.sidecar_dirs)
        return (
            f"Config(sidecar_name={self.sidecar_name}, "
            f"sidecar_dirs={dirs_str}, "
            f"allow_path={self.allow_path}, "
            f"tag={self.tag}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"shutdown_timeout={self.shutdown_timeout}, "
            f"drain_timeout={self.drain_timeout}, "
            f"kill_on_exit={self.kill_on_exit}, "
            f"line_limit={self.line_limit}, "
            f"queue_size={self.queue_size}, "
            f"exit_with_child={self.exit_with_child}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "sidecar-supervisor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"sidecar_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("SIDECAR_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    name = (os.environ.get("SIDECAR_NAME") or "").strip() or DEFAULT_SIDECAR_NAME
    tag = (os.environ.get("SIDECAR_TAG") or "").strip() or DEFAULT_TAG

    return Config(
        sidecar_name=name,
        sidecar_dirs=_parse_dirs(os.environ.get("SIDECAR_DIRS")),
        allow_path=_parse_bool(os.environ.get("SIDECAR_ALLOW_PATH"), default=True),
        tag=tag,
        term_timeout=_parse_float(os.environ.get("SIDECAR_TERM_TIMEOUT"), 2.0, 0.1, 60.0),
        kill_timeout=_parse_float(os.environ.get("SIDECAR_KILL_TIMEOUT"), 1.0, 0.1, 60.0),
        shutdown_timeout=_parse_float(
            os.environ.get("SIDECAR_SHUTDOWN_TIMEOUT"), 5.0, 0.1, 120.0
        ),
        drain_timeout=_parse_float(os.environ.get("SIDECAR_DRAIN_TIMEOUT"), 1.0, 0.0, 30.0),
        kill_on_exit=_parse_bool(os.environ.get("SIDECAR_KILL_ON_EXIT"), default=True),
        line_limit=_parse_int(os.environ.get("SIDECAR_LINE_LIMIT"), 2**16, minimum=64),
        queue_size=_parse_int(os.environ.get("SIDECAR_QUEUE_SIZE"), 256, minimum=1),
        exit_with_child=_parse_bool(os.environ.get("SIDECAR_EXIT_WITH_CHILD"), default=False),
        log_debug=log_debug,
        log_file=log_file,
        sigint_double_tap_window=_parse_float(
            os.environ.get("SIDECAR_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
