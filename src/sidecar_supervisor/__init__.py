"""Sidecar Supervisor - 单个 sidecar 子进程的启动、输出转发与生命周期监控。

环境变量:
    SIDECAR_NAME: sidecar 可执行文件 (默认 server)
    SIDECAR_DIRS: 搜索目录 (os.pathsep 分割)
    SIDECAR_TAG: 转发日志标签 (默认 server)

用法:
    python -m sidecar_supervisor
"""

__version__ = "0.1.0"

from .app import main
from .errors import LaunchError, ResolutionError, SpawnError, SupervisorError
from .launcher import build_sidecar_args, launch
from .relay import consume
from .supervisor import Supervisor, SupervisorState

__all__ = [
    "__version__",
    "LaunchError",
    "ResolutionError",
    "SpawnError",
    "Supervisor",
    "SupervisorError",
    "SupervisorState",
    "build_sidecar_args",
    "consume",
    "launch",
    "main",
]
