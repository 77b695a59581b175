"""Sidecar 监督器异常类。

启动阶段的失败以类型化异常返回给调用方，由宿主应用决定如何呈现，
而不是直接中止整个进程。
"""

from __future__ import annotations

from collections.abc import Sequence

__all__ = [
    "SupervisorError",
    "LaunchError",
    "ResolutionError",
    "SpawnError",
    "SupervisorStateError",
]


class SupervisorError(Exception):
    """监督器基础异常。"""
    pass


class LaunchError(SupervisorError):
    """Sidecar 启动失败（解析或创建进程）。"""
    pass


class ResolutionError(LaunchError):
    """无法定位 sidecar 可执行文件。

    Attributes:
        ref: 请求解析的可执行文件引用
        searched: 已尝试的候选路径
    """

    def __init__(self, ref: str, searched: Sequence[str] = ()) -> None:
        self.ref = ref
        self.searched = list(searched)
        detail = f" (searched: {', '.join(self.searched)})" if self.searched else ""
        super().__init__(f"Cannot resolve sidecar executable '{ref}'{detail}")


class SpawnError(LaunchError):
    """操作系统拒绝创建子进程。

    Attributes:
        argv: 尝试执行的命令行
        cause: 底层 OSError
    """

    def __init__(self, argv: Sequence[str], cause: OSError) -> None:
        self.argv = list(argv)
        self.cause = cause
        super().__init__(f"Failed to spawn sidecar {self.argv[0] if self.argv else '?'}: {cause}")


class SupervisorStateError(SupervisorError):
    """在不允许的状态下调用监督器操作（例如重复 start）。"""
    pass
