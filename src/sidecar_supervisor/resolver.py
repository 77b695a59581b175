"""Sidecar 可执行文件解析。

将可执行文件引用（名称或路径）解析为绝对路径：
- 引用包含路径分隔符：直接按路径处理
- 否则在搜索目录中依次尝试 <name> 和 <name>-<target-triple>
  （打包二进制的命名约定，如 server-x86_64-unknown-linux-gnu）
- 最后可选回退到 PATH 查找

Windows 上候选文件名自动追加 .exe。
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import sys
from collections.abc import Iterable
from pathlib import Path

from .errors import ResolutionError

__all__ = ["SidecarResolver", "current_target_triple"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# platform.machine() 取值到目标三元组架构名的映射
_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
    "armv7l": "armv7",
}


def current_target_triple(machine: str | None = None, system: str | None = None) -> str:
    """返回当前平台的目标三元组。

    Args:
        machine: 覆盖 platform.machine()（用于测试）
        system: 覆盖 sys.platform（用于测试）

    Returns:
        如 "x86_64-unknown-linux-gnu"、"aarch64-apple-darwin"
    """
    machine = (machine or platform.machine()).lower()
    system = system or sys.platform
    arch = _ARCH_ALIASES.get(machine, machine)

    if system == "win32":
        return f"{arch}-pc-windows-msvc"
    if system == "darwin":
        return f"{arch}-apple-darwin"
    if arch == "armv7":
        return "armv7-unknown-linux-gnueabihf"
    return f"{arch}-unknown-linux-gnu"


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _looks_like_path(ref: str) -> bool:
    separators = {os.sep, "/"}
    if os.altsep:
        separators.add(os.altsep)
    return any(sep in ref for sep in separators)


class SidecarResolver:
    """Sidecar 可执行文件解析器。

    Example:
        resolver = SidecarResolver([Path("/opt/app"), Path("/opt/app/binaries")])
        exe = resolver.resolve("server")
    """

    def __init__(
        self,
        search_dirs: Iterable[Path | str] = (),
        *,
        allow_path: bool = True,
        target_triple: str | None = None,
    ) -> None:
        self.search_dirs = [Path(d) for d in search_dirs]
        self.allow_path = allow_path
        self.target_triple = target_triple or current_target_triple()

    def candidate_names(self, name: str) -> list[str]:
        """某个名称在单个目录下的候选文件名（按优先级）。"""
        names = [name, f"{name}-{self.target_triple}"]
        if IS_WINDOWS:
            names = [n if n.lower().endswith(".exe") else f"{n}.exe" for n in names]
        return names

    def resolve(self, ref: str | os.PathLike[str]) -> Path:
        """解析可执行文件引用。

        Args:
            ref: 名称或路径

        Returns:
            可执行文件的绝对路径

        Raises:
            ResolutionError: 找不到可执行文件
        """
        ref_str = os.fspath(ref).strip()
        if not ref_str:
            raise ResolutionError(ref_str)

        searched: list[str] = []

        if isinstance(ref, os.PathLike) or _looks_like_path(ref_str):
            path = Path(ref_str).expanduser()
            candidates = [path]
            if IS_WINDOWS and path.suffix.lower() != ".exe":
                candidates.append(path.with_name(path.name + ".exe"))
            for candidate in candidates:
                searched.append(str(candidate))
                if _is_executable(candidate):
                    return candidate.resolve()
            raise ResolutionError(ref_str, searched)

        for directory in self.search_dirs:
            for filename in self.candidate_names(ref_str):
                candidate = directory / filename
                searched.append(str(candidate))
                if _is_executable(candidate):
                    logger.debug(f"Resolved sidecar '{ref_str}' -> {candidate}")
                    return candidate.resolve()

        if self.allow_path:
            searched.append(f"PATH:{ref_str}")
            found = shutil.which(ref_str)
            if found:
                logger.debug(f"Resolved sidecar '{ref_str}' from PATH -> {found}")
                return Path(found).resolve()

        raise ResolutionError(ref_str, searched)
