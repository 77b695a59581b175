"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import shlex
import stat
import sys
from pathlib import Path
from typing import Callable

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sidecar_supervisor.config import Config  # noqa: E402

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_SIDECAR_PATH = FIXTURES_DIR / "fake_sidecar.py"

IS_WINDOWS = sys.platform == "win32"


def write_executable(path: Path, content: str) -> Path:
    """写入文件并设置可执行权限。"""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def make_sidecar(tmp_path: Path) -> Callable[..., Path]:
    """生成可直接执行的 fake sidecar（POSIX shell 包装脚本）。

    行为通过 FAKE_SIDECAR_* 环境变量控制，命令行保持为 supervisor 传入的参数。

    Example:
        exe = make_sidecar(STDOUT="a|b", EXIT_CODE="3")
    """
    if IS_WINDOWS:
        pytest.skip("Shell wrapper sidecars are POSIX only")

    def factory(name: str = "server", directory: Path | None = None, **behaviour: str) -> Path:
        directory = directory or (tmp_path / "bin")
        exports = "".join(
            f"export FAKE_SIDECAR_{key}={shlex.quote(str(value))}\n"
            for key, value in behaviour.items()
        )
        script = (
            "#!/bin/sh\n"
            f"{exports}"
            f"exec {shlex.quote(sys.executable)} {shlex.quote(str(FAKE_SIDECAR_PATH))} \"$@\"\n"
        )
        return write_executable(directory / name, script)

    return factory


@pytest.fixture
def sidecar_config(tmp_path: Path) -> Callable[..., Config]:
    """测试用配置：短超时，只在 tmp_path/bin 中查找，不查 PATH。"""

    def factory(**overrides) -> Config:
        values = dict(
            sidecar_name="server",
            sidecar_dirs=[tmp_path / "bin"],
            allow_path=False,
            term_timeout=1.0,
            kill_timeout=1.0,
            shutdown_timeout=5.0,
            kill_on_exit=False,
        )
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """移除所有 SIDECAR_* 环境变量。"""
    for key in list(os.environ):
        if key.startswith("SIDECAR_"):
            monkeypatch.delenv(key, raising=False)
