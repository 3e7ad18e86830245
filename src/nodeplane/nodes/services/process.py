"""
外部命令执行封装。

所有 systemctl / launchctl / brew 调用都经过 run_command，便于测试时整体替换。
"""

from __future__ import annotations

import subprocess
from typing import Callable, Sequence

from loguru import logger

from ...errors import CommandError

CommandRunner = Callable[..., subprocess.CompletedProcess]


def run_command(args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess:
    """执行命令并捕获输出；check=True 时非零退出抛出 CommandError。"""
    cmd = [str(a) for a in args]
    logger.debug(f"执行命令：{' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise CommandError(cmd, None, str(e)) from e
    if check and result.returncode != 0:
        raise CommandError(cmd, result.returncode, result.stderr)
    return result
