"""
服务单元文件渲染。

输入合法时保证输出格式正确：systemd 单元中无法安全表达的字符直接拒绝，
launchd plist 由 plistlib 负责 XML 转义。环境变量按键排序，保证输出逐字节稳定。
"""

from __future__ import annotations

import os
import plistlib
import shlex
from pathlib import Path
from typing import Dict, Sequence

from loguru import logger

from ...errors import InternalError, ValidationError

_SYSTEMD_FORBIDDEN = ('"', "\\", "\n", "\r")


def _check_systemd_value(what: str, value: str) -> None:
    for ch in _SYSTEMD_FORBIDDEN:
        if ch in value:
            raise ValidationError(f"{what} 包含 systemd 单元无法表达的字符 {ch!r}: {value!r}", operation="render")


def _systemd_escape(value: str) -> str:
    # % 是 systemd 的说明符前缀，在所有字段中都会被展开
    return value.replace("%", "%%")


def _exec_escape(value: str) -> str:
    # 只有 ExecStart 等命令行字段会展开 $VAR
    return _systemd_escape(value).replace("$", "$$")


def render_systemd_unit(
    description: str,
    working_dir: Path,
    command: Sequence[str],
    environment: Dict[str, str],
    log_path: Path,
) -> str:
    """渲染 systemd 单元；命令以 bash -c 执行并将输出重定向到日志文件。"""
    _check_systemd_value("描述", description)
    _check_systemd_value("工作目录", str(working_dir))
    _check_systemd_value("日志路径", str(log_path))
    for token in command:
        _check_systemd_value("命令参数", token)
    for key, value in environment.items():
        _check_systemd_value("环境变量名", key)
        _check_systemd_value(f"环境变量 {key}", value)
        if not key or "=" in key or " " in key:
            raise ValidationError(f"非法的环境变量名: {key!r}", operation="render")

    shell_line = f"exec {shlex.join(command)} > {shlex.quote(str(log_path))} 2>&1"
    lines = [
        "[Unit]",
        f"Description={_systemd_escape(description)}",
        "After=network.target",
        "",
        "[Service]",
        "Type=simple",
        f"WorkingDirectory={_systemd_escape(str(working_dir))}",
        f'ExecStart=/bin/bash -c "{_exec_escape(shell_line)}"',
        "Restart=on-failure",
        "RestartSec=10",
        "LimitNOFILE=65536",
    ]
    for key in sorted(environment):
        lines.append(f'Environment="{key}={_systemd_escape(environment[key])}"')
    lines += ["", "[Install]", "WantedBy=multi-user.target", ""]
    return "\n".join(lines)


def render_launchd_plist(
    label: str,
    working_dir: Path,
    command: Sequence[str],
    environment: Dict[str, str],
    log_path: Path,
) -> str:
    """渲染 launchd plist；stdout 与 stderr 都写入同一日志文件。"""
    payload = {
        "Label": label,
        "ProgramArguments": [str(token) for token in command],
        "WorkingDirectory": str(working_dir),
        "RunAtLoad": True,
        "StandardOutPath": str(log_path),
        "StandardErrorPath": str(log_path),
        "EnvironmentVariables": {key: environment[key] for key in sorted(environment)},
    }
    return plistlib.dumps(payload, fmt=plistlib.FMT_XML, sort_keys=True).decode("utf-8")


def write_unit(path: Path, content: str) -> None:
    """先写临时文件再替换，避免服务管理器读到写了一半的单元。"""
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(content, encoding="utf-8")
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise InternalError(f"写入单元文件失败: {path}", operation="start", cause=e) from e
    logger.debug(f"单元文件已写入：{path}")
