"""
节点生命周期管理的错误分类。

公开接口：
    - NodeError: 所有错误的基类，携带 node_id、operation 与底层原因
    - ValidationError: 节点类型未知、ID 非法、单元内容无法安全渲染
    - PrerequisiteError: JAVA_HOME 缺失、Docker 守护进程不可达、包管理器缺失、平台不支持
    - InstallationError: 下载、解压、软链接、镜像拉取失败（不会留下"已安装"标记）
    - InternalError: 容器创建/启动、单元写入、systemctl/launchctl 非零退出
    - NotFoundError: 对不存在的单元或日志源执行 TailLogs / Reload
    - CommandError: 外部命令执行失败，组件内部使用，离开组件前总会被包装
"""

from __future__ import annotations

from typing import Sequence


class NodeError(Exception):
    """带上下文的节点错误。"""

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.operation = operation
        self.cause = cause

    def __str__(self) -> str:
        parts = []
        if self.operation:
            parts.append(f"[{self.operation}]")
        if self.node_id:
            parts.append(f"节点 {self.node_id}:")
        parts.append(self.message)
        text = " ".join(parts)
        if self.cause is not None:
            text = f"{text}（{self.cause}）"
        return text


class ValidationError(NodeError, ValueError):
    pass


class PrerequisiteError(NodeError):
    pass


class InstallationError(NodeError):
    pass


class InternalError(NodeError, RuntimeError):
    pass


class NotFoundError(NodeError):
    pass


class CommandError(RuntimeError):
    """外部命令以非零状态退出或无法启动。"""

    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str = "") -> None:
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = f"命令执行失败: {' '.join(self.cmd)} (exit={returncode})"
        if self.stderr:
            detail = f"{detail}: {self.stderr}"
        super().__init__(detail)
