"""
节点生命周期管理服务集合。

按职责拆分：命令构建、安装、单元渲染、服务管理器、部署后端、日志读取，由 NodeController 统一编排。
"""

from .controller import NodeController
from .log_tail import LogTail

__all__ = [
    "NodeController",
    "LogTail",
]
