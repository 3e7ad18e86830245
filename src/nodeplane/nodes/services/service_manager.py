"""
文件功能：
    操作系统服务管理器适配（systemd / launchd）。

公开接口：
    - ServiceStrategy: 服务管理器抽象
    - SystemdStrategy: Linux，单元文件位于 systemd_unit_dir/<name>.service
    - LaunchdStrategy: macOS，plist 位于 launch_agents_dir/<label>.plist
    - resolve_service_strategy(config, system, runner): 按宿主平台选定策略，不支持的平台返回 None

内部方法：
    - SystemdStrategy._systemctl: 需要时加 sudo 前缀
"""

from __future__ import annotations

import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Sequence

from loguru import logger

from ...config import Config
from ...errors import CommandError
from ..naming import launchd_label, unit_name
from ..schemas import NodeRef, ServiceKind
from .process import CommandRunner, run_command
from .unit_files import render_launchd_plist, render_systemd_unit

_DESCRIPTIONS = {
    "besu": "Hyperledger Besu Node",
    "fabric-peer": "Hyperledger Fabric Peer",
    "fabric-orderer": "Hyperledger Fabric Orderer",
}


class ServiceStrategy(ABC):
    kind: ServiceKind

    def __init__(self, config: Config, runner: CommandRunner = run_command) -> None:
        self._config = config
        self._run = runner

    @abstractmethod
    def unit_name(self, ref: NodeRef) -> str:
        """服务管理器中的名称（systemd 服务名 / launchd label）。"""

    @abstractmethod
    def unit_path(self, ref: NodeRef) -> Path:
        pass

    @abstractmethod
    def render(
        self,
        ref: NodeRef,
        working_dir: Path,
        command: Sequence[str],
        environment: Dict[str, str],
        log_path: Path,
    ) -> str:
        pass

    @abstractmethod
    def activate(self, ref: NodeRef) -> None:
        """加载并启动单元，失败抛出 CommandError。"""

    @abstractmethod
    def deactivate(self, ref: NodeRef) -> None:
        """停止并移除单元；只有真正的停止步骤失败才抛出 CommandError。"""

    @abstractmethod
    def state(self, ref: NodeRef) -> str:
        pass

    @abstractmethod
    def send_hup(self, ref: NodeRef) -> None:
        pass


class SystemdStrategy(ServiceStrategy):
    kind = ServiceKind.SYSTEMD

    def _systemctl(self, *args: str, check: bool = True):
        cmd: List[str] = ["systemctl", *args]
        if self._config.use_sudo and os.geteuid() != 0 and shutil.which("sudo"):
            cmd = ["sudo", *cmd]
        return self._run(cmd, check=check)

    def unit_name(self, ref: NodeRef) -> str:
        return unit_name(ref)

    def unit_path(self, ref: NodeRef) -> Path:
        return self._config.systemd_unit_dir / f"{self.unit_name(ref)}.service"

    def render(self, ref, working_dir, command, environment, log_path) -> str:
        description = f"{_DESCRIPTIONS[ref.kind.value]} - {ref.id}"
        return render_systemd_unit(description, working_dir, command, environment, log_path)

    def activate(self, ref: NodeRef) -> None:
        name = self.unit_name(ref)
        self._systemctl("daemon-reload")
        self._systemctl("enable", name)
        self._systemctl("start", name)
        # 单元此前已在运行时 start 不会生效，restart 确保加载新配置
        self._systemctl("restart", name)
        logger.info(f"systemd 服务已启动：{name}")

    def deactivate(self, ref: NodeRef) -> None:
        name = self.unit_name(ref)
        self._systemctl("stop", name)
        try:
            self._systemctl("disable", name)
        except CommandError as e:
            logger.warning(f"禁用 systemd 服务失败（忽略）：{e}")
        try:
            self.unit_path(ref).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"删除单元文件失败（忽略）：{e}")
        try:
            self._systemctl("daemon-reload")
        except CommandError as e:
            logger.warning(f"daemon-reload 失败（忽略）：{e}")
        logger.info(f"systemd 服务已停止：{name}")

    def state(self, ref: NodeRef) -> str:
        # is-active 对非 active 状态返回非零，但 stdout 仍是状态字符串
        result = self._systemctl("is-active", self.unit_name(ref), check=False)
        return (result.stdout or "").strip() or "unknown"

    def send_hup(self, ref: NodeRef) -> None:
        self._systemctl("kill", "-s", "HUP", self.unit_name(ref))


class LaunchdStrategy(ServiceStrategy):
    kind = ServiceKind.LAUNCHD

    def unit_name(self, ref: NodeRef) -> str:
        return launchd_label(self._config.launchd_label_prefix, ref)

    def unit_path(self, ref: NodeRef) -> Path:
        return self._config.launch_agents_dir / f"{self.unit_name(ref)}.plist"

    def render(self, ref, working_dir, command, environment, log_path) -> str:
        return render_launchd_plist(self.unit_name(ref), working_dir, command, environment, log_path)

    def activate(self, ref: NodeRef) -> None:
        self._run(["launchctl", "load", str(self.unit_path(ref))])
        self._run(["launchctl", "start", self.unit_name(ref)])
        logger.info(f"launchd 服务已启动：{self.unit_name(ref)}")

    def deactivate(self, ref: NodeRef) -> None:
        label = self.unit_name(ref)
        try:
            self._run(["launchctl", "stop", label])
        except CommandError as e:
            logger.warning(f"launchctl stop 失败（忽略）：{e}")
        self._run(["launchctl", "unload", str(self.unit_path(ref))])
        try:
            self.unit_path(ref).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"删除 plist 失败（忽略）：{e}")
        logger.info(f"launchd 服务已停止：{label}")

    def state(self, ref: NodeRef) -> str:
        result = self._run(["launchctl", "list", self.unit_name(ref)], check=False)
        if result.returncode != 0:
            return "inactive"
        # 输出中包含 "PID" = 1234; 时表示进程正在运行
        return "running" if '"PID"' in (result.stdout or "") else "loaded"

    def send_hup(self, ref: NodeRef) -> None:
        self._run(["launchctl", "kill", "SIGHUP", f"gui/{os.getuid()}/{self.unit_name(ref)}"])


def resolve_service_strategy(
    config: Config, system: str, runner: CommandRunner = run_command
) -> ServiceStrategy | None:
    if system == "Linux":
        return SystemdStrategy(config, runner)
    if system == "Darwin":
        return LaunchdStrategy(config, runner)
    return None
