"""
文件功能：
    节点控制器：对外提供 Start / Stop / Status / Reload / TailLogs。

公开接口：
    - NodeController: 构造时按宿主平台一次性选定安装策略与服务管理器

内部方法：
    - NodeController._backend: 按部署模式取后端，平台不支持时抛出 PrerequisiteError
    - NodeController._plan: 组装 LaunchPlan（命令、环境、目录布局）

控制器不加锁，同一节点 ID 的并发调用由调用方串行化。
"""

from __future__ import annotations

import os
import platform
from typing import Dict

from loguru import logger

from ...config import Config
from ...errors import NodeError, PrerequisiteError, ValidationError
from ..naming import NodeLayout, unit_name
from ..schemas import DeploymentMode, NodeRef, NodeSpec, NodeStatus
from .backends import DeploymentBackend, DockerBackend, DockerClientFactory, LaunchPlan, ServiceBackend
from .command_builder import CONTAINER_BINARIES, CONTAINER_PATHS, RuntimePaths, build_command, build_environment
from .installer import Downloader, InstallationManager
from .log_tail import LogTail
from .process import CommandRunner, run_command
from .service_manager import resolve_service_strategy


class NodeController:
    def __init__(
        self,
        config: Config,
        system: str | None = None,
        machine: str | None = None,
        runner: CommandRunner = run_command,
        downloader: Downloader | None = None,
        docker_client_factory: DockerClientFactory | None = None,
    ) -> None:
        self.config = config
        self.system = system or platform.system()
        self.installer = InstallationManager(config, self.system, machine, runner, downloader)
        self.backends: Dict[DeploymentMode, DeploymentBackend] = {
            DeploymentMode.DOCKER: DockerBackend(config, docker_client_factory),
        }
        strategy = resolve_service_strategy(config, self.system, runner)
        if strategy is not None:
            self.backends[DeploymentMode.SERVICE] = ServiceBackend(config, strategy)
        logger.debug(f"节点控制器已初始化：平台={self.system}，可用模式={[m.value for m in self.backends]}")

    def _backend(self, ref: NodeRef, operation: str) -> DeploymentBackend:
        backend = self.backends.get(ref.mode)
        if backend is None:
            raise PrerequisiteError(
                f"当前平台 {self.system} 不支持 {ref.mode.value} 模式", node_id=ref.id, operation=operation
            )
        return backend

    def _plan(self, spec: NodeSpec, artifact: str, layout: NodeLayout) -> LaunchPlan:
        if spec.mode == DeploymentMode.DOCKER:
            paths = CONTAINER_PATHS[spec.kind]
            command = build_command(spec, CONTAINER_BINARIES[spec.kind], paths)
            environment = build_environment(spec, paths)
        else:
            paths = RuntimePaths(data_dir=str(layout.data_dir), config_dir=str(layout.config_dir))
            command = build_command(spec, artifact, paths)
            environment = build_environment(
                spec,
                paths,
                java_home=self.config.java_home,
                java_opts=self.config.besu_java_opts,
                inherited_path=os.environ.get("PATH"),
            )
        return LaunchPlan(
            artifact=artifact,
            command=command,
            environment=environment,
            layout=layout,
            genesis=spec.genesis,
            private_key=spec.private_key,
        )

    def _stop_other_modes(self, ref: NodeRef) -> None:
        """同一节点 ID 只能对应一个单元：停止它在其他部署模式下的旧实例。"""
        for mode, backend in self.backends.items():
            if mode == ref.mode:
                continue
            other = NodeRef(id=ref.id, kind=ref.kind, mode=mode)
            try:
                backend.stop(other)
            except PrerequisiteError as e:
                # Docker 守护进程不可达时不可能有运行中的容器
                logger.debug(f"跳过 {mode.value} 模式的旧实例清理：{e}")

    def start(self, spec: NodeSpec):
        """安装（如需要）、写入配置并启动节点，返回 DeploymentResult。"""
        ref = spec.ref()
        try:
            name = unit_name(ref)
            backend = self._backend(ref, "start")
            layout = NodeLayout.for_node(self.config.data_root, ref)
            layout.ensure_dirs()
            artifact = self.installer.ensure_installed(spec.kind, spec.version, spec.mode)
            backend.check_prerequisites(spec)
            plan = self._plan(spec, artifact, layout)
            self._stop_other_modes(ref)
            logger.info(f"启动节点 {spec.id}（{spec.kind.value}/{spec.mode.value}）：{name}")
            return backend.start(spec, plan)
        except NodeError as e:
            e.node_id = e.node_id or spec.id
            e.operation = e.operation or "start"
            logger.error(f"启动节点失败：{e}")
            raise

    def stop(self, ref: NodeRef) -> None:
        logger.info(f"停止节点 {ref.id}（{ref.kind.value}/{ref.mode.value}）")
        self._backend(ref, "stop").stop(ref)

    def status(self, ref: NodeRef) -> NodeStatus:
        return self._backend(ref, "status").status(ref)

    def reload(self, ref: NodeRef, files: Dict[str, bytes]) -> None:
        logger.info(f"重新加载节点 {ref.id} 的配置：{sorted(files)}")
        self._backend(ref, "reload").reload(ref, files)

    def tail_logs(self, ref: NodeRef, tail: int = 100, follow: bool = False) -> LogTail:
        """返回尚未启动的 LogTail，由调用方在事件循环中迭代并负责 cancel()。"""
        if tail < 0:
            raise ValidationError("tail 不能为负数", node_id=ref.id, operation="tail-logs")
        source = self._backend(ref, "tail-logs").log_source(ref)
        return LogTail(source, tail=tail, follow=follow, maxsize=self.config.log_queue_size)
