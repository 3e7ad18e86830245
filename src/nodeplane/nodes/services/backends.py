"""
文件功能：
    部署后端：把同一个逻辑节点落到操作系统服务或 Docker 容器上。

公开接口：
    - LaunchPlan: 控制器为一次 Start 准备好的参数（制品、命令、环境、目录布局）
    - DeploymentBackend: 后端抽象（check_prerequisites / start / stop / status / reload / log_source）
    - ServiceBackend: systemd / launchd
    - DockerBackend: 基于 docker SDK

内部方法：
    - _check_reload_files: 校验 Reload 的文件名不会逃逸出配置目录
    - _tar_files: 将待覆盖的配置文件打包为 put_archive 需要的 tar 流
    - DockerBackend._lookup: 按名称精确查找容器，守护进程或 API 失败转为 InternalError
"""

from __future__ import annotations

import io
import tarfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List

import docker
from docker.types import Mount
from loguru import logger

from ...config import Config
from ...errors import (
    CommandError,
    InstallationError,
    InternalError,
    NodeError,
    NotFoundError,
    PrerequisiteError,
    ValidationError,
)
from ..naming import NodeLayout, unit_name
from ..schemas import (
    DeploymentMode,
    DockerDeployment,
    NodeKind,
    NodeRef,
    NodeSpec,
    NodeStatus,
    ServiceDeployment,
)
from .command_builder import CONTAINER_PATHS, port_bindings
from .log_tail import DockerLogSource, FileLogSource, LogSource
from .service_manager import ServiceStrategy
from .unit_files import write_unit

DockerClientFactory = Callable[[], "docker.DockerClient"]


@dataclass(frozen=True)
class LaunchPlan:
    artifact: str
    command: List[str]
    environment: Dict[str, str]
    layout: NodeLayout
    genesis: bytes = b""
    private_key: bytes = b""


def _check_reload_files(ref: NodeRef, files: Dict[str, bytes]) -> None:
    if not files:
        raise ValidationError("Reload 至少需要一个配置文件", node_id=ref.id, operation="reload")
    for name in files:
        path = PurePosixPath(name)
        if not name or path.is_absolute() or ".." in path.parts:
            raise ValidationError(f"非法的配置文件名: {name!r}", node_id=ref.id, operation="reload")


def _tar_files(files: Dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name in sorted(files):
            info = tarfile.TarInfo(name=name)
            info.size = len(files[name])
            info.mode = 0o644
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(files[name]))
    return buf.getvalue()


class DeploymentBackend(ABC):
    mode: DeploymentMode

    @abstractmethod
    def check_prerequisites(self, spec: NodeSpec) -> None:
        """不满足前置条件时抛出 PrerequisiteError。"""

    @abstractmethod
    def start(self, spec: NodeSpec, plan: LaunchPlan):
        pass

    @abstractmethod
    def stop(self, ref: NodeRef) -> None:
        """幂等：单元不存在时直接返回。"""

    @abstractmethod
    def status(self, ref: NodeRef) -> NodeStatus:
        pass

    @abstractmethod
    def reload(self, ref: NodeRef, files: Dict[str, bytes]) -> None:
        """覆盖配置文件并发送 SIGHUP，不重启进程。"""

    @abstractmethod
    def log_source(self, ref: NodeRef) -> LogSource:
        pass


class ServiceBackend(DeploymentBackend):
    mode = DeploymentMode.SERVICE

    def __init__(self, config: Config, strategy: ServiceStrategy) -> None:
        self._config = config
        self.strategy = strategy

    def check_prerequisites(self, spec: NodeSpec) -> None:
        if spec.kind != NodeKind.BESU:
            return
        java_home = self._config.java_home
        if not java_home:
            raise PrerequisiteError("未设置 JAVA_HOME，无法以服务方式运行 Besu", node_id=spec.id, operation="start")
        if not Path(java_home).is_dir():
            raise PrerequisiteError(f"JAVA_HOME 目录不存在: {java_home}", node_id=spec.id, operation="start")

    def start(self, spec: NodeSpec, plan: LaunchPlan) -> ServiceDeployment:
        ref = spec.ref()
        name = self.strategy.unit_name(ref)
        unit_path = self.strategy.unit_path(ref)
        try:
            if unit_path.exists():
                logger.info(f"服务单元已存在，先停止旧实例：{name}")
                self.strategy.deactivate(ref)
            plan.layout.write_artifacts(plan.genesis, plan.private_key)
            content = self.strategy.render(
                ref, plan.layout.base, plan.command, plan.environment, plan.layout.log_path
            )
            write_unit(unit_path, content)
            self.strategy.activate(ref)
        except NodeError:
            raise
        except (CommandError, OSError) as e:
            raise InternalError(f"启动服务 {name} 失败", node_id=spec.id, operation="start", cause=e) from e
        return ServiceDeployment(service_kind=self.strategy.kind, service_name=name)

    def stop(self, ref: NodeRef) -> None:
        if not self.strategy.unit_path(ref).exists():
            logger.info(f"服务单元不存在，无需停止：{self.strategy.unit_name(ref)}")
            return
        try:
            self.strategy.deactivate(ref)
        except CommandError as e:
            raise InternalError(
                f"停止服务 {self.strategy.unit_name(ref)} 失败", node_id=ref.id, operation="stop", cause=e
            ) from e

    def status(self, ref: NodeRef) -> NodeStatus:
        name = self.strategy.unit_name(ref)
        if not self.strategy.unit_path(ref).exists():
            return NodeStatus(
                id=ref.id, kind=ref.kind, mode=ref.mode, unit_name=name, present=False, state="absent"
            )
        return NodeStatus(
            id=ref.id, kind=ref.kind, mode=ref.mode, unit_name=name, present=True, state=self.strategy.state(ref)
        )

    def reload(self, ref: NodeRef, files: Dict[str, bytes]) -> None:
        _check_reload_files(ref, files)
        if not self.strategy.unit_path(ref).exists():
            raise NotFoundError("服务单元不存在", node_id=ref.id, operation="reload")
        layout = NodeLayout.for_node(self._config.data_root, ref)
        try:
            for name, content in files.items():
                target = layout.config_dir / name
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            self.strategy.send_hup(ref)
        except (CommandError, OSError) as e:
            raise InternalError("重新加载配置失败", node_id=ref.id, operation="reload", cause=e) from e
        logger.info(f"已向 {self.strategy.unit_name(ref)} 发送 SIGHUP")

    def log_source(self, ref: NodeRef) -> LogSource:
        layout = NodeLayout.for_node(self._config.data_root, ref)
        if not layout.log_path.exists():
            raise NotFoundError(f"日志文件不存在: {layout.log_path}", node_id=ref.id, operation="tail-logs")
        return FileLogSource(layout.log_path)


class DockerBackend(DeploymentBackend):
    mode = DeploymentMode.DOCKER

    def __init__(self, config: Config, client_factory: DockerClientFactory | None = None) -> None:
        self._config = config
        self._client_factory = client_factory or (lambda: docker.DockerClient(base_url=config.docker_host))
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = self._client_factory()
            except docker.errors.DockerException as e:
                raise PrerequisiteError("无法连接 Docker 守护进程", operation="docker", cause=e) from e
        return self._client

    def _find(self, name: str):
        # name 过滤是子串匹配，必须再按名称精确比对
        for container in self.client.containers.list(all=True, filters={"name": name}):
            if container.name == name:
                return container
        return None

    def _lookup(self, ref: NodeRef, operation: str):
        name = unit_name(ref)
        try:
            return self._find(name)
        except docker.errors.DockerException as e:
            raise InternalError(f"查询容器 {name} 失败", node_id=ref.id, operation=operation, cause=e) from e

    def check_prerequisites(self, spec: NodeSpec) -> None:
        try:
            self.client.ping()
        except docker.errors.DockerException as e:
            raise PrerequisiteError("Docker 守护进程不可达", node_id=spec.id, operation="start", cause=e) from e

    def _ensure_image(self, spec: NodeSpec, image: str) -> None:
        try:
            self.client.images.get(image)
            logger.debug(f"镜像已存在：{image}")
            return
        except docker.errors.ImageNotFound:
            pass
        except docker.errors.APIError as e:
            raise InstallationError(f"查询镜像失败: {image}", node_id=spec.id, operation="install", cause=e) from e
        repository, _, tag = image.rpartition(":")
        logger.info(f"拉取镜像：{image}")
        try:
            self.client.images.pull(repository, tag=tag)
        except docker.errors.APIError as e:
            raise InstallationError(f"拉取镜像失败: {image}", node_id=spec.id, operation="install", cause=e) from e

    def start(self, spec: NodeSpec, plan: LaunchPlan) -> DockerDeployment:
        ref = spec.ref()
        name = unit_name(ref)
        self._ensure_image(spec, plan.artifact)
        container_paths = CONTAINER_PATHS[spec.kind]
        try:
            existing = self._find(name)
            if existing is not None:
                logger.info(f"容器已存在，先删除：{name}")
                existing.remove(force=True)
            plan.layout.write_artifacts(plan.genesis, plan.private_key)
            ports = {f"{port}/{proto}": ("0.0.0.0", port) for port, proto in port_bindings(spec)}
            mounts = [
                Mount(target=container_paths.data_dir, source=str(plan.layout.data_dir), type="bind"),
                Mount(target=container_paths.config_dir, source=str(plan.layout.config_dir), type="bind"),
            ]
            container = self.client.containers.create(
                plan.artifact,
                entrypoint=[plan.command[0]],
                command=plan.command[1:],
                name=name,
                environment=plan.environment,
                ports=ports,
                mounts=mounts,
            )
            container.start()
        except (docker.errors.DockerException, OSError) as e:
            raise InternalError(f"创建或启动容器 {name} 失败", node_id=spec.id, operation="start", cause=e) from e
        logger.info(f"容器已启动：{name}")
        return DockerDeployment(container_name=name)

    def stop(self, ref: NodeRef) -> None:
        name = unit_name(ref)
        try:
            container = self._find(name)
            if container is None:
                logger.info(f"容器不存在，无需停止：{name}")
                return
            container.remove(force=True)
        except docker.errors.NotFound:
            # 列出与删除之间容器已被移除
            return
        except docker.errors.DockerException as e:
            raise InternalError(f"删除容器 {name} 失败", node_id=ref.id, operation="stop", cause=e) from e
        logger.info(f"容器已删除：{name}")

    def status(self, ref: NodeRef) -> NodeStatus:
        name = unit_name(ref)
        container = self._lookup(ref, "status")
        if container is None:
            return NodeStatus(id=ref.id, kind=ref.kind, mode=ref.mode, unit_name=name, present=False, state="absent")
        state = container.attrs.get("State", {})
        return NodeStatus(
            id=ref.id,
            kind=ref.kind,
            mode=ref.mode,
            unit_name=name,
            present=True,
            state=state.get("Status", container.status),
            started_at=state.get("StartedAt"),
        )

    def reload(self, ref: NodeRef, files: Dict[str, bytes]) -> None:
        _check_reload_files(ref, files)
        name = unit_name(ref)
        container = self._lookup(ref, "reload")
        if container is None:
            raise NotFoundError(f"容器不存在: {name}", node_id=ref.id, operation="reload")
        try:
            container.put_archive(CONTAINER_PATHS[ref.kind].config_dir, _tar_files(files))
            container.kill(signal="SIGHUP")
        except docker.errors.DockerException as e:
            raise InternalError(f"重新加载容器 {name} 失败", node_id=ref.id, operation="reload", cause=e) from e
        logger.info(f"已向容器 {name} 发送 SIGHUP")

    def log_source(self, ref: NodeRef) -> LogSource:
        name = unit_name(ref)
        if self._lookup(ref, "tail-logs") is None:
            raise NotFoundError(f"容器不存在: {name}", node_id=ref.id, operation="tail-logs")
        return DockerLogSource(self._config.docker_host, name)
