"""
节点软件安装管理。

已安装版本的唯一判定依据是 <data_root>/bin/<kind>/<version>/ 下存在预期的可执行文件
（docker 模式下是本地已存在的镜像标签，由 DockerBackend 在创建容器时处理）。

- ArchiveInstaller: 下载发行包到临时目录，解压、赋权后原子移动到版本目录
- HomebrewInstaller: macOS 上通过 brew 安装 Besu，并建立按版本划分的软链接
- InstallationManager: 在构造时按宿主平台为每种节点选定安装策略
"""

from __future__ import annotations

import os
import platform
import shutil
import tarfile
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Tuple

import httpx
from loguru import logger

from ...config import Config
from ...errors import CommandError, InstallationError, PrerequisiteError, ValidationError
from ..naming import binary_dir
from ..schemas import DeploymentMode, NodeKind
from .process import CommandRunner, run_command

Downloader = Callable[[str, Path], None]

IMAGES: Dict[NodeKind, str] = {
    NodeKind.BESU: "hyperledger/besu",
    NodeKind.FABRIC_PEER: "hyperledger/fabric-peer",
    NodeKind.FABRIC_ORDERER: "hyperledger/fabric-orderer",
}


def image_ref(kind: NodeKind, version: str) -> str:
    return f"{IMAGES[kind]}:{version}"


def download_file(url: str, dest: Path, timeout: float = 300) -> None:
    """流式下载到指定文件。"""
    logger.info(f"开始下载：{url}")
    with httpx.stream("GET", url, follow_redirects=True, timeout=timeout) as r:
        r.raise_for_status()
        with open(dest, "wb") as f:
            for chunk in r.iter_bytes():
                if chunk:
                    f.write(chunk)
    logger.info(f"下载完成：{dest}")


def _safe_target(root: Path, member_name: str) -> Path:
    target = (root / member_name).resolve()
    if target != root and root not in target.parents:
        raise InstallationError(f"压缩包包含非法路径: {member_name}", operation="install")
    return target


def extract_archive(archive: Path, dest: Path) -> None:
    """解压 zip / tar.gz，拒绝逃逸出目标目录的条目。"""
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            for member in zf.infolist():
                _safe_target(root, member.filename)
            zf.extractall(root)
        return
    with tarfile.open(archive, "r:*") as tf:
        members = []
        for member in tf.getmembers():
            if not (member.isfile() or member.isdir()):
                continue
            _safe_target(root, member.name)
            members.append(member)
        tf.extractall(root, members=members)


@dataclass(frozen=True)
class ReleaseLayout:
    """一个发行包的结构：顶层目录（可为空）、主程序与需要赋予执行权限的文件。"""

    inner_dir: str
    binary: str
    executables: Tuple[str, ...]
    required: Tuple[str, ...]


RELEASE_LAYOUTS: Dict[NodeKind, ReleaseLayout] = {
    NodeKind.BESU: ReleaseLayout(
        inner_dir="besu-{version}",
        binary="bin/besu",
        executables=("bin/besu", "bin/besu-entry.sh", "bin/besu-untuned", "bin/evmtool"),
        required=("bin/besu",),
    ),
    NodeKind.FABRIC_PEER: ReleaseLayout(
        inner_dir="",
        binary="bin/peer",
        executables=("bin/peer", "bin/orderer", "bin/configtxgen", "bin/osnadmin"),
        required=("bin/peer",),
    ),
    NodeKind.FABRIC_ORDERER: ReleaseLayout(
        inner_dir="",
        binary="bin/orderer",
        executables=("bin/peer", "bin/orderer", "bin/configtxgen", "bin/osnadmin"),
        required=("bin/orderer",),
    ),
}


class InstallStrategy(ABC):
    @abstractmethod
    def ensure_installed(self, kind: NodeKind, version: str) -> Path:
        """确保版本已安装，返回可执行文件路径。"""


class ArchiveInstaller(InstallStrategy):
    def __init__(
        self,
        config: Config,
        os_name: str,
        arch: str,
        downloader: Downloader | None = None,
    ) -> None:
        self._config = config
        self._os_name = os_name
        self._arch = arch
        self._download = downloader or (lambda url, dest: download_file(url, dest, config.download_timeout))

    def _url(self, kind: NodeKind, version: str) -> str:
        template = self._config.besu_release_url if kind == NodeKind.BESU else self._config.fabric_release_url
        return template.format(version=version, os=self._os_name, arch=self._arch)

    def binary_path(self, kind: NodeKind, version: str) -> Path:
        return binary_dir(self._config.data_root, kind, version) / RELEASE_LAYOUTS[kind].binary

    def ensure_installed(self, kind: NodeKind, version: str) -> Path:
        binary = self.binary_path(kind, version)
        if binary.is_file():
            logger.debug(f"{kind.value} {version} 已安装，跳过下载")
            return binary

        layout = RELEASE_LAYOUTS[kind]
        target = binary_dir(self._config.data_root, kind, version)
        staging_root = self._config.data_root / "bin" / ".tmp"
        staging_root.mkdir(parents=True, exist_ok=True)
        # 临时目录与目标位于同一文件系统，保证最终 rename 是原子的
        tmp_dir = Path(tempfile.mkdtemp(prefix=f"{kind.value}-{version}-", dir=staging_root))
        url = self._url(kind, version)
        try:
            archive = tmp_dir / Path(httpx.URL(url).path).name
            try:
                self._download(url, archive)
            except Exception as e:
                raise InstallationError(f"下载 {kind.value} {version} 失败: {url}", operation="install", cause=e) from e

            extract_dir = tmp_dir / "extract"
            try:
                extract_archive(archive, extract_dir)
            except InstallationError:
                raise
            except Exception as e:
                raise InstallationError(f"解压 {archive.name} 失败", operation="install", cause=e) from e

            source = extract_dir / layout.inner_dir.format(version=version) if layout.inner_dir else extract_dir
            for rel in layout.required:
                if not (source / rel).is_file():
                    raise InstallationError(f"发行包中缺少 {rel}", operation="install")
            for rel in layout.executables:
                path = source / rel
                if not path.exists():
                    continue
                try:
                    os.chmod(path, 0o755)
                except OSError as e:
                    raise InstallationError(f"设置可执行权限失败: {rel}", operation="install", cause=e) from e

            # 版本目录存在但缺少主程序，只可能是之前失败留下的残骸
            if target.exists():
                shutil.rmtree(target)
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.replace(source, target)
            except OSError as e:
                raise InstallationError(f"移动到版本目录失败: {target}", operation="install", cause=e) from e
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

        logger.info(f"{kind.value} {version} 安装完成：{target}")
        return binary


class HomebrewInstaller(InstallStrategy):
    """通过 brew 管理 Besu；brew 只维护一个版本，版本目录下用软链接指向 brew 的安装位置。"""

    formula = "hyperledger/besu/besu"
    tap = "hyperledger/besu"

    def __init__(self, config: Config, arch: str, runner: CommandRunner = run_command) -> None:
        self._config = config
        self._arch = arch
        self._run = runner

    @property
    def brew_binary(self) -> Path:
        prefix = self._config.homebrew_prefix
        if not prefix:
            prefix = "/opt/homebrew" if self._arch == "arm64" else "/usr/local"
        return Path(prefix) / "opt" / "besu" / "bin" / "besu"

    def link_path(self, kind: NodeKind, version: str) -> Path:
        return binary_dir(self._config.data_root, kind, version) / "besu"

    def _installed_version(self) -> str | None:
        result = self._run(["brew", "list", "--versions", self.formula], check=False)
        if result.returncode != 0:
            return None
        # 输出形如 "besu 24.1.0"
        fields = result.stdout.split()
        return fields[-1] if len(fields) >= 2 else None

    def _link_ok(self, link: Path) -> bool:
        return link.is_symlink() and Path(os.readlink(link)) == self.brew_binary

    def ensure_installed(self, kind: NodeKind, version: str) -> Path:
        if kind != NodeKind.BESU:
            raise ValidationError(f"brew 仅用于安装 Besu，不支持 {kind.value}", operation="install")
        if shutil.which("brew") is None:
            raise PrerequisiteError("未找到 Homebrew，无法安装 Besu", operation="install")

        link = self.link_path(kind, version)
        installed = self._installed_version()
        if installed == version and self._link_ok(link):
            logger.debug(f"besu {version} 已通过 brew 安装，跳过")
            return link

        try:
            if installed != version:
                self._run(["brew", "tap", self.tap])
                if installed is not None:
                    logger.info(f"卸载 brew 中的 besu {installed}，以安装 {version}")
                    self._run(["brew", "uninstall", self.formula])
                self._run(["brew", "install", self.formula])
                actual = self._installed_version()
                if actual != version:
                    raise InstallationError(
                        f"brew 安装的 besu 版本为 {actual}，与请求的 {version} 不一致", operation="install"
                    )
        except CommandError as e:
            raise InstallationError(f"通过 brew 安装 besu {version} 失败", operation="install", cause=e) from e

        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(self.brew_binary)
        except OSError as e:
            raise InstallationError(f"创建软链接失败: {link}", operation="install", cause=e) from e
        logger.info(f"besu {version} 已安装，软链接 {link} -> {self.brew_binary}")
        return link


def normalize_arch(machine: str) -> str:
    machine = machine.lower()
    if machine in ("x86_64", "amd64"):
        return "amd64"
    if machine in ("aarch64", "arm64"):
        return "arm64"
    return machine


class InstallationManager:
    """按宿主平台一次性选定安装策略。"""

    def __init__(
        self,
        config: Config,
        system: str | None = None,
        machine: str | None = None,
        runner: CommandRunner = run_command,
        downloader: Downloader | None = None,
    ) -> None:
        system = system or platform.system()
        arch = normalize_arch(machine or platform.machine())
        os_name = {"Darwin": "darwin", "Linux": "linux", "Windows": "windows"}.get(system, system.lower())
        archive = ArchiveInstaller(config, os_name, arch, downloader)
        self.strategies: Dict[NodeKind, InstallStrategy] = {
            NodeKind.BESU: HomebrewInstaller(config, arch, runner) if system == "Darwin" else archive,
            NodeKind.FABRIC_PEER: archive,
            NodeKind.FABRIC_ORDERER: archive,
        }

    def ensure_installed(self, kind: NodeKind, version: str, mode: DeploymentMode = DeploymentMode.SERVICE) -> str:
        """返回可执行文件路径（服务模式）或镜像引用（docker 模式，拉取延迟到创建容器时）。"""
        if mode == DeploymentMode.DOCKER:
            return image_ref(kind, version)
        strategy = self.strategies.get(kind)
        if strategy is None:
            raise ValidationError(f"未知的节点类型: {kind}", operation="install")
        return str(strategy.ensure_installed(kind, version))
