"""
安装管理测试。

覆盖：
 - 已安装版本重复安装不再下载
 - 压缩包路径穿越被拒绝，且不留下版本目录
 - macOS 上 brew 已安装旧版本时先卸载再安装，并重新指向软链接
 - docker 模式只返回镜像引用
"""

import io
import subprocess
import tarfile
import zipfile
from pathlib import Path

import pytest

from src.nodeplane.config import Config
from src.nodeplane.errors import InstallationError
from src.nodeplane.nodes.naming import binary_dir
from src.nodeplane.nodes.schemas import DeploymentMode, NodeKind
from src.nodeplane.nodes.services import installer as installer_module
from src.nodeplane.nodes.services.installer import HomebrewInstaller, InstallationManager, extract_archive


def _besu_zip(dest: Path, version: str) -> None:
    with zipfile.ZipFile(dest, "w") as zf:
        zf.writestr(f"besu-{version}/bin/besu", "#!/bin/sh\necho besu\n")
        zf.writestr(f"besu-{version}/bin/evmtool", "#!/bin/sh\n")
        zf.writestr(f"besu-{version}/lib/besu.jar", "jar")


def _fabric_tar(dest: Path) -> None:
    with tarfile.open(dest, "w:gz") as tf:
        for name in ("bin/peer", "bin/orderer"):
            data = b"#!/bin/sh\n"
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))


def test_archive_install_is_idempotent(tmp_path):
    downloads = []

    def fake_download(url, dest):
        downloads.append(url)
        _besu_zip(dest, "24.1.0")

    config = Config(data_root=tmp_path)
    manager = InstallationManager(config, system="Linux", machine="x86_64", downloader=fake_download)

    first = manager.ensure_installed(NodeKind.BESU, "24.1.0")
    second = manager.ensure_installed(NodeKind.BESU, "24.1.0")

    assert first == second == str(binary_dir(tmp_path, NodeKind.BESU, "24.1.0") / "bin" / "besu")
    assert downloads == ["https://github.com/hyperledger/besu/releases/download/24.1.0/besu-24.1.0.zip"]
    assert Path(first).stat().st_mode & 0o111
    assert list((tmp_path / "bin" / ".tmp").iterdir()) == []


def test_fabric_archive_url_and_binary(tmp_path):
    urls = []

    def fake_download(url, dest):
        urls.append(url)
        _fabric_tar(dest)

    manager = InstallationManager(Config(data_root=tmp_path), system="Linux", machine="aarch64", downloader=fake_download)
    path = manager.ensure_installed(NodeKind.FABRIC_ORDERER, "2.5.12")
    assert path.endswith("bin/orderer")
    assert urls == [
        "https://github.com/hyperledger/fabric/releases/download/v2.5.12/"
        "hyperledger-fabric-linux-arm64-2.5.12.tar.gz"
    ]


def test_failed_download_leaves_nothing_installed(tmp_path):
    def broken_download(url, dest):
        raise OSError("network down")

    manager = InstallationManager(Config(data_root=tmp_path), system="Linux", machine="x86_64", downloader=broken_download)
    with pytest.raises(InstallationError):
        manager.ensure_installed(NodeKind.FABRIC_PEER, "2.5.12")
    assert not binary_dir(tmp_path, NodeKind.FABRIC_PEER, "2.5.12").exists()


def test_extract_rejects_path_traversal(tmp_path):
    archive = tmp_path / "evil.tar.gz"
    with tarfile.open(archive, "w:gz") as tf:
        info = tarfile.TarInfo("../escape.sh")
        info.size = 1
        tf.addfile(info, io.BytesIO(b"x"))
    with pytest.raises(InstallationError):
        extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "escape.sh").exists()


def test_docker_mode_returns_image_ref(tmp_path):
    manager = InstallationManager(Config(data_root=tmp_path), system="Linux", machine="x86_64")
    assert manager.ensure_installed(NodeKind.FABRIC_PEER, "2.5.12", DeploymentMode.DOCKER) == "hyperledger/fabric-peer:2.5.12"


class FakeBrew:
    def __init__(self, installed):
        self.installed = installed
        self.calls = []

    def __call__(self, args, check=True):
        args = list(args)
        self.calls.append(args)
        if args[:3] == ["brew", "list", "--versions"]:
            if self.installed is None:
                return subprocess.CompletedProcess(args, 1, "", "")
            return subprocess.CompletedProcess(args, 0, f"besu {self.installed}\n", "")
        if args[:2] == ["brew", "uninstall"]:
            self.installed = None
        elif args[:2] == ["brew", "install"]:
            self.installed = "24.1.0"
        return subprocess.CompletedProcess(args, 0, "", "")


def test_homebrew_replaces_stale_version(tmp_path, monkeypatch):
    monkeypatch.setattr(installer_module.shutil, "which", lambda name: "/usr/local/bin/brew")
    config = Config(data_root=tmp_path, homebrew_prefix=str(tmp_path / "brew"))
    brew = FakeBrew("24.0.0")
    manager = InstallationManager(config, system="Darwin", machine="arm64", runner=brew)
    assert isinstance(manager.strategies[NodeKind.BESU], HomebrewInstaller)

    stale = binary_dir(tmp_path, NodeKind.BESU, "24.0.0") / "besu"
    stale.parent.mkdir(parents=True)
    stale.symlink_to(tmp_path / "brew" / "opt" / "besu" / "bin" / "besu")

    path = Path(manager.ensure_installed(NodeKind.BESU, "24.1.0"))

    commands = [c[:2] for c in brew.calls if c[1] != "list"]
    assert commands == [["brew", "tap"], ["brew", "uninstall"], ["brew", "install"]]
    assert path == binary_dir(tmp_path, NodeKind.BESU, "24.1.0") / "besu"
    assert path.is_symlink()
    assert Path(path.readlink()) == tmp_path / "brew" / "opt" / "besu" / "bin" / "besu"

    # 第二次调用不再安装，也不重建软链接
    brew.calls.clear()
    manager.ensure_installed(NodeKind.BESU, "24.1.0")
    assert all(c[1] == "list" for c in brew.calls)


def test_homebrew_version_mismatch_after_install(tmp_path, monkeypatch):
    monkeypatch.setattr(installer_module.shutil, "which", lambda name: "/usr/local/bin/brew")
    brew = FakeBrew(None)
    manager = InstallationManager(Config(data_root=tmp_path), system="Darwin", machine="x86_64", runner=brew)
    with pytest.raises(InstallationError):
        manager.ensure_installed(NodeKind.BESU, "23.10.0")
