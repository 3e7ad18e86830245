"""
节点命名与目录布局。

所有单元名、容器名、launchd label、目录都由 (kind, id) 纯函数推导，
控制器不持久化 Start 的返回值，而是每次重新推导。
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from ..errors import ValidationError
from .schemas import NodeKind, NodeRef

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    """小写化，将非 [a-z0-9] 字符序列替换为 '-' 并去除首尾 '-'。"""
    slug = _SLUG_RE.sub("-", value.lower()).strip("-")
    if not slug:
        raise ValidationError(f"节点 ID 无法生成合法名称: {value!r}", node_id=value, operation="validate")
    return slug


def unit_name(ref: NodeRef) -> str:
    """容器名与 systemd 服务名：<kind>-<slug>。"""
    return f"{ref.kind.value}-{slugify(ref.id)}"


def launchd_label(prefix: str, ref: NodeRef) -> str:
    return f"{prefix}.{ref.kind.value}.{slugify(ref.id)}"


def binary_dir(data_root: Path, kind: NodeKind, version: str) -> Path:
    """已安装版本目录：<data_root>/bin/<kind>/<version>。"""
    return data_root / "bin" / kind.value / version


@dataclass(frozen=True)
class NodeLayout:
    base: Path
    data_dir: Path
    config_dir: Path
    genesis_path: Path
    key_path: Path
    log_path: Path

    @classmethod
    def for_node(cls, data_root: Path, ref: NodeRef) -> "NodeLayout":
        base = data_root / ref.kind.value / slugify(ref.id)
        config_dir = base / "config"
        return cls(
            base=base,
            data_dir=base / "data",
            config_dir=config_dir,
            genesis_path=config_dir / "genesis.json",
            key_path=config_dir / "key",
            log_path=base / f"{unit_name(ref)}.log",
        )

    def ensure_dirs(self) -> None:
        for path in (self.base, self.data_dir, self.config_dir):
            path.mkdir(parents=True, exist_ok=True)

    def write_artifacts(self, genesis: bytes, private_key: bytes) -> None:
        """写入创世文件与私钥；私钥在写入内容前就以 0600 创建。"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.genesis_path.write_bytes(genesis)
        os.chmod(self.genesis_path, 0o644)
        fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(private_key)
        os.chmod(self.key_path, 0o600)
