"""
命名与目录布局测试。
"""

import os
import stat

import pytest

from src.nodeplane.errors import ValidationError
from src.nodeplane.nodes.naming import NodeLayout, binary_dir, launchd_label, slugify, unit_name
from src.nodeplane.nodes.schemas import NodeKind, NodeRef


def test_slugify():
    assert slugify("Peer0") == "peer0"
    assert slugify("  Org1 / Peer_0 ") == "org1-peer-0"
    with pytest.raises(ValidationError):
        slugify("___")


def test_unit_and_label_names():
    ref = NodeRef(id="Peer0", kind="fabric-peer", mode="docker")
    assert unit_name(ref) == "fabric-peer-peer0"
    assert launchd_label("dev.nodeplane", ref) == "dev.nodeplane.fabric-peer.peer0"


def test_layout(tmp_path):
    ref = NodeRef(id="validator 1", kind="besu", mode="service")
    layout = NodeLayout.for_node(tmp_path, ref)
    assert layout.base == tmp_path / "besu" / "validator-1"
    assert layout.log_path == layout.base / "besu-validator-1.log"
    assert binary_dir(tmp_path, NodeKind.BESU, "24.1.0") == tmp_path / "bin" / "besu" / "24.1.0"

    layout.ensure_dirs()
    layout.write_artifacts(b'{"config":{}}', b"0xkey")
    assert layout.genesis_path.read_bytes() == b'{"config":{}}'
    assert layout.key_path.read_bytes() == b"0xkey"
    if os.name == "posix":
        assert stat.S_IMODE(layout.key_path.stat().st_mode) == 0o600
