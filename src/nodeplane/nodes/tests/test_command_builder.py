"""
命令构建测试。

覆盖：
 - 同一 NodeSpec 多次构建结果逐字节一致
 - 可选字段只在末尾追加参数，不改变必选参数顺序
 - 必填字段缺失时报 ValidationError
 - Fabric 环境变量与端口映射
"""

import pytest

from src.nodeplane.errors import ValidationError
from src.nodeplane.nodes.schemas import AddressOverride, NodeSpec
from src.nodeplane.nodes.services.command_builder import (
    CONTAINER_PATHS,
    RuntimePaths,
    build_command,
    build_environment,
    port_bindings,
)

PATHS = RuntimePaths(data_dir="/srv/besu/n1/data", config_dir="/srv/besu/n1/config")


def _besu_spec(**overrides) -> NodeSpec:
    values = dict(
        id="n1",
        kind="besu",
        mode="service",
        version="24.1.0",
        rpc_port=8545,
        p2p_port=30303,
        network_id=1337,
    )
    values.update(overrides)
    return NodeSpec(**values)


def test_besu_command_is_deterministic():
    spec = _besu_spec()
    first = build_command(spec, "/opt/besu/bin/besu", PATHS)
    second = build_command(spec, "/opt/besu/bin/besu", PATHS)
    assert first == second
    assert first[0] == "/opt/besu/bin/besu"
    assert "--data-path=/srv/besu/n1/data" in first
    assert "--genesis-file=/srv/besu/n1/config/genesis.json" in first
    assert "--node-private-key-file=/srv/besu/n1/config/key" in first
    assert first[-1] == "--profile=ENTERPRISE"


def test_optional_tokens_only_append():
    base = build_command(_besu_spec(), "besu", PATHS)
    with_boot = build_command(_besu_spec(bootnodes=["enode://a@1.2.3.4:30303", "enode://b@1.2.3.5:30303"]), "besu", PATHS)
    assert with_boot[: len(base)] == base
    assert with_boot[len(base):] == ["--bootnodes=enode://a@1.2.3.4:30303,enode://b@1.2.3.5:30303"]

    with_miner = build_command(_besu_spec(miner_address="0xabc"), "besu", PATHS)
    assert with_miner[: len(base)] == base
    assert with_miner[len(base):] == ["--miner-enabled", "--miner-coinbase=0xabc"]


def test_metrics_flag_changes_only_its_token():
    off = build_command(_besu_spec(), "besu", PATHS)
    on = build_command(_besu_spec(metrics_enabled=True), "besu", PATHS)
    assert len(off) == len(on)
    diff = [(a, b) for a, b in zip(off, on) if a != b]
    assert diff == [("--metrics-enabled=false", "--metrics-enabled=true")]


def test_besu_requires_network_id():
    with pytest.raises(ValidationError):
        build_command(_besu_spec(network_id=None), "besu", PATHS)


def test_fabric_commands():
    peer = NodeSpec(id="peer0", kind="fabric-peer", mode="docker", version="2.5.12", rpc_port=7051)
    orderer = NodeSpec(id="orderer0", kind="fabric-orderer", mode="docker", version="2.5.12", rpc_port=7050)
    assert build_command(peer, "peer", CONTAINER_PATHS[peer.kind]) == ["peer", "node", "start"]
    assert build_command(orderer, "orderer", CONTAINER_PATHS[orderer.kind]) == ["orderer"]


def test_peer_environment_overrides_user_values():
    spec = NodeSpec(
        id="peer0",
        kind="fabric-peer",
        mode="service",
        version="2.5.12",
        rpc_port=7051,
        chaincode_port=7052,
        msp_id="Org1MSP",
        environment={"CORE_PEER_ID": "wrong", "EXTRA": "1"},
        address_overrides=[
            AddressOverride(from_address="orderer:7050", to_address="10.0.0.2:7050", tls_ca_path="/tls/ca.pem")
        ],
    )
    env = build_environment(spec, PATHS)
    assert env["CORE_PEER_ID"] == "peer0"
    assert env["EXTRA"] == "1"
    assert env["CORE_PEER_LOCALMSPID"] == "Org1MSP"
    assert env["CORE_PEER_CHAINCODELISTENADDRESS"] == "0.0.0.0:7052"
    assert env["CORE_PEER_ADDRESS"] == "localhost:7051"
    assert env["CORE_PEER_DELIVERYCLIENT_ADDRESSOVERRIDES"] == "orderer:7050 10.0.0.2:7050 /tls/ca.pem"
    assert "CORE_OPERATIONS_LISTENADDRESS" not in env


def test_besu_environment_prepends_java():
    env = build_environment(_besu_spec(), PATHS, java_home="/jdk", java_opts="-Xmx1g", inherited_path="/usr/bin")
    assert env["JAVA_HOME"] == "/jdk"
    assert env["JAVA_OPTS"] == "-Xmx1g"
    assert env["PATH"].startswith("/jdk/bin")
    assert env["PATH"].endswith("/usr/bin")


def test_port_bindings():
    assert port_bindings(_besu_spec()) == [(8545, "tcp"), (30303, "tcp"), (30303, "udp")]
    assert port_bindings(_besu_spec(metrics_enabled=True))[-1] == (9545, "tcp")
    orderer = NodeSpec(
        id="o", kind="fabric-orderer", mode="docker", version="2.5.12", rpc_port=7050, admin_port=7053
    )
    assert port_bindings(orderer) == [(7050, "tcp"), (7053, "tcp")]
