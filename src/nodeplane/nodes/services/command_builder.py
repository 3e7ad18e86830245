"""
命令构建：NodeSpec -> 进程参数列表。

纯函数，无任何 I/O。同一 NodeSpec 总是得到逐字节相同的结果；
可选字段只在非空时追加到所有必选参数之后，不改变必选参数的顺序。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Tuple

from ...errors import ValidationError
from ..schemas import NodeKind, NodeSpec


@dataclass(frozen=True)
class RuntimePaths:
    """进程看到的数据目录与配置目录（服务模式为宿主机路径，docker 模式为容器内路径）。"""

    data_dir: str
    config_dir: str

    @property
    def genesis_file(self) -> str:
        return f"{self.config_dir}/genesis.json"

    @property
    def key_file(self) -> str:
        return f"{self.config_dir}/key"

    @property
    def tls_ca_file(self) -> str:
        return f"{self.config_dir}/tlscacerts/cacert.pem"

    @property
    def tls_cert_file(self) -> str:
        return f"{self.config_dir}/tls.crt"

    @property
    def tls_key_file(self) -> str:
        return f"{self.config_dir}/tls.key"


# docker 模式下容器内的挂载点
CONTAINER_PATHS: Dict[NodeKind, RuntimePaths] = {
    NodeKind.BESU: RuntimePaths(data_dir="/opt/besu/data", config_dir="/opt/besu/config"),
    NodeKind.FABRIC_PEER: RuntimePaths(
        data_dir="/var/hyperledger/production", config_dir="/etc/hyperledger/fabric/msp"
    ),
    NodeKind.FABRIC_ORDERER: RuntimePaths(
        data_dir="/var/hyperledger/production", config_dir="/etc/hyperledger/fabric/msp"
    ),
}

# docker 模式下镜像内可执行文件名
CONTAINER_BINARIES: Dict[NodeKind, str] = {
    NodeKind.BESU: "besu",
    NodeKind.FABRIC_PEER: "peer",
    NodeKind.FABRIC_ORDERER: "orderer",
}


def _require(spec: NodeSpec, field: str):
    value = getattr(spec, field)
    if value is None:
        raise ValidationError(
            f"{spec.kind.value} 节点缺少必填字段 {field}", node_id=spec.id, operation="build-command"
        )
    return value


def _besu_command(spec: NodeSpec, binary: str, paths: RuntimePaths) -> List[str]:
    network_id = _require(spec, "network_id")
    p2p_port = _require(spec, "p2p_port")
    cmd = [
        binary,
        f"--data-path={paths.data_dir}",
        f"--genesis-file={paths.genesis_file}",
        "--rpc-http-enabled",
        "--rpc-http-api=ETH,NET,QBFT",
        "--rpc-http-cors-origins=all",
        f"--rpc-http-host={spec.rpc_host}",
        f"--rpc-http-port={spec.rpc_port}",
        "--min-gas-price=1000000000",
        f"--network-id={network_id}",
        "--host-allowlist=*",
        f"--node-private-key-file={paths.key_file}",
        f"--metrics-enabled={'true' if spec.metrics_enabled else 'false'}",
        "--metrics-host=0.0.0.0",
        f"--metrics-port={spec.metrics_port}",
        f"--metrics-protocol={spec.metrics_protocol}",
        "--p2p-enabled=true",
        f"--p2p-host={spec.p2p_host}",
        f"--p2p-port={p2p_port}",
        "--nat-method=NONE",
        "--discovery-enabled=true",
        "--profile=ENTERPRISE",
    ]
    if spec.miner_address:
        cmd.extend(["--miner-enabled", f"--miner-coinbase={spec.miner_address}"])
    if spec.bootnodes:
        cmd.append(f"--bootnodes={','.join(spec.bootnodes)}")
    return cmd


def _peer_command(spec: NodeSpec, binary: str, paths: RuntimePaths) -> List[str]:
    return [binary, "node", "start"]


def _orderer_command(spec: NodeSpec, binary: str, paths: RuntimePaths) -> List[str]:
    return [binary]


_BUILDERS = {
    NodeKind.BESU: _besu_command,
    NodeKind.FABRIC_PEER: _peer_command,
    NodeKind.FABRIC_ORDERER: _orderer_command,
}


def build_command(spec: NodeSpec, binary: str, paths: RuntimePaths) -> List[str]:
    """按节点类型生成参数列表；未知类型是配置错误。"""
    builder = _BUILDERS.get(spec.kind)
    if builder is None:
        raise ValidationError(f"未知的节点类型: {spec.kind}", node_id=spec.id, operation="build-command")
    return builder(spec, binary, paths)


def _endpoint(host: str, port: int | None) -> str | None:
    return f"{host}:{port}" if port is not None else None


def _external_endpoint(spec: NodeSpec) -> str:
    if spec.external_endpoint:
        return spec.external_endpoint
    host = "localhost" if spec.p2p_host == "0.0.0.0" else spec.p2p_host
    return f"{host}:{spec.rpc_port}"


def _peer_environment(spec: NodeSpec, paths: RuntimePaths) -> Dict[str, str]:
    external = _external_endpoint(spec)
    env = {
        "CORE_PEER_MSPCONFIGPATH": paths.config_dir,
        "FABRIC_CFG_PATH": paths.config_dir,
        "CORE_PEER_FILESYSTEMPATH": paths.data_dir,
        "CORE_PEER_TLS_ENABLED": "true",
        "CORE_PEER_TLS_ROOTCERT_FILE": paths.tls_ca_file,
        "CORE_PEER_TLS_CERT_FILE": paths.tls_cert_file,
        "CORE_PEER_TLS_KEY_FILE": paths.tls_key_file,
        "CORE_PEER_TLS_CLIENTCERT_FILE": paths.tls_cert_file,
        "CORE_PEER_TLS_CLIENTKEY_FILE": paths.tls_key_file,
        "CORE_PEER_TLS_CLIENTAUTHREQUIRED": "false",
        "CORE_PEER_TLS_CLIENTROOTCAS_FILES": paths.tls_ca_file,
        "CORE_PEER_ID": spec.id,
        "CORE_PEER_ADDRESS": external,
        "CORE_PEER_LISTENADDRESS": f"{spec.listen_host}:{spec.rpc_port}",
        "CORE_PEER_GOSSIP_EXTERNALENDPOINT": external,
        "CORE_PEER_GOSSIP_ENDPOINT": external,
        "CORE_PEER_GOSSIP_BOOTSTRAP": external,
        "CORE_PEER_GOSSIP_ORGLEADER": "true",
        "CORE_PEER_GOSSIP_USELEADERELECTION": "false",
        "CORE_PEER_ADDRESSAUTODETECT": "false",
        "CORE_PEER_PROFILE_ENABLED": "true",
        "CORE_OPERATIONS_TLS_ENABLED": "false",
        "CORE_METRICS_PROVIDER": "prometheus",
        "CORE_LEDGER_STATE_STATEDATABASE": "goleveldb",
        "FABRIC_LOGGING_SPEC": "info",
    }
    optional = {
        "CORE_PEER_CHAINCODELISTENADDRESS": _endpoint(spec.listen_host, spec.chaincode_port),
        "CORE_PEER_EVENTS_ADDRESS": _endpoint(spec.listen_host, spec.events_port),
        "CORE_OPERATIONS_LISTENADDRESS": _endpoint(spec.listen_host, spec.operations_port),
        "CORE_PEER_LOCALMSPID": spec.msp_id,
    }
    env.update({k: v for k, v in optional.items() if v})
    if spec.address_overrides:
        env["CORE_PEER_DELIVERYCLIENT_ADDRESSOVERRIDES"] = ";".join(
            f"{o.from_address} {o.to_address} {o.tls_ca_path}" for o in spec.address_overrides
        )
    return env


def _orderer_environment(spec: NodeSpec, paths: RuntimePaths) -> Dict[str, str]:
    env = {
        "FABRIC_CFG_PATH": paths.config_dir,
        "ORDERER_GENERAL_LOCALMSPDIR": paths.config_dir,
        "ORDERER_FILELEDGER_LOCATION": paths.data_dir,
        "ORDERER_GENERAL_LISTENADDRESS": spec.listen_host,
        "ORDERER_GENERAL_LISTENPORT": str(spec.rpc_port),
        "ORDERER_GENERAL_TLS_ENABLED": "true",
        "ORDERER_GENERAL_TLS_CERTIFICATE": paths.tls_cert_file,
        "ORDERER_GENERAL_TLS_PRIVATEKEY": paths.tls_key_file,
        "ORDERER_GENERAL_TLS_ROOTCAS": paths.tls_ca_file,
        "ORDERER_GENERAL_TLS_CLIENTROOTCAS": paths.tls_ca_file,
        "ORDERER_GENERAL_TLS_CLIENTAUTHREQUIRED": "false",
        "ORDERER_GENERAL_CLUSTER_CLIENTCERTIFICATE": paths.tls_cert_file,
        "ORDERER_GENERAL_CLUSTER_CLIENTPRIVATEKEY": paths.tls_key_file,
        "ORDERER_GENERAL_CLUSTER_ROOTCAS": paths.tls_ca_file,
        "ORDERER_ADMIN_TLS_ENABLED": "true",
        "ORDERER_ADMIN_TLS_CERTIFICATE": paths.tls_cert_file,
        "ORDERER_ADMIN_TLS_PRIVATEKEY": paths.tls_key_file,
        "ORDERER_ADMIN_TLS_ROOTCAS": paths.tls_ca_file,
        "ORDERER_ADMIN_TLS_CLIENTROOTCAS": paths.tls_ca_file,
        "ORDERER_CHANNELPARTICIPATION_ENABLED": "true",
        "ORDERER_GENERAL_BOOTSTRAPMETHOD": "none",
        "ORDERER_GENERAL_LEDGERTYPE": "file",
        "ORDERER_OPERATIONS_TLS_ENABLED": "false",
        "ORDERER_METRICS_PROVIDER": "prometheus",
        "FABRIC_LOGGING_SPEC": "info",
    }
    optional = {
        "ORDERER_ADMIN_LISTENADDRESS": _endpoint(spec.listen_host, spec.admin_port),
        "ORDERER_OPERATIONS_LISTENADDRESS": _endpoint(spec.listen_host, spec.operations_port),
        "ORDERER_GENERAL_LOCALMSPID": spec.msp_id,
    }
    env.update({k: v for k, v in optional.items() if v})
    return env


def build_environment(
    spec: NodeSpec,
    paths: RuntimePaths,
    *,
    java_home: str | None = None,
    java_opts: str | None = None,
    inherited_path: str | None = None,
) -> Dict[str, str]:
    """生成进程环境变量；节点定义的变量优先级最低，会被必需变量覆盖。"""
    env: Dict[str, str] = dict(spec.environment)
    if spec.kind == NodeKind.BESU:
        if java_opts:
            env["JAVA_OPTS"] = java_opts
        if java_home:
            env["JAVA_HOME"] = java_home
            java_bin = f"{java_home}/bin"
            env["PATH"] = f"{java_bin}{os.pathsep}{inherited_path}" if inherited_path else java_bin
    elif spec.kind == NodeKind.FABRIC_PEER:
        env.update(_peer_environment(spec, paths))
    elif spec.kind == NodeKind.FABRIC_ORDERER:
        env.update(_orderer_environment(spec, paths))
    else:
        raise ValidationError(f"未知的节点类型: {spec.kind}", node_id=spec.id, operation="build-environment")
    return env


def port_bindings(spec: NodeSpec) -> List[Tuple[int, str]]:
    """容器端口映射（端口, 协议），宿主机端口与容器端口 1:1。"""
    ports: List[Tuple[int, str]] = [(spec.rpc_port, "tcp")]
    if spec.kind == NodeKind.BESU:
        p2p_port = _require(spec, "p2p_port")
        ports.extend([(p2p_port, "tcp"), (p2p_port, "udp")])
        if spec.metrics_enabled:
            ports.append((spec.metrics_port, "tcp"))
    elif spec.kind == NodeKind.FABRIC_PEER:
        for port in (spec.chaincode_port, spec.events_port, spec.operations_port):
            if port is not None:
                ports.append((port, "tcp"))
    elif spec.kind == NodeKind.FABRIC_ORDERER:
        for port in (spec.admin_port, spec.operations_port):
            if port is not None:
                ports.append((port, "tcp"))
    return ports
