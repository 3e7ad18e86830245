"""
文件功能：
    定义节点生命周期管理相关的公开数据模型（Pydantic）。

公开接口：
    - NodeKind / DeploymentMode / ServiceKind: 封闭枚举
    - NodeRef: 定位一个部署单元所需的最小信息（ID、类型、模式）
    - NodeSpec: 节点创建时的不可变配置
    - AddressOverride: Fabric peer 的 delivery client 地址覆盖
    - ServiceDeployment / DockerDeployment / DeploymentResult: Start 的返回值（带标签的联合类型）
    - NodeStatus: 单元状态
    - ReloadRequest / OperationResult: HTTP 层请求与应答

内部方法：
    无
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class NodeKind(str, Enum):
    BESU = "besu"
    FABRIC_PEER = "fabric-peer"
    FABRIC_ORDERER = "fabric-orderer"


class DeploymentMode(str, Enum):
    SERVICE = "service"
    DOCKER = "docker"


class ServiceKind(str, Enum):
    SYSTEMD = "systemd"
    LAUNCHD = "launchd"


class NodeRef(BaseModel):
    """定位单元所需的信息：单元名称完全由 kind 与 id 推导。"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, description="节点 ID，将被 slug 化后用于命名")
    kind: NodeKind = Field(description="节点类型")
    mode: DeploymentMode = Field(description="部署模式")


class AddressOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_address: str = Field(description="被覆盖的 orderer 地址")
    to_address: str = Field(description="实际连接的地址")
    tls_ca_path: str = Field(description="目标地址使用的 TLS CA 证书路径")


class NodeSpec(NodeRef):
    """节点创建时的不可变配置，由调用方（HTTP 层）完成业务校验。"""

    name: str = Field(default="", description="可读名称")
    version: str = Field(min_length=1, description="节点软件版本")

    listen_host: str = Field(default="0.0.0.0", description="Fabric 监听地址")
    rpc_host: str = Field(default="0.0.0.0", description="RPC 监听地址")
    rpc_port: int = Field(gt=0, lt=65536, description="RPC 端口（Fabric 为主监听端口）")
    p2p_host: str = Field(default="0.0.0.0", description="P2P 地址")
    p2p_port: int | None = Field(default=None, gt=0, lt=65536, description="P2P 端口")
    chaincode_port: int | None = Field(default=None, gt=0, lt=65536)
    events_port: int | None = Field(default=None, gt=0, lt=65536)
    operations_port: int | None = Field(default=None, gt=0, lt=65536)
    admin_port: int | None = Field(default=None, gt=0, lt=65536)
    external_endpoint: str | None = Field(default=None, description="对外地址，默认 p2p_host:rpc_port")
    msp_id: str | None = Field(default=None, description="Fabric MSP ID")

    network_id: int | None = Field(default=None, description="链 / 网络 ID")
    bootnodes: List[str] = Field(default_factory=list, description="引导节点列表")
    miner_address: str | None = Field(default=None, description="Besu 出块收益地址")
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9545, gt=0, lt=65536)
    metrics_protocol: str = "PROMETHEUS"
    address_overrides: List[AddressOverride] = Field(default_factory=list)

    genesis: bytes = Field(default=b"", description="创世文件，按原样写入 config/genesis.json")
    private_key: bytes = Field(default=b"", description="节点私钥，写入 config/key（0600）")
    environment: Dict[str, str] = Field(default_factory=dict, description="附加环境变量")

    def ref(self) -> NodeRef:
        return NodeRef(id=self.id, kind=self.kind, mode=self.mode)


class ServiceDeployment(BaseModel):
    mode: Literal[DeploymentMode.SERVICE] = DeploymentMode.SERVICE
    service_kind: ServiceKind
    service_name: str


class DockerDeployment(BaseModel):
    mode: Literal[DeploymentMode.DOCKER] = DeploymentMode.DOCKER
    container_name: str


DeploymentResult = Annotated[Union[ServiceDeployment, DockerDeployment], Field(discriminator="mode")]


class NodeStatus(BaseModel):
    """单元状态：只有存在 / 不存在两种生命周期，state 为后端原样返回的状态字符串。"""

    id: str
    kind: NodeKind
    mode: DeploymentMode
    unit_name: str
    present: bool = Field(description="后端是否存在该单元")
    state: str = Field(description="后端状态，例如 running / exited / active / absent")
    started_at: str | None = Field(default=None, description="容器启动时间（仅 docker 模式）")


class ReloadRequest(NodeRef):
    files: Dict[str, str] = Field(description="相对配置目录的文件名 -> 新内容（UTF-8 文本）")


class OperationResult(BaseModel):
    ok: bool = True
    message: str = ""
