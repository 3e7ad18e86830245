"""
节点生命周期管理的 FastAPI 路由定义。

只做请求解析与错误映射，业务逻辑全部在 NodeController 中；
阻塞调用（systemctl、docker、下载）通过 asyncio.to_thread 执行。
"""

import asyncio

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from loguru import logger

from ..errors import (
    InstallationError,
    InternalError,
    NodeError,
    NotFoundError,
    PrerequisiteError,
    ValidationError,
)
from .schemas import (
    DeploymentMode,
    DeploymentResult,
    NodeKind,
    NodeRef,
    NodeSpec,
    NodeStatus,
    OperationResult,
    ReloadRequest,
)
from .services import NodeController

router = APIRouter(prefix="/nodes", tags=["Nodes"])


def _controller(request: Request) -> NodeController:
    return request.app.state.controller


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PrerequisiteError):
        return HTTPException(status_code=412, detail=str(e))
    if isinstance(e, InstallationError):
        return HTTPException(status_code=500, detail=f"安装失败: {e}")
    if isinstance(e, (InternalError, NodeError)):
        return HTTPException(status_code=500, detail=str(e))
    logger.exception(f"未预期的错误：{e}")
    return HTTPException(status_code=500, detail=f"内部服务器错误: {e}")


@router.post("/start", response_model=DeploymentResult)
async def start_node(spec: NodeSpec, request: Request):
    """
    安装（如需要）并启动节点，返回部署结果（服务名或容器名）。
    """
    try:
        return await asyncio.to_thread(_controller(request).start, spec)
    except Exception as e:
        raise _http_error(e)


@router.post("/stop", response_model=OperationResult)
async def stop_node(ref: NodeRef, request: Request) -> OperationResult:
    """
    停止并移除节点单元；单元不存在时同样返回成功。
    """
    try:
        await asyncio.to_thread(_controller(request).stop, ref)
        return OperationResult(message="节点已停止")
    except Exception as e:
        raise _http_error(e)


@router.post("/status", response_model=NodeStatus)
async def node_status(ref: NodeRef, request: Request) -> NodeStatus:
    try:
        return await asyncio.to_thread(_controller(request).status, ref)
    except Exception as e:
        raise _http_error(e)


@router.post("/reload", response_model=OperationResult)
async def reload_node(req: ReloadRequest, request: Request) -> OperationResult:
    """
    覆盖节点配置文件并发送 SIGHUP，进程不重启。
    """
    ref = NodeRef(id=req.id, kind=req.kind, mode=req.mode)
    files = {name: content.encode("utf-8") for name, content in req.files.items()}
    try:
        await asyncio.to_thread(_controller(request).reload, ref, files)
        return OperationResult(message="配置已重新加载")
    except Exception as e:
        raise _http_error(e)


@router.get("/{kind}/{mode}/{node_id}/logs")
async def node_logs(
    kind: NodeKind,
    mode: DeploymentMode,
    node_id: str,
    request: Request,
    tail: int = Query(100, ge=0, description="返回的历史行数"),
    follow: bool = Query(False, description="是否持续跟踪新日志"),
):
    """
    以 text/plain 流式返回节点日志；客户端断开时停止读取。
    """
    ref = NodeRef(id=node_id, kind=kind, mode=mode)
    try:
        log_tail = await asyncio.to_thread(_controller(request).tail_logs, ref, tail, follow)
    except Exception as e:
        raise _http_error(e)

    # 客户端断开时 StreamingResponse 会取消该生成器，退出 async with 即停止读取
    async def body():
        async with log_tail:
            async for line in log_tail:
                yield f"{line}\n"
        logger.debug(f"{node_id} 的日志流已关闭")

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")
