"""
FastAPI 应用入口点。
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from src.nodeplane.config import Config
from src.nodeplane.nodes.router import router as nodes_router
from src.nodeplane.nodes.services import NodeController


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 测试可以预先注入 controller，此时不再读取配置
    if getattr(app.state, "controller", None) is None:
        config = Config()
        logger.info(f"config: {config.model_dump_json(indent=4)}")
        app.state.controller = NodeController(config)
    yield
    logger.info("应用关闭")


app = FastAPI(title="Blockchain Node Lifecycle Service", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(nodes_router, prefix="/v1")
