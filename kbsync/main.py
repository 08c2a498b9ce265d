"""
FastAPI 应用入口

只负责进程生命周期：
- 启动时构建 AppContext 并初始化全部租户连接
- 关闭时释放连接池与 Redis 客户端
- /health 返回各租户连接池状态

业务接口由宿主应用通过 AppContext（request.app.state.context）接入。
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from kbsync.config import get_settings
from kbsync.container import AppContext
from kbsync.exceptions import InternalError, KBSyncError, to_internal_error
from kbsync.infra.logging import get_logger, setup_logging

settings = get_settings()
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化租户连接，关闭时释放"""
    logger.info(f"应用启动中... 环境: {settings.environment}，执行模式: {settings.mode}")
    context = AppContext.create(settings)
    report = await context.registry.initialize_all()
    app.state.context = context
    app.state.init_report = report

    yield

    await context.close()
    logger.info("应用已关闭")


app = FastAPI(title=settings.app_name, lifespan=lifespan)


def get_context(request: Request) -> AppContext:
    """FastAPI 依赖：获取应用上下文"""
    return request.app.state.context


@app.get("/health")
async def health(request: Request, context: AppContext = Depends(get_context)):
    report = request.app.state.init_report
    return {
        "status": "ok" if not report.failed else "degraded",
        "mode": settings.mode,
        "tenants": context.registry.pool_status(),
        "initialization": report.to_dict(),
    }


@app.exception_handler(KBSyncError)
async def kbsync_exception_handler(_: Request, exc: KBSyncError):
    """
    统一错误响应格式：
    {"detail": "<错误信息>", "code": "<ERROR_CODE>"}
    """
    error = exc if isinstance(exc, InternalError) else to_internal_error(exc, "request")
    return JSONResponse(
        status_code=error.status_code,
        content={"detail": error.message, "code": type(exc).__name__},
    )
