"""
报表定义与执行引擎 - 后端主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
import os

# 加载环境变量（必须在读取配置的模块之前）
load_dotenv()

from report_engine.database import init_database
from report_engine.utils.logger import setup_logger
from report_engine.middleware import TenantMiddleware  # Multi-tenant support
from report_engine.routes import (
    reports_router,
    templates_router,
    executions_router,
)
from report_engine.services.data_sources import get_data_source_registry, register_sql_sources_from_env
from report_engine.services.execution_engine import get_execution_engine
from report_engine.services.scheduler import get_scheduler

# 初始化日志
logger = setup_logger()


def scheduler_enabled() -> bool:
    return os.getenv("SCHEDULER_ENABLED", "true").lower() in ("true", "1", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 在多进程模式下，每个worker都会执行此代码
    worker_id = os.getpid()
    logger.info(f"Worker {worker_id} 正在启动...")

    try:
        # 初始化数据库
        init_database()
        logger.info(f"Worker {worker_id} 数据库初始化成功")
    except Exception as e:
        logger.error(f"Worker {worker_id} 数据库初始化失败: {e}", exc_info=True)
        raise

    sources = register_sql_sources_from_env(get_data_source_registry())
    logger.info(f"Worker {worker_id} 已注册数据源: {sources or '无'}")

    scheduler = get_scheduler() if scheduler_enabled() else None
    if scheduler is not None:
        scheduler.start()

    logger.info(f"Worker {worker_id} 启动完成")

    yield

    # 关闭时执行
    logger.info(f"Worker {worker_id} 正在关闭...")
    if scheduler is not None:
        await scheduler.stop()
    await get_execution_engine().shutdown()


app = FastAPI(
    title="报表定义与执行引擎 API",
    description="报表设计、模板、异步执行、导出和定时分发",
    version="1.0.0",
    lifespan=lifespan
)

# 注册路由
app.include_router(reports_router)
app.include_router(templates_router)
app.include_router(executions_router)

# === MIDDLEWARE REGISTRATION ===

# Multi-tenant middleware (MUST be added before routes)
app.add_middleware(TenantMiddleware)

# CORS配置 (including gateway origin)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "报表定义与执行引擎 API", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    host = os.getenv("BACKEND_HOST", "0.0.0.0")
    port = int(os.getenv("BACKEND_PORT", 8000))
    workers = int(os.getenv("BACKEND_WORKERS", 1))
    log_level = os.getenv("LOG_LEVEL", "info").lower()

    logger.info(f"启动服务器: {host}:{port}, workers={workers}, log_level={log_level}")

    # 多进程时每个worker各自运行调度器，生产部署应只在一个worker中设置 SCHEDULER_ENABLED=true
    uvicorn.run(
        "report_engine.main:app",
        host=host,
        port=port,
        workers=workers,
        log_level=log_level,
        access_log=log_level == "debug"
    )
