"""
API路由模块
"""
from .reports import router as reports_router
from .templates import router as templates_router
from .executions import router as executions_router

__all__ = [
    "reports_router",
    "templates_router",
    "executions_router",
]
