"""
报表执行记录和导出相关API路由
"""
from typing import Any, Dict, List, Optional
from urllib.parse import quote
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from pydantic import BaseModel

from ..services.dto import Execution, UserContext
from ..services.execution_engine import ExecutionEngine, get_execution_engine
from ..services.export_service import ExportService, get_export_service
from ..services.permission_gate import PermissionGate, get_permission_gate
from ..utils.logger import get_logger
from ..utils.tenant_helpers import get_current_user
from .errors import http_error

logger = get_logger(__name__)
router = APIRouter(prefix="/api/executions", tags=["executions"])


class ExecutionListResponse(BaseModel):
    """执行记录列表响应"""
    items: List[Execution]
    total: int
    page: int
    page_size: int


@router.get("", response_model=ExecutionListResponse)
async def list_executions(
    status_filter: Optional[str] = Query(None, alias="status"),
    trigger_type: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
):
    """获取调用方可见的所有执行记录"""
    try:
        items, total = engine.list_all_executions(
            user, status=status_filter, trigger_type=trigger_type, page=page, page_size=page_size
        )
        return ExecutionListResponse(items=items, total=total, page=page, page_size=page_size)
    except Exception as e:
        raise http_error(e, "获取执行记录列表失败")


@router.get("/stats")
async def get_execution_stats(
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    """按状态统计执行记录"""
    try:
        return engine.execution_stats(user)
    except Exception as e:
        raise http_error(e, "获取执行统计失败")


@router.get("/{execution_id}", response_model=Execution)
async def get_execution(
    execution_id: str,
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
):
    """获取执行记录（状态、结果或错误信息）"""
    try:
        return engine.get_execution(execution_id, user)
    except Exception as e:
        raise http_error(e, "获取执行记录失败")


@router.post("/{execution_id}/cancel", response_model=Execution)
async def cancel_execution(
    execution_id: str,
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
):
    """
    请求取消执行

    取消是协作式的，在下一个组件开始前生效
    """
    try:
        logger.info(f"收到取消执行请求: id={execution_id}")
        return engine.cancel(execution_id, user)
    except Exception as e:
        raise http_error(e, "取消执行失败")


@router.get("/{execution_id}/export")
async def export_execution(
    execution_id: str,
    format: str = Query(..., description="导出格式: pdf / excel / csv / json"),
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine),
    export_service: ExportService = Depends(get_export_service),
    gate: PermissionGate = Depends(get_permission_gate)
):
    """导出已完成的执行结果"""
    try:
        logger.info(f"收到导出请求: execution_id={execution_id}, format={format}")

        execution = engine.get_execution(execution_id)
        report = engine.store.get(execution.report_id)
        gate.authorize("export", report, user)

        export_file = await export_service.export(execution, format, report)

        # URL编码文件名以支持中文
        encoded_filename = quote(export_file.filename)
        return Response(
            content=export_file.content,
            media_type=export_file.media_type,
            headers={
                "Content-Disposition": f"attachment; filename*=UTF-8''{encoded_filename}"
            }
        )
    except Exception as e:
        raise http_error(e, "导出失败")


@router.post("/{execution_id}/rerun", response_model=Execution, status_code=status.HTTP_202_ACCEPTED)
async def rerun_execution(
    execution_id: str,
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
):
    """使用原执行的参数重新执行报表，返回新的 pending 执行记录"""
    try:
        logger.info(f"收到重新执行请求: id={execution_id}")
        return await engine.rerun(execution_id, user)
    except Exception as e:
        raise http_error(e, "重新执行失败")
