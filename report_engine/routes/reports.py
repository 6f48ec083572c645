"""
报表定义相关API路由
"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..services.dto import (
    ComponentNode,
    Execution,
    ExecutionResult,
    ImportResult,
    PermissionSet,
    ReportDefinition,
    ReportStatistics,
    ReportTemplate,
    ScheduleConfig,
    UserContext,
)
from ..services.execution_engine import ExecutionEngine, get_execution_engine
from ..services.report_store import ReportStore, check_definition, get_report_store
from ..utils.logger import get_logger
from ..utils.tenant_helpers import get_current_user
from .errors import http_error

logger = get_logger(__name__)
router = APIRouter(prefix="/api/reports", tags=["reports"])


# ============ Request/Response Models ============

class CreateReportRequest(BaseModel):
    """创建报表请求"""
    name: str = Field(..., description="报表名称")
    report_no: Optional[str] = Field(None, description="报表编号，不提供则自动生成")
    name_en: Optional[str] = Field(None, description="英文名称")
    description: Optional[str] = Field(None, description="报表描述")
    category: str = Field(..., description="报表分类")
    type: str = Field(..., description="报表类型")
    components: List[ComponentNode] = Field(default_factory=list, description="组件列表")
    schedule_config: ScheduleConfig = Field(default_factory=ScheduleConfig, description="定时配置")
    permissions: PermissionSet = Field(default_factory=PermissionSet, description="权限配置")
    tags: List[str] = Field(default_factory=list, description="标签")


class UpdateReportRequest(BaseModel):
    """更新报表请求（只更新传入的字段）"""
    name: Optional[str] = None
    name_en: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    type: Optional[str] = None
    components: Optional[List[ComponentNode]] = None
    schedule_config: Optional[ScheduleConfig] = None
    permissions: Optional[PermissionSet] = None
    tags: Optional[List[str]] = None
    expected_version: Optional[int] = Field(None, description="期望的当前版本号，不一致时返回409")


class ExecuteReportRequest(BaseModel):
    """执行报表请求"""
    parameters: Dict[str, Any] = Field(default_factory=dict, description="执行参数，覆盖报表默认参数")


class ImportReportsRequest(BaseModel):
    """批量导入报表请求"""
    reports: List[Dict[str, Any]] = Field(..., description="报表列表")


class SaveAsTemplateRequest(BaseModel):
    """保存为模板请求"""
    name: Optional[str] = Field(None, description="模板名称，默认使用报表名称")
    is_public: bool = Field(default=False, description="是否公开")


class PreviewReportRequest(BaseModel):
    """预览请求"""
    components: List[ComponentNode] = Field(..., description="组件列表")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="预览参数")


class ValidateReportResponse(BaseModel):
    """配置校验结果"""
    valid: bool
    errors: List[str] = Field(default_factory=list)


class ReportListResponse(BaseModel):
    """报表列表响应"""
    items: List[ReportDefinition]
    total: int
    page: int
    page_size: int


class ExecutionListResponse(BaseModel):
    """执行历史响应"""
    items: List[Execution]
    total: int
    page: int
    page_size: int


# ============ API Endpoints ============

@router.get("", response_model=ReportListResponse)
async def list_reports(
    category: Optional[str] = None,
    type: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """获取报表列表（只返回调用方可见的报表）"""
    try:
        items, total = store.list(
            user,
            category=category,
            type=type,
            status=status_filter,
            search=search,
            page=page,
            page_size=page_size
        )
        logger.info(f"返回报表列表: count={len(items)}, total={total}")
        return ReportListResponse(items=items, total=total, page=page, page_size=page_size)
    except Exception as e:
        raise http_error(e, "获取报表列表失败")


@router.post("", response_model=ReportDefinition, status_code=status.HTTP_201_CREATED)
async def create_report(
    request: CreateReportRequest,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """创建报表"""
    try:
        logger.info(f"收到创建报表请求: name={request.name}, components={len(request.components)}")
        return store.create(request.model_dump(), user)
    except Exception as e:
        raise http_error(e, "创建报表失败")


@router.get("/statistics", response_model=ReportStatistics)
async def get_statistics(
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """获取报表统计"""
    try:
        return store.get_statistics(user)
    except Exception as e:
        raise http_error(e, "获取报表统计失败")


@router.post("/import", response_model=ImportResult)
async def import_reports(
    request: ImportReportsRequest,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """批量导入报表"""
    try:
        logger.info(f"收到批量导入请求: count={len(request.reports)}")
        return store.import_reports(request.reports, user)
    except Exception as e:
        raise http_error(e, "批量导入报表失败")


@router.post("/validate", response_model=ValidateReportResponse)
async def validate_report(
    request: Dict[str, Any],
    user: UserContext = Depends(get_current_user)
):
    """校验报表配置（不保存），返回全部问题"""
    try:
        errors = check_definition(request)
        logger.info(f"校验报表配置: valid={not errors}, errors={len(errors)}")
        return ValidateReportResponse(valid=not errors, errors=errors)
    except Exception as e:
        raise http_error(e, "校验报表配置失败")


@router.post("/preview", response_model=ExecutionResult)
async def preview_report(
    request: PreviewReportRequest,
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
):
    """预览未保存的组件列表（取数并渲染，不创建执行记录）"""
    try:
        logger.info(f"收到预览请求: components={len(request.components)}")
        return await engine.preview(request.components, request.parameters)
    except Exception as e:
        raise http_error(e, "预览报表失败")


@router.get("/{report_id}", response_model=ReportDefinition)
async def get_report(
    report_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """获取报表详情（记录一次查看）"""
    try:
        return store.record_view(report_id, user)
    except Exception as e:
        raise http_error(e, "获取报表失败")


@router.put("/{report_id}", response_model=ReportDefinition)
async def update_report(
    report_id: str,
    request: UpdateReportRequest,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """更新报表"""
    try:
        changes = request.model_dump(exclude_unset=True)
        expected_version = changes.pop("expected_version", None)
        if not changes:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="没有提供要更新的字段"
            )
        logger.info(f"收到更新报表请求: id={report_id}, fields={list(changes.keys())}")
        return store.update(report_id, changes, user, expected_version=expected_version)
    except Exception as e:
        raise http_error(e, "更新报表失败")


@router.delete("/{report_id}")
async def delete_report(
    report_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """删除报表"""
    try:
        store.delete(report_id, user)
        return {"success": True, "message": "报表已删除"}
    except Exception as e:
        raise http_error(e, "删除报表失败")


@router.post("/{report_id}/duplicate", response_model=ReportDefinition, status_code=status.HTTP_201_CREATED)
async def duplicate_report(
    report_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """复制报表"""
    try:
        return store.duplicate_report(report_id, user)
    except Exception as e:
        raise http_error(e, "复制报表失败")


@router.post("/{report_id}/archive", response_model=ReportDefinition)
async def archive_report(
    report_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """归档报表（终态）"""
    try:
        return store.archive(report_id, user)
    except Exception as e:
        raise http_error(e, "归档报表失败")


@router.post("/{report_id}/activate", response_model=ReportDefinition)
async def activate_report(
    report_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """启用报表"""
    try:
        return store.activate(report_id, user)
    except Exception as e:
        raise http_error(e, "启用报表失败")


@router.post("/{report_id}/deactivate", response_model=ReportDefinition)
async def deactivate_report(
    report_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """停用报表"""
    try:
        return store.deactivate(report_id, user)
    except Exception as e:
        raise http_error(e, "停用报表失败")


@router.post("/{report_id}/execute", response_model=Execution, status_code=status.HTTP_202_ACCEPTED)
async def execute_report(
    report_id: str,
    request: ExecuteReportRequest,
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
):
    """
    触发报表执行

    立即返回 pending 状态的执行记录，通过 /api/executions/{id} 查询进度
    """
    try:
        logger.info(f"收到执行报表请求: id={report_id}, parameters={request.parameters}")
        return await engine.trigger(report_id, request.parameters, user, trigger_type="manual")
    except Exception as e:
        raise http_error(e, "触发报表执行失败")


@router.get("/{report_id}/executions", response_model=ExecutionListResponse)
async def list_report_executions(
    report_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    user: UserContext = Depends(get_current_user),
    engine: ExecutionEngine = Depends(get_execution_engine)
):
    """获取报表的执行历史"""
    try:
        items, total = engine.list_executions(report_id, user, status=status_filter, page=page, page_size=page_size)
        return ExecutionListResponse(items=items, total=total, page=page, page_size=page_size)
    except Exception as e:
        raise http_error(e, "获取执行历史失败")


@router.post("/{report_id}/save-as-template", response_model=ReportTemplate, status_code=status.HTTP_201_CREATED)
async def save_as_template(
    report_id: str,
    request: SaveAsTemplateRequest,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """把报表保存为模板"""
    try:
        return store.save_as_template(report_id, user, name=request.name, is_public=request.is_public)
    except Exception as e:
        raise http_error(e, "保存模板失败")
