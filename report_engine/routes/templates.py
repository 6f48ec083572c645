"""
报表模板相关API路由
"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..services.dto import ComponentNode, ReportDefinition, ReportTemplate, UserContext
from ..services.report_store import ReportStore, get_report_store
from ..utils.logger import get_logger
from ..utils.tenant_helpers import get_current_user
from .errors import http_error

logger = get_logger(__name__)
router = APIRouter(prefix="/api/templates", tags=["templates"])


# ============ Request Models ============

class CreateTemplateRequest(BaseModel):
    """创建模板请求"""
    name: str = Field(..., description="模板名称")
    name_en: Optional[str] = Field(None, description="英文名称")
    description: Optional[str] = Field(None, description="模板描述")
    category: str = Field(..., description="报表分类")
    type: str = Field(..., description="报表类型")
    tags: List[str] = Field(default_factory=list, description="标签")
    is_public: bool = Field(default=False, description="是否公开")
    is_system: bool = Field(default=False, description="是否系统模板（仅管理员）")
    components: List[ComponentNode] = Field(default_factory=list, description="组件快照")


class UpdateTemplateRequest(BaseModel):
    """更新模板请求（只更新传入的字段）"""
    name: Optional[str] = None
    name_en: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    type: Optional[str] = None
    tags: Optional[List[str]] = None
    is_public: Optional[bool] = None
    components: Optional[List[ComponentNode]] = None


class InstantiateTemplateRequest(BaseModel):
    """从模板创建报表请求"""
    name: Optional[str] = Field(None, description="新报表名称，默认使用模板名称")


# ============ API Endpoints ============

@router.get("", response_model=List[ReportTemplate])
async def list_templates(
    category: Optional[str] = None,
    type: Optional[str] = None,
    tag: Optional[str] = None,
    search: Optional[str] = None,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """获取模板列表（系统模板、公开模板和自己的模板）"""
    try:
        return store.list_templates(user, category=category, type=type, tag=tag, search=search)
    except Exception as e:
        raise http_error(e, "获取模板列表失败")


@router.post("", response_model=ReportTemplate, status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateTemplateRequest,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """创建模板"""
    try:
        logger.info(f"收到创建模板请求: name={request.name}, is_system={request.is_system}")
        return store.create_template(request.model_dump(), user)
    except Exception as e:
        raise http_error(e, "创建模板失败")


@router.get("/{template_id}", response_model=ReportTemplate)
async def get_template(
    template_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """获取模板详情"""
    try:
        return store.get_template(template_id, user)
    except Exception as e:
        raise http_error(e, "获取模板失败")


@router.put("/{template_id}", response_model=ReportTemplate)
async def update_template(
    template_id: str,
    request: UpdateTemplateRequest,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """更新模板"""
    try:
        changes: Dict[str, Any] = request.model_dump(exclude_unset=True)
        if not changes:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="没有提供要更新的字段"
            )
        return store.update_template(template_id, changes, user)
    except Exception as e:
        raise http_error(e, "更新模板失败")


@router.delete("/{template_id}")
async def delete_template(
    template_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """删除模板"""
    try:
        store.delete_template(template_id, user)
        return {"success": True, "message": "模板已删除"}
    except Exception as e:
        raise http_error(e, "删除模板失败")


@router.post("/{template_id}/instantiate", response_model=ReportDefinition, status_code=status.HTTP_201_CREATED)
async def instantiate_template(
    template_id: str,
    request: InstantiateTemplateRequest,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """从模板创建新报表"""
    try:
        logger.info(f"收到模板实例化请求: template_id={template_id}")
        return store.instantiate_from_template(template_id, user, name=request.name)
    except Exception as e:
        raise http_error(e, "从模板创建报表失败")


@router.post("/{template_id}/duplicate", response_model=ReportTemplate, status_code=status.HTTP_201_CREATED)
async def duplicate_template(
    template_id: str,
    user: UserContext = Depends(get_current_user),
    store: ReportStore = Depends(get_report_store)
):
    """复制模板（副本归调用方所有）"""
    try:
        logger.info(f"收到复制模板请求: template_id={template_id}")
        return store.duplicate_template(template_id, user)
    except Exception as e:
        raise http_error(e, "复制模板失败")
