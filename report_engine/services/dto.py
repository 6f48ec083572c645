"""
数据传输对象 (Data Transfer Objects)
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


# 组件类型
COMPONENT_TYPES = ("text", "table", "chart_bar", "chart_line", "chart_pie", "kpi", "filter")
CHART_TYPES = ("chart_bar", "chart_line", "chart_pie")

# 报表属性取值
REPORT_CATEGORIES = ("sales", "finance", "production", "inventory", "supplier", "customer", "system")
REPORT_TYPES = ("summary", "detail", "trend", "comparison", "dashboard")
REPORT_STATUSES = ("active", "inactive", "archived")

# 执行状态
EXECUTION_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
TRIGGER_TYPES = ("manual", "scheduled", "api")

SCHEDULE_FREQUENCIES = ("hourly", "daily", "weekly", "monthly")
EXPORT_FORMATS = ("pdf", "excel", "csv", "json")


class ComponentNode(BaseModel):
    """报表中的单个可视化组件"""
    id: str
    type: str
    name: str = ""
    order_index: int = 0
    config: Dict[str, Any] = Field(default_factory=dict)


class ScheduleConfig(BaseModel):
    """定时执行配置"""
    enabled: bool = False
    frequency: str = "daily"
    time: str = "08:00"  # HH:MM
    recipients: List[str] = Field(default_factory=list)


class PermissionSet(BaseModel):
    """报表权限"""
    is_public: bool = False
    view_users: List[str] = Field(default_factory=list)
    edit_users: List[str] = Field(default_factory=list)


class UserContext(BaseModel):
    """调用方身份（由网关解析后传入）"""
    user_id: str
    role: str = "user"
    tenant_id: int = 0
    username: Optional[str] = None


class ReportDefinition(BaseModel):
    """报表定义"""
    id: Optional[str] = None
    tenant_id: int = 0
    report_no: Optional[str] = None
    name: str
    name_en: Optional[str] = None
    description: Optional[str] = None
    category: str = "sales"
    type: str = "summary"
    status: str = "active"
    components: List[ComponentNode] = Field(default_factory=list)
    schedule_config: ScheduleConfig = Field(default_factory=ScheduleConfig)
    permissions: PermissionSet = Field(default_factory=PermissionSet)
    tags: List[str] = Field(default_factory=list)
    template_id: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    execute_count: int = 0
    avg_exec_time: float = 0.0  # 毫秒
    view_count: int = 0
    last_viewed: Optional[datetime] = None
    last_executed: Optional[datetime] = None
    version: int = 1


class ReportTemplate(BaseModel):
    """报表模板"""
    id: Optional[str] = None
    tenant_id: Optional[int] = None  # 系统模板为None
    name: str
    name_en: Optional[str] = None
    description: Optional[str] = None
    category: str = "sales"
    type: str = "summary"
    tags: List[str] = Field(default_factory=list)
    is_public: bool = False
    is_system: bool = False
    usage_count: int = 0
    components: List[ComponentNode] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DataSet(BaseModel):
    """数据源返回的数据集"""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


class RenderedComponent(BaseModel):
    """渲染后的组件输出"""
    component_id: str
    type: str
    name: str
    order_index: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    row_count: int = 0


class ExecutionResult(BaseModel):
    """执行结果快照"""
    components: List[RenderedComponent] = Field(default_factory=list)
    total_pages: int = 1


class Execution(BaseModel):
    """报表执行记录"""
    id: str
    tenant_id: int = 0
    execution_no: str
    report_id: str
    status: str = "pending"
    trigger_type: str = "manual"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    executed_by: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    execution_time_ms: Optional[float] = None
    result: Optional[ExecutionResult] = None
    result_count: int = 0
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ImportResult(BaseModel):
    """批量导入结果"""
    success: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    imported_reports: List[str] = Field(default_factory=list)


class ReportStatistics(BaseModel):
    """报表统计信息"""
    total_reports: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    total_templates: int = 0
    total_executions: int = 0
    scheduled_reports: int = 0
    popular_reports: List[Dict[str, Any]] = Field(default_factory=list)
    recent_executions: List[Dict[str, Any]] = Field(default_factory=list)
