"""
报表定义、报表模板和执行记录模型
"""
from sqlalchemy import Column, String, Text, Boolean, Integer, Float, DateTime, ForeignKey, UniqueConstraint
from datetime import datetime
from .base import Base, TimestampMixin


class Report(Base, TimestampMixin):
    """报表定义表"""
    __tablename__ = "reports"
    __table_args__ = (
        UniqueConstraint("tenant_id", "report_no", name="uq_reports_tenant_report_no"),
    )

    id = Column(String(36), primary_key=True)
    tenant_id = Column(Integer, nullable=False, default=0, index=True)
    report_no = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    name_en = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False)  # sales, finance, production, inventory, supplier, customer, system
    type = Column(String(50), nullable=False)  # summary, detail, trend, comparison, dashboard
    status = Column(String(20), nullable=False, default="active")  # active, inactive, archived
    components = Column(Text, nullable=False, default="[]")  # JSON: 组件列表
    schedule_config = Column(Text, nullable=False, default="{}")  # JSON
    permissions = Column(Text, nullable=False, default="{}")  # JSON
    tags = Column(Text, nullable=False, default="[]")  # JSON array
    template_id = Column(String(36), nullable=True)  # 来源模板（创建后不强制关联）
    created_by = Column(String(64), nullable=False)
    updated_by = Column(String(64), nullable=True)

    # 使用统计
    execute_count = Column(Integer, nullable=False, default=0)
    avg_exec_time = Column(Float, nullable=False, default=0.0)  # 毫秒
    last_executed = Column(DateTime, nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    last_viewed = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    def __repr__(self):
        return f"<Report(id={self.id}, report_no={self.report_no}, name={self.name}, status={self.status})>"


class ReportTemplate(Base, TimestampMixin):
    """报表模板表"""
    __tablename__ = "report_templates"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(Integer, nullable=True, index=True)  # 系统模板为NULL
    name = Column(String(255), nullable=False)
    name_en = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False)
    type = Column(String(50), nullable=False)
    tags = Column(Text, nullable=False, default="[]")  # JSON array
    is_public = Column(Boolean, nullable=False, default=False)
    is_system = Column(Boolean, nullable=False, default=False)
    usage_count = Column(Integer, nullable=False, default=0)
    components = Column(Text, nullable=False, default="[]")  # JSON: 组件快照
    created_by = Column(String(64), nullable=True)  # 系统模板为NULL

    def __repr__(self):
        return f"<ReportTemplate(id={self.id}, name={self.name}, is_system={self.is_system})>"


class ReportExecution(Base):
    """报表执行记录表"""
    __tablename__ = "report_executions"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(Integer, nullable=False, default=0, index=True)
    execution_no = Column(String(64), nullable=False, unique=True)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")  # pending, running, completed, failed, cancelled
    trigger_type = Column(String(20), nullable=False, default="manual")  # manual, scheduled, api
    parameters = Column(Text, nullable=False, default="{}")  # JSON
    executed_by = Column(String(64), nullable=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    execution_time_ms = Column(Float, nullable=True)
    result = Column(Text, nullable=True)  # JSON: 渲染结果快照
    result_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    error_details = Column(Text, nullable=True)  # JSON
    cancel_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ReportExecution(id={self.id}, report_id={self.report_id}, status={self.status})>"
