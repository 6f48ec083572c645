"""
服务层包
"""
from .errors import (
    ReportEngineError,
    ValidationError,
    InvalidStateError,
    DataSourceError,
    NotFoundError,
    PermissionDeniedError,
)
from .designer import ReportDesigner, EditorState
from .permission_gate import PermissionGate, get_permission_gate
from .report_store import ReportStore, get_report_store
from .execution_engine import ExecutionEngine, get_execution_engine
from .export_service import ExportService, ExportDocument, ExportFile, get_export_service
from .email_service import EmailService, get_email_service
from .scheduler import ReportScheduler, get_scheduler
from .dto import (
    ComponentNode,
    ScheduleConfig,
    PermissionSet,
    UserContext,
    ReportDefinition,
    ReportTemplate,
    DataSet,
    RenderedComponent,
    ExecutionResult,
    Execution,
)

__all__ = [
    "ReportEngineError",
    "ValidationError",
    "InvalidStateError",
    "DataSourceError",
    "NotFoundError",
    "PermissionDeniedError",
    "ReportDesigner",
    "EditorState",
    "PermissionGate",
    "get_permission_gate",
    "ReportStore",
    "get_report_store",
    "ExecutionEngine",
    "get_execution_engine",
    "ExportService",
    "ExportDocument",
    "ExportFile",
    "get_export_service",
    "EmailService",
    "get_email_service",
    "ReportScheduler",
    "get_scheduler",
    "ComponentNode",
    "ScheduleConfig",
    "PermissionSet",
    "UserContext",
    "ReportDefinition",
    "ReportTemplate",
    "DataSet",
    "RenderedComponent",
    "ExecutionResult",
    "Execution",
]
