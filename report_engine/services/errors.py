"""
报表引擎异常定义
"""
from typing import Any, Dict, Optional


class ReportEngineError(Exception):
    """报表引擎异常基类"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ReportEngineError):
    """输入校验失败（组件配置缺失字段、导出格式非法等），在任何状态变更之前抛出"""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.field = field


class InvalidStateError(ReportEngineError):
    """当前状态不允许该操作（编辑已归档报表、导出未完成的执行等）"""


class DataSourceError(ReportEngineError):
    """数据源查询失败"""


class NotFoundError(ReportEngineError):
    """记录不存在"""


class PermissionDeniedError(ReportEngineError, PermissionError):
    """权限校验失败"""

    def __init__(self, action: str, resource_id: Optional[str] = None, user_id: Optional[str] = None):
        super().__init__(
            f"无权执行操作: action={action}, resource={resource_id}, user={user_id}",
            {"action": action, "resource_id": resource_id, "user_id": user_id},
        )
        self.action = action
