"""
数据库模型包
"""
from .base import Base
from .report import Report, ReportTemplate, ReportExecution

__all__ = [
    "Base",
    "Report",
    "ReportTemplate",
    "ReportExecution",
]
