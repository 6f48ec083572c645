"""
数据源模块
报表组件通过名称引用数据源，引擎只关心"给定参数返回数据行"
"""
from .base import DataSource
from .callable_source import CallableDataSource
from .sql_source import SQLDataSource
from .registry import DataSourceRegistry, get_data_source_registry, register_sql_sources_from_env

__all__ = [
    'DataSource',
    'CallableDataSource',
    'SQLDataSource',
    'DataSourceRegistry',
    'get_data_source_registry',
    'register_sql_sources_from_env',
]
