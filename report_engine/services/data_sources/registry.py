"""
数据源注册表
负责按名称管理数据源实例，并把组件的数据源引用分派到对应数据源
"""
import os
from typing import Any, Dict, List, Optional

from .base import DataSource
from ..dto import DataSet
from ..errors import DataSourceError
from ...utils.logger import get_logger

logger = get_logger(__name__)


class DataSourceRegistry:
    """数据源注册表"""

    def __init__(self):
        self._sources: Dict[str, DataSource] = {}

    def register(self, name: str, source: DataSource):
        """
        注册数据源（同名覆盖）

        Args:
            name: 数据源名称，组件配置通过该名称引用
            source: 数据源实例
        """
        self._sources[name] = source
        logger.info(f"注册数据源: name={name}, source={source.describe()}")

    def unregister(self, name: str):
        self._sources.pop(name, None)

    def get(self, name: str) -> DataSource:
        """
        根据名称获取数据源

        Raises:
            DataSourceError: 如果数据源未注册
        """
        source = self._sources.get(name)
        if source is None:
            raise DataSourceError(
                f"未注册的数据源: {name}。已注册: {', '.join(self._sources.keys()) or '无'}",
                {"data_source": name}
            )
        return source

    def names(self) -> List[str]:
        return list(self._sources.keys())

    def is_registered(self, name: str) -> bool:
        return name in self._sources

    @staticmethod
    def normalize_reference(reference: Any) -> Dict[str, Any]:
        """
        规范化数据源引用

        支持两种写法: "sales" 或 {"source": "sales", ...}
        """
        if isinstance(reference, str) and reference:
            return {"source": reference}
        if isinstance(reference, dict) and reference.get("source"):
            return dict(reference)
        raise DataSourceError(f"无效的数据源引用: {reference!r}", {"data_source": reference})

    async def fetch(self, reference: Any, parameters: Dict[str, Any]) -> DataSet:
        """
        从组件引用的数据源获取数据

        数据源抛出的任何异常都会被包装为 DataSourceError

        Args:
            reference: 数据源引用
            parameters: 合并后的执行参数

        Returns:
            DataSet对象
        """
        ref = self.normalize_reference(reference)
        source = self.get(ref["source"])

        try:
            return await source.fetch(ref, parameters)
        except DataSourceError:
            raise
        except Exception as e:
            raise DataSourceError(
                f"数据源 {ref['source']} 查询失败: {str(e)}",
                {"data_source": ref["source"], "error_type": type(e).__name__}
            ) from e


ENV_PREFIX = "REPORT_DATASOURCE_"


def register_sql_sources_from_env(registry: DataSourceRegistry, environ: Optional[Dict[str, str]] = None) -> List[str]:
    """
    从环境变量注册SQL数据源

    REPORT_DATASOURCE_<NAME>=<SQLAlchemy URL> 注册名为 <name>（小写）的 SQLDataSource

    Returns:
        注册的数据源名称列表
    """
    from .sql_source import SQLDataSource

    environ = os.environ if environ is None else environ
    registered = []
    for key, url in sorted(environ.items()):
        if not key.startswith(ENV_PREFIX) or not url:
            continue
        name = key[len(ENV_PREFIX):].lower()
        registry.register(name, SQLDataSource(url=url))
        registered.append(name)
    return registered


# 全局数据源注册表
_registry = None


def get_data_source_registry() -> DataSourceRegistry:
    """获取全局数据源注册表"""
    global _registry
    if _registry is None:
        _registry = DataSourceRegistry()
    return _registry
