"""
SQL数据源
通过SQLAlchemy执行参数化查询
"""
import asyncio
import re
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from .base import DataSource
from ..dto import DataSet
from ..errors import DataSourceError
from ...utils.logger import get_logger, log_sql_error

logger = get_logger(__name__)

_BIND_PATTERN = re.compile(r"(?<!:):([A-Za-z_][A-Za-z0-9_]*)")


class SQLDataSource(DataSource):
    """
    SQL数据源

    组件配置示例:
        {"source": "erp", "query": "SELECT region, amount FROM sales WHERE quarter = :quarter"}

    只绑定语句中实际引用的参数
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None, default_query: Optional[str] = None):
        """
        初始化SQL数据源

        Args:
            url: 数据库连接URL（与 engine 二选一）
            engine: 已创建的SQLAlchemy Engine
            default_query: 组件未指定 query 时使用的查询
        """
        if engine is None and url is None:
            raise ValueError("SQLDataSource 需要 url 或 engine")

        if engine is None:
            pool_config = {"poolclass": QueuePool, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}
            if url.startswith("sqlite"):
                pool_config = {"connect_args": {"check_same_thread": False}}
            engine = create_engine(url, **pool_config)

        self.engine = engine
        self.default_query = default_query

    def _bind_parameters(self, sql: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        names = set(_BIND_PATTERN.findall(sql))
        missing = [name for name in names if name not in parameters]
        if missing:
            raise DataSourceError(
                f"查询缺少参数: {', '.join(sorted(missing))}",
                {"missing_parameters": sorted(missing)}
            )
        return {name: parameters[name] for name in names}

    def _execute(self, sql: str, bound: Dict[str, Any]) -> DataSet:
        with self.engine.connect() as connection:
            result = connection.execute(text(sql), bound)
            columns = list(result.keys())
            rows = [dict(zip(columns, row)) for row in result.fetchall()]
        return DataSet(rows=rows, columns=columns)

    async def fetch(self, reference: Dict[str, Any], parameters: Dict[str, Any]) -> DataSet:
        sql = reference.get("query") or self.default_query
        if not sql:
            raise DataSourceError(f"数据源 {reference.get('source')} 未指定查询语句")

        bound = self._bind_parameters(sql, parameters)
        logger.debug(
            f"准备执行SQL查询:\n"
            f"  数据源: {reference.get('source')}\n"
            f"  SQL: {sql[:200]}{'...' if len(sql) > 200 else ''}\n"
            f"  参数: {bound}"
        )

        # 同步驱动放到线程池中执行，避免阻塞事件循环
        try:
            data = await asyncio.to_thread(self._execute, sql, bound)
        except Exception as e:
            log_sql_error(logger, sql, reference.get("source"), e, bound)
            raise

        logger.info(f"SQL查询成功: source={reference.get('source')}, rows={data.row_count}, columns={len(data.columns)}")
        return data

    def describe(self) -> str:
        url = str(self.engine.url)
        if "@" in url:
            # 隐藏密码
            head, tail = url.split("@", 1)
            if ":" in head:
                user = head.rsplit(":", 1)[0]
                url = f"{user}:****@{tail}"
        return f"SQLDataSource({url})"
