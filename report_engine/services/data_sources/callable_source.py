"""
基于Python可调用对象的数据源
"""
import inspect
from typing import Any, Callable, Dict, List, Optional

from .base import DataSource
from ..dto import DataSet


class CallableDataSource(DataSource):
    """
    包装同步或异步函数的数据源

    函数签名: fn(reference, parameters) -> 行列表 或 DataSet
    """

    def __init__(self, fn: Callable[..., Any], columns: Optional[List[str]] = None):
        self.fn = fn
        self.columns = columns

    async def fetch(self, reference: Dict[str, Any], parameters: Dict[str, Any]) -> DataSet:
        result = self.fn(reference, parameters)
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, DataSet):
            return result

        rows = [dict(row) for row in (result or [])]
        columns = self.columns or (list(rows[0].keys()) if rows else [])
        return DataSet(rows=rows, columns=columns)

    def describe(self) -> str:
        return f"CallableDataSource({getattr(self.fn, '__name__', repr(self.fn))})"
