"""
数据源基类
报表引擎把业务数据存储视为黑盒：给定组件的数据源引用和参数，返回数据行
"""
from abc import ABC, abstractmethod
from typing import Dict, Any

from ..dto import DataSet


class DataSource(ABC):
    """数据源基类"""

    @abstractmethod
    async def fetch(self, reference: Dict[str, Any], parameters: Dict[str, Any]) -> DataSet:
        """
        查询数据

        Args:
            reference: 组件配置中的数据源引用（已规范化为字典，包含 source 键）
            parameters: 合并后的执行参数

        Returns:
            DataSet对象
        """
        pass

    def describe(self) -> str:
        """数据源描述（用于日志）"""
        return self.__class__.__name__
