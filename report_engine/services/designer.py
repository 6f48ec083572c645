"""
报表设计器
在内存中维护组件列表的工作副本（新增、删除、复制、排序），只有显式保存时才写入报表存储
"""
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .components import (
    COPY_SUFFIX,
    clone_components,
    generate_component_id,
    make_component,
    normalize_order,
    validate_component,
    validate_components,
)
from .dto import ComponentNode, ReportDefinition, UserContext
from .errors import ValidationError
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from .report_store import ReportStore

logger = get_logger(__name__)


class EditorState:
    """设计器编辑状态（当前选中的组件）"""

    def __init__(self, selected_component_id: Optional[str] = None):
        self.selected_component_id = selected_component_id

    def select(self, component_id: Optional[str]):
        self.selected_component_id = component_id

    def clear(self):
        self.selected_component_id = None


class ReportDesigner:
    """报表设计器，单用户、单线程使用"""

    def __init__(
        self,
        components: Optional[List[ComponentNode]] = None,
        state: Optional[EditorState] = None,
        report_id: Optional[str] = None,
        version: Optional[int] = None
    ):
        """
        初始化设计器

        Args:
            components: 初始组件列表（会被深拷贝，调用方的列表不受影响）
            state: 编辑状态，不传则新建
            report_id: 正在编辑的报表ID，新建报表时为None
            version: 载入时报表的版本号（用于保存时的乐观并发检查）
        """
        self._nodes: List[ComponentNode] = clone_components(components or [])
        self.state = state or EditorState()
        self.report_id = report_id
        self.version = version

    @classmethod
    def load(cls, definition: ReportDefinition, state: Optional[EditorState] = None) -> "ReportDesigner":
        """从已保存的报表定义创建设计器"""
        return cls(
            components=definition.components,
            state=state,
            report_id=definition.id,
            version=definition.version,
        )

    # ============ 查询 ============

    def components(self) -> List[ComponentNode]:
        """返回当前组件列表的快照（深拷贝）"""
        return [node.model_copy(deep=True) for node in self._nodes]

    def __len__(self) -> int:
        return len(self._nodes)

    def index_of(self, component_id: str) -> int:
        for index, node in enumerate(self._nodes):
            if node.id == component_id:
                return index
        raise ValidationError(f"组件不存在: {component_id}", field="id")

    def get(self, component_id: str) -> ComponentNode:
        return self._nodes[self.index_of(component_id)].model_copy(deep=True)

    @property
    def selected(self) -> Optional[ComponentNode]:
        if self.state.selected_component_id is None:
            return None
        return self.get(self.state.selected_component_id)

    # ============ 编辑操作 ============

    def add_component(
        self,
        component_type: str,
        name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None
    ) -> ComponentNode:
        """
        在末尾追加新组件

        Args:
            component_type: 组件类型
            name: 显示名称，默认使用类型名称
            config: 覆盖默认配置的字段

        Returns:
            新组件（副本）
        """
        node = make_component(component_type, name=name, config=config, order_index=len(self._nodes))
        self._nodes.append(node)
        logger.debug(f"新增组件: id={node.id}, type={component_type}, order_index={node.order_index}")
        return node.model_copy(deep=True)

    def remove_component(self, component_id: str) -> ComponentNode:
        """删除组件，并重新编号后续组件"""
        index = self.index_of(component_id)
        removed = self._nodes.pop(index)
        normalize_order(self._nodes)

        if self.state.selected_component_id == component_id:
            self.state.clear()

        logger.debug(f"删除组件: id={component_id}, 剩余={len(self._nodes)}")
        return removed

    def duplicate_component(self, component_id: str) -> ComponentNode:
        """在源组件之后插入深拷贝，新ID，名称加 (copy) 后缀"""
        index = self.index_of(component_id)
        source = self._nodes[index]

        duplicate = source.model_copy(deep=True)
        duplicate.id = generate_component_id()
        duplicate.name = f"{source.name}{COPY_SUFFIX}"

        self._nodes.insert(index + 1, duplicate)
        normalize_order(self._nodes)

        logger.debug(f"复制组件: source={component_id}, new={duplicate.id}")
        return duplicate.model_copy(deep=True)

    def reorder(self, component_id: str, new_index: int):
        """
        把组件移动到 new_index，中间的组件各移动一位（数组移动语义）

        移动到当前位置时不做任何改变

        Raises:
            ValidationError: 组件不存在或 new_index 越界
        """
        if not isinstance(new_index, int) or new_index < 0 or new_index >= len(self._nodes):
            raise ValidationError(
                f"目标位置越界: {new_index}，有效范围 0..{len(self._nodes) - 1}",
                field="new_index"
            )

        old_index = self.index_of(component_id)
        if old_index == new_index:
            return

        node = self._nodes.pop(old_index)
        self._nodes.insert(new_index, node)
        normalize_order(self._nodes)
        logger.debug(f"移动组件: id={component_id}, {old_index} -> {new_index}")

    def move_up(self, component_id: str):
        index = self.index_of(component_id)
        if index > 0:
            self.reorder(component_id, index - 1)

    def move_down(self, component_id: str):
        index = self.index_of(component_id)
        if index < len(self._nodes) - 1:
            self.reorder(component_id, index + 1)

    def update_component(
        self,
        component_id: str,
        name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None
    ) -> ComponentNode:
        """
        更新组件名称或配置

        新配置会先校验，校验失败时工作副本保持不变
        """
        index = self.index_of(component_id)
        candidate = self._nodes[index].model_copy(deep=True)

        if name is not None:
            candidate.name = name
        if config is not None:
            candidate.config.update(config)
            validate_component(candidate)

        self._nodes[index] = candidate
        return candidate.model_copy(deep=True)

    def select(self, component_id: Optional[str]):
        if component_id is not None:
            self.index_of(component_id)
        self.state.select(component_id)

    # ============ 保存 ============

    def validate(self):
        validate_components(self._nodes)

    def commit(
        self,
        store: "ReportStore",
        user: UserContext,
        definition: Optional[ReportDefinition] = None
    ) -> ReportDefinition:
        """
        校验并保存工作副本

        新报表需要传入 definition（名称、分类等元数据）；已有报表只替换组件列表

        Args:
            store: 报表存储
            user: 调用方身份
            definition: 新报表的元数据

        Returns:
            保存后的报表定义
        """
        self.validate()

        if self.report_id is None:
            if definition is None:
                raise ValidationError("新报表保存时必须提供报表定义", field="definition")
            payload = definition.model_copy(deep=True)
            payload.components = self.components()
            saved = store.create(payload, user)
        else:
            saved = store.update(
                self.report_id,
                {"components": self.components()},
                user,
                expected_version=self.version
            )

        self.report_id = saved.id
        self.version = saved.version
        logger.info(f"设计器保存报表: id={saved.id}, components={len(saved.components)}, version={saved.version}")
        return saved
