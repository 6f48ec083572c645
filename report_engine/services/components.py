"""
组件模型
定义可渲染组件的封闭类型集合、各类型的默认配置和配置校验规则
"""
import copy
import uuid
from typing import Any, Dict, List, Optional

from .dto import ComponentNode, COMPONENT_TYPES, CHART_TYPES
from .errors import ValidationError

# 组件默认显示名称
COMPONENT_NAMES = {
    "text": "文字",
    "table": "表格",
    "chart_bar": "长条图",
    "chart_line": "折线图",
    "chart_pie": "圆饼图",
    "kpi": "KPI 卡片",
    "filter": "筛选器",
}

FILTER_PARAMETER_TYPES = ("string", "number", "date", "boolean")

COPY_SUFFIX = " (copy)"


def generate_component_id() -> str:
    """生成组件ID"""
    return f"component_{uuid.uuid4().hex[:12]}"


def default_config(component_type: str) -> Dict[str, Any]:
    """
    获取组件类型的默认配置

    默认配置只是设计器中的占位，内容不完整的配置在保存时会被校验拒绝

    Args:
        component_type: 组件类型

    Returns:
        默认配置字典

    Raises:
        ValidationError: 如果组件类型未知
    """
    _check_type(component_type)

    if component_type == "text":
        return {"content": "", "description": ""}
    if component_type == "table":
        return {"data_source": None, "columns": [], "description": ""}
    if component_type in CHART_TYPES:
        return {"data_source": None, "label_field": None, "series": [], "description": ""}
    if component_type == "kpi":
        return {"metrics": [], "description": ""}
    return {"parameters": [], "description": ""}


def _check_type(component_type: str):
    if component_type not in COMPONENT_TYPES:
        raise ValidationError(
            f"未知的组件类型: {component_type}。支持的类型: {', '.join(COMPONENT_TYPES)}",
            field="type"
        )


def _require(config: Dict[str, Any], key: str, component_id: str):
    value = config.get(key)
    if value is None or value == "" or value == []:
        raise ValidationError(
            f"组件 {component_id} 缺少必填配置: {key}",
            field=key,
            details={"component_id": component_id}
        )
    return value


def validate_component(node: ComponentNode):
    """
    校验组件配置是否满足其类型的必填字段

    Args:
        node: 组件

    Raises:
        ValidationError: 字段缺失或格式不正确，field 指出出错的字段
    """
    _check_type(node.type)
    config = node.config or {}
    cid = node.id

    if node.type == "text":
        content = config.get("content")
        if not isinstance(content, str) or not content:
            raise ValidationError(f"组件 {cid} 缺少必填配置: content", field="content",
                                  details={"component_id": cid})
        return

    if node.type == "table":
        _require(config, "data_source", cid)
        columns = _require(config, "columns", cid)
        if not isinstance(columns, list):
            raise ValidationError(f"组件 {cid} 的 columns 必须是列表", field="columns")
        return

    if node.type in CHART_TYPES:
        _require(config, "data_source", cid)
        _require(config, "label_field", cid)
        series = _require(config, "series", cid)
        if not isinstance(series, list):
            raise ValidationError(f"组件 {cid} 的 series 必须是列表", field="series")
        return

    if node.type == "kpi":
        metrics = _require(config, "metrics", cid)
        if not isinstance(metrics, list):
            raise ValidationError(f"组件 {cid} 的 metrics 必须是列表", field="metrics")
        for metric in metrics:
            if not isinstance(metric, dict) or not metric.get("label"):
                raise ValidationError(f"组件 {cid} 的指标缺少 label", field="metrics.label")
            if "value" not in metric and not metric.get("field"):
                raise ValidationError(
                    f"组件 {cid} 的指标 {metric['label']} 需要 value 或 field",
                    field="metrics.value"
                )
        if any(m.get("field") for m in metrics):
            _require(config, "data_source", cid)
        return

    # filter
    parameters = _require(config, "parameters", cid)
    if not isinstance(parameters, list):
        raise ValidationError(f"组件 {cid} 的 parameters 必须是列表", field="parameters")
    for param in parameters:
        if not isinstance(param, dict) or not param.get("name"):
            raise ValidationError(f"组件 {cid} 的参数缺少 name", field="parameters.name")
        param_type = param.get("type", "string")
        if param_type not in FILTER_PARAMETER_TYPES:
            raise ValidationError(
                f"组件 {cid} 的参数 {param['name']} 类型不支持: {param_type}",
                field="parameters.type"
            )


def validate_components(nodes: List[ComponentNode]):
    """
    校验整个组件列表：逐个校验配置，并要求组件ID在报表内唯一

    Raises:
        ValidationError: 任意组件不合法
    """
    seen = set()
    for node in nodes:
        if not node.id:
            raise ValidationError("组件缺少 id", field="id")
        if node.id in seen:
            raise ValidationError(f"组件ID重复: {node.id}", field="id",
                                  details={"component_id": node.id})
        seen.add(node.id)
        validate_component(node)


def normalize_order(nodes: List[ComponentNode]) -> List[ComponentNode]:
    """按列表顺序重新编号 order_index 为 0..n-1"""
    for index, node in enumerate(nodes):
        node.order_index = index
    return nodes


def sort_by_order(nodes: List[ComponentNode]) -> List[ComponentNode]:
    """按 order_index 升序返回新列表（稳定排序）"""
    return sorted(nodes, key=lambda n: n.order_index)


def clone_components(nodes: List[ComponentNode], fresh_ids: bool = False) -> List[ComponentNode]:
    """
    深拷贝组件列表

    Args:
        nodes: 源组件列表
        fresh_ids: 是否为每个组件生成新的ID（模板实例化、复制报表时使用）
    """
    cloned = []
    for node in sort_by_order(nodes):
        copied = node.model_copy(deep=True)
        if fresh_ids:
            copied.id = generate_component_id()
        cloned.append(copied)
    return normalize_order(cloned)


def filter_defaults(nodes: List[ComponentNode]) -> Dict[str, Any]:
    """
    收集 filter 组件声明的参数默认值

    按 order_index 升序遍历，同名参数以后出现者为准
    """
    defaults: Dict[str, Any] = {}
    for node in sort_by_order(nodes):
        if node.type != "filter":
            continue
        for param in node.config.get("parameters", []):
            if isinstance(param, dict) and param.get("name"):
                defaults[param["name"]] = param.get("default")
    return defaults


def make_component(
    component_type: str,
    name: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    order_index: int = 0
) -> ComponentNode:
    """创建新组件（使用默认配置，可用 config 覆盖）"""
    base = default_config(component_type)
    if config:
        base.update(copy.deepcopy(config))
    return ComponentNode(
        id=generate_component_id(),
        type=component_type,
        name=name or COMPONENT_NAMES.get(component_type, "新组件"),
        order_index=order_index,
        config=base,
    )


def data_source_of(node: ComponentNode) -> Optional[Any]:
    """获取组件绑定的数据源引用（没有则返回None）"""
    return (node.config or {}).get("data_source")
