"""
组件渲染器
每种组件类型对应一个渲染函数: (组件, 数据集, 参数) -> 渲染输出
渲染输出是自包含的结构（类型标签 + payload），可直接序列化为JSON
"""
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .dto import ComponentNode, DataSet, RenderedComponent, CHART_TYPES
from .errors import ValidationError

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def to_plain(value: Any) -> Any:
    """把数据源返回的值转换为可JSON序列化的基础类型"""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    return str(value)


def substitute(content: str, parameters: Dict[str, Any]) -> str:
    """替换文本中的 {参数名} 占位符，未知参数原样保留"""
    def _replace(match):
        name = match.group(1)
        if name in parameters and parameters[name] is not None:
            return str(parameters[name])
        return match.group(0)
    return _PLACEHOLDER.sub(_replace, content)


def _normalize_fields(items: List[Any]) -> List[Dict[str, str]]:
    fields = []
    for item in items:
        if isinstance(item, str):
            fields.append({"field": item, "label": item})
        elif isinstance(item, dict) and item.get("field"):
            fields.append({"field": item["field"], "label": item.get("label") or item["field"]})
    return fields


def render_text(node: ComponentNode, data: Optional[DataSet], parameters: Dict[str, Any]) -> Dict[str, Any]:
    return {"content": substitute(node.config.get("content", ""), parameters)}


def render_table(node: ComponentNode, data: Optional[DataSet], parameters: Dict[str, Any]) -> Dict[str, Any]:
    columns = _normalize_fields(node.config.get("columns", []))
    rows = []
    for row in (data.rows if data else []):
        rows.append([to_plain(row.get(col["field"])) for col in columns])
    return {"columns": columns, "rows": rows}


def render_chart(node: ComponentNode, data: Optional[DataSet], parameters: Dict[str, Any]) -> Dict[str, Any]:
    label_field = node.config.get("label_field")
    series = _normalize_fields(node.config.get("series", []))
    rows = data.rows if data else []

    labels = [to_plain(row.get(label_field)) for row in rows]
    datasets = [
        {
            "label": s["label"],
            "field": s["field"],
            "data": [to_plain(row.get(s["field"])) for row in rows],
        }
        for s in series
    ]
    return {"chart_type": node.type.replace("chart_", ""), "labels": labels, "datasets": datasets}


def percent_change(value: Any, previous: Any) -> Optional[float]:
    """环比变化百分比，上期为0或缺失时返回None"""
    try:
        current = float(value)
        prior = float(previous)
    except (TypeError, ValueError):
        return None
    if prior == 0:
        return None
    return round((current - prior) / prior * 100, 2)


def render_kpi(node: ComponentNode, data: Optional[DataSet], parameters: Dict[str, Any]) -> Dict[str, Any]:
    first_row = data.rows[0] if data and data.rows else {}
    cards = []
    for metric in node.config.get("metrics", []):
        if metric.get("field"):
            value = first_row.get(metric["field"])
        else:
            value = metric.get("value")

        change = metric.get("change")
        if change is None and metric.get("previous_field"):
            change = percent_change(value, first_row.get(metric["previous_field"]))

        cards.append({
            "label": metric["label"],
            "value": to_plain(value),
            "change": to_plain(change),
            "unit": metric.get("unit"),
        })
    return {"cards": cards}


def render_filter(node: ComponentNode, data: Optional[DataSet], parameters: Dict[str, Any]) -> Dict[str, Any]:
    bound = []
    for param in node.config.get("parameters", []):
        name = param["name"]
        bound.append({
            "name": name,
            "type": param.get("type", "string"),
            "value": to_plain(parameters.get(name, param.get("default"))),
        })
    return {"parameters": bound}


RENDERERS: Dict[str, Callable[[ComponentNode, Optional[DataSet], Dict[str, Any]], Dict[str, Any]]] = {
    "text": render_text,
    "table": render_table,
    "kpi": render_kpi,
    "filter": render_filter,
}
for _chart_type in CHART_TYPES:
    RENDERERS[_chart_type] = render_chart


def render_component(node: ComponentNode, data: Optional[DataSet], parameters: Dict[str, Any]) -> RenderedComponent:
    """
    渲染单个组件

    Args:
        node: 组件
        data: 数据源返回的数据集（text/filter 等无数据源组件为None）
        parameters: 合并后的执行参数

    Returns:
        RenderedComponent对象
    """
    renderer = RENDERERS.get(node.type)
    if renderer is None:
        raise ValidationError(f"未知的组件类型: {node.type}", field="type")

    return RenderedComponent(
        component_id=node.id,
        type=node.type,
        name=node.name,
        order_index=node.order_index,
        payload=renderer(node, data, parameters),
        row_count=data.row_count if data else 0,
    )
