"""
组件模型和渲染器测试
"""
import pytest

from report_engine.services.components import (
    clone_components,
    default_config,
    filter_defaults,
    make_component,
    validate_component,
    validate_components,
)
from report_engine.services.dto import ComponentNode, DataSet
from report_engine.services.errors import ValidationError
from report_engine.services.renderers import percent_change, render_component, substitute


def node(type, config, id="c1", order_index=0):
    return ComponentNode(id=id, type=type, name=type, order_index=order_index, config=config)


def test_default_config_unknown_type():
    """未知组件类型"""
    with pytest.raises(ValidationError) as exc_info:
        default_config("gauge")
    assert exc_info.value.field == "type"


def test_default_config_is_incomplete_placeholder():
    """默认配置只是占位，校验不通过"""
    component = make_component("table")
    assert component.id.startswith("component_")
    assert component.name == "表格"
    with pytest.raises(ValidationError) as exc_info:
        validate_component(component)
    assert exc_info.value.field == "data_source"


@pytest.mark.parametrize("type, config, field", [
    ("text", {"content": ""}, "content"),
    ("table", {"data_source": "sales"}, "columns"),
    ("chart_line", {"data_source": "sales", "label_field": "month", "series": []}, "series"),
    ("chart_pie", {"data_source": "sales", "series": ["amount"]}, "label_field"),
    ("kpi", {"metrics": [{"label": "总额"}]}, "metrics.value"),
    ("kpi", {"metrics": [{"label": "总额", "field": "total"}]}, "data_source"),
    ("filter", {"parameters": [{"name": "quarter", "type": "enum"}]}, "parameters.type"),
])
def test_validate_component_reports_missing_field(type, config, field):
    with pytest.raises(ValidationError) as exc_info:
        validate_component(node(type, config))
    assert exc_info.value.field == field


def test_validate_components_rejects_duplicate_ids():
    nodes = [
        node("text", {"content": "a"}, id="same"),
        node("text", {"content": "b"}, id="same", order_index=1),
    ]
    with pytest.raises(ValidationError):
        validate_components(nodes)


def test_kpi_with_static_values_needs_no_data_source():
    validate_component(node("kpi", {"metrics": [{"label": "目标", "value": 100}]}))


def test_filter_defaults_later_filter_wins():
    """按 order_index 遍历，同名参数以后者为准"""
    nodes = [
        node("filter", {"parameters": [{"name": "quarter", "type": "string", "default": "Q4"}]},
             id="f2", order_index=1),
        node("filter", {"parameters": [
            {"name": "quarter", "type": "string", "default": "Q1"},
            {"name": "year", "type": "number", "default": 2024},
        ]}, id="f1", order_index=0),
        node("text", {"content": "x"}, id="t", order_index=2),
    ]
    assert filter_defaults(nodes) == {"quarter": "Q4", "year": 2024}


def test_clone_components_fresh_ids_and_normalized_order():
    nodes = [
        node("text", {"content": "b"}, id="b", order_index=5),
        node("text", {"content": "a"}, id="a", order_index=2),
    ]
    cloned = clone_components(nodes, fresh_ids=True)

    assert [c.config["content"] for c in cloned] == ["a", "b"]
    assert [c.order_index for c in cloned] == [0, 1]
    assert {c.id for c in cloned}.isdisjoint({"a", "b"})
    # 源列表不受影响
    assert nodes[0].order_index == 5


def test_substitute_keeps_unknown_placeholders():
    assert substitute("{quarter} / {unknown}", {"quarter": "Q1"}) == "Q1 / {unknown}"


def test_percent_change():
    assert percent_change(1200, 1000) == 20.0
    assert percent_change(100, 0) is None
    assert percent_change(100, None) is None


def test_render_table_projects_configured_columns():
    table = node("table", {"data_source": "sales", "columns": ["region", {"field": "amount", "label": "金额"}]})
    data = DataSet(rows=[{"region": "华东", "amount": 10, "extra": "x"}], columns=["region", "amount", "extra"])

    rendered = render_component(table, data, {})

    assert rendered.payload == {
        "columns": [{"field": "region", "label": "region"}, {"field": "amount", "label": "金额"}],
        "rows": [["华东", 10]],
    }
    assert rendered.row_count == 1


def test_render_chart_with_empty_data_renders_empty_state():
    chart = node("chart_bar", {"data_source": "sales", "label_field": "region", "series": ["amount"]})

    rendered = render_component(chart, DataSet(), {})

    assert rendered.payload == {
        "chart_type": "bar",
        "labels": [],
        "datasets": [{"label": "amount", "field": "amount", "data": []}],
    }


def test_render_kpi_computes_change():
    kpi = node("kpi", {"data_source": "totals", "metrics": [
        {"label": "总额", "field": "total", "previous_field": "previous_total"},
        {"label": "目标", "value": 5000, "change": 3.5},
    ]})
    data = DataSet(rows=[{"total": 1200, "previous_total": 1000}])

    cards = render_component(kpi, data, {}).payload["cards"]

    assert cards[0]["value"] == 1200
    assert cards[0]["change"] == 20.0
    assert cards[1] == {"label": "目标", "value": 5000, "change": 3.5, "unit": None}


def test_render_text_and_filter_use_parameters():
    text = node("text", {"content": "{quarter} 季度销售"})
    flt = node("filter", {"parameters": [{"name": "quarter", "type": "string", "default": "Q4"}]})

    assert render_component(text, None, {"quarter": "Q1"}).payload == {"content": "Q1 季度销售"}
    assert render_component(flt, None, {"quarter": "Q1"}).payload == {
        "parameters": [{"name": "quarter", "type": "string", "value": "Q1"}]
    }
