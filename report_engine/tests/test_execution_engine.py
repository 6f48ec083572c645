"""
报表执行引擎测试
"""
import asyncio

import pytest

from report_engine.services.data_sources import CallableDataSource
from report_engine.services.dto import ComponentNode, ReportDefinition
from report_engine.services.errors import DataSourceError, InvalidStateError, PermissionDeniedError, ValidationError
from report_engine.services.execution_engine import compute_total_pages, merge_parameters


def test_compute_total_pages():
    assert compute_total_pages(0, 50) == 1
    assert compute_total_pages(50, 50) == 1
    assert compute_total_pages(51, 50) == 2


def test_merge_parameters_overrides_win():
    assert merge_parameters({"quarter": "Q4", "year": 2024}, {"quarter": "Q1"}) == {"quarter": "Q1", "year": 2024}
    assert merge_parameters({"quarter": "Q4"}, None) == {"quarter": "Q4"}


@pytest.mark.asyncio
async def test_trigger_returns_pending_execution(engine, report, owner):
    execution = await engine.trigger(report.id, {"quarter": "Q1"}, owner)

    assert execution.status == "pending"
    assert execution.execution_no.startswith("EXE")
    assert execution.executed_by == owner.user_id
    assert execution.result is None

    await engine.wait_for(execution.id)


@pytest.mark.asyncio
async def test_execute_three_components_in_order(engine, store, report, owner):
    """table / chart / kpi 三个组件按顺序渲染，执行成功"""
    execution = await engine.trigger(report.id, {"quarter": "Q1"}, owner)
    done = await engine.wait_for(execution.id)

    assert done.status == "completed"
    assert done.parameters == {"quarter": "Q1"}
    assert [c.component_id for c in done.result.components] == [
        "component_table", "component_chart", "component_kpi"
    ]
    assert done.result_count == 3
    assert done.result.total_pages == 2
    assert done.started_at is not None
    assert done.finished_at >= done.started_at
    assert done.execution_time_ms >= 0
    assert done.error_message is None

    table, chart, kpi = done.result.components
    assert table.payload["rows"] == [["华东", 1200], ["华南", 800], ["华北", 650]]
    assert chart.payload["labels"] == ["华东", "华南", "华北"]
    assert kpi.payload["cards"][0]["value"] == 2650
    assert kpi.payload["cards"][0]["unit"] == "元"

    refreshed = store.get(report.id)
    assert refreshed.execute_count == 1
    assert refreshed.last_executed is not None
    assert refreshed.avg_exec_time == pytest.approx(done.execution_time_ms)


@pytest.mark.asyncio
async def test_component_failure_fails_whole_execution(engine, store, registry, report, owner):
    """第二个组件的数据源出错：执行失败且不保留部分结果"""
    def broken(reference, parameters):
        raise RuntimeError("connection reset")

    registry.register("broken", CallableDataSource(broken))
    components = [c.model_dump() for c in report.components]
    components[1]["config"]["data_source"] = "broken"
    store.update(report.id, {"components": components}, owner)

    execution = await engine.trigger(report.id, {"quarter": "Q1"}, owner)
    done = await engine.wait_for(execution.id)

    assert done.status == "failed"
    assert done.result is None
    assert done.result_count == 0
    assert "connection reset" in done.error_message
    assert done.error_details["component_id"] == "component_chart"
    assert done.error_details["data_source"] == "broken"
    assert done.error_details["order_index"] == 1
    assert store.get(report.id).execute_count == 0


@pytest.mark.asyncio
async def test_unregistered_data_source_fails(engine, store, report, owner):
    components = [c.model_dump() for c in report.components]
    components[2]["config"]["data_source"] = "missing"
    store.update(report.id, {"components": components}, owner)

    done = await engine.wait_for((await engine.trigger(report.id, user=owner)).id)

    assert done.status == "failed"
    assert done.error_details["component_id"] == "component_kpi"
    assert done.error_details["error_type"] == "DataSourceError"


@pytest.mark.asyncio
async def test_cancel_between_components(engine, store, registry, report, owner):
    """第一个组件取数时请求取消，后续组件不再执行"""
    holder = {}
    calls = []

    def cancelling(reference, parameters):
        calls.append("sales")
        engine.cancel(holder["id"], owner)
        return [{"region": "华东", "amount": 1200}]

    def totals(reference, parameters):
        calls.append("totals")
        return [{"total": 1}]

    registry.register("sales", CallableDataSource(cancelling))
    registry.register("totals", CallableDataSource(totals))

    execution = await engine.trigger(report.id, {"quarter": "Q1"}, owner)
    holder["id"] = execution.id
    done = await engine.wait_for(execution.id)

    assert done.status == "cancelled"
    assert done.result is None
    assert done.cancel_requested is True
    assert done.finished_at is not None
    assert calls == ["sales"]
    assert store.get(report.id).execute_count == 0


@pytest.mark.asyncio
async def test_cancel_pending_execution(engine, report, owner):
    execution = await engine.trigger(report.id, user=owner)
    requested = engine.cancel(execution.id, owner)
    assert requested.cancel_requested is True

    done = await engine.wait_for(execution.id)
    assert done.status == "cancelled"


@pytest.mark.asyncio
async def test_terminal_execution_is_immutable(engine, report, owner):
    done = await engine.wait_for((await engine.trigger(report.id, user=owner)).id)
    assert done.status == "completed"

    with pytest.raises(InvalidStateError):
        engine.cancel(done.id, owner)
    for target in ("running", "failed", "cancelled", "completed"):
        with pytest.raises(InvalidStateError):
            engine._transition(done.id, target)

    assert engine.get_execution(done.id).status == "completed"


@pytest.mark.asyncio
async def test_trigger_archived_report_creates_no_execution(engine, store, report, owner):
    store.archive(report.id, owner)

    with pytest.raises(InvalidStateError):
        await engine.trigger(report.id, user=owner)

    assert engine.list_executions(report.id, owner) == ([], 0)


@pytest.mark.asyncio
async def test_inactive_report_manual_only(engine, store, report, owner):
    store.deactivate(report.id, owner)

    with pytest.raises(InvalidStateError):
        await engine.trigger(report.id, trigger_type="scheduled")

    done = await engine.wait_for((await engine.trigger(report.id, user=owner)).id)
    assert done.status == "completed"


@pytest.mark.asyncio
async def test_trigger_requires_permission(engine, report, other_user):
    with pytest.raises(PermissionDeniedError):
        await engine.trigger(report.id, user=other_user)


@pytest.mark.asyncio
async def test_trigger_validates_input(engine, report, owner):
    with pytest.raises(ValidationError):
        await engine.trigger(report.id, user=owner, trigger_type="webhook")
    with pytest.raises(ValidationError):
        await engine.trigger(report.id, ["Q1"], owner)


@pytest.mark.asyncio
async def test_filter_defaults_and_overrides(engine, store, owner, components):
    """filter 组件声明默认参数，调用方参数逐键覆盖"""
    flt = ComponentNode(
        id="component_filter",
        type="filter",
        name="筛选",
        order_index=0,
        config={"parameters": [
            {"name": "quarter", "type": "string", "default": "Q2"},
            {"name": "region", "type": "string", "default": "全部"},
        ]},
    )
    for component in components:
        component.order_index += 1
    report = store.create(ReportDefinition(name="带筛选的报表", components=[flt] + components), owner)

    with_defaults = await engine.wait_for((await engine.trigger(report.id, user=owner)).id)
    assert with_defaults.parameters == {"quarter": "Q2", "region": "全部"}
    assert with_defaults.result_count == 1

    overridden = await engine.wait_for((await engine.trigger(report.id, {"quarter": "Q1"}, owner)).id)
    assert overridden.parameters == {"quarter": "Q1", "region": "全部"}
    assert overridden.result_count == 3
    assert overridden.result.components[0].payload["parameters"][0] == {
        "name": "quarter", "type": "string", "value": "Q1"
    }


@pytest.mark.asyncio
async def test_scheduled_trigger_executed_by_system(engine, report):
    execution = await engine.trigger(report.id, trigger_type="scheduled")
    assert execution.executed_by == "system"
    assert execution.trigger_type == "scheduled"
    await engine.wait_for(execution.id)


@pytest.mark.asyncio
async def test_list_executions_and_view_permission(engine, report, owner, other_user):
    for quarter in ("Q1", "Q2"):
        await engine.wait_for((await engine.trigger(report.id, {"quarter": quarter}, owner)).id)

    items, total = engine.list_executions(report.id, owner, status="completed")
    assert total == 2
    assert {e.parameters["quarter"] for e in items} == {"Q1", "Q2"}

    with pytest.raises(PermissionDeniedError):
        engine.get_execution(items[0].id, other_user)


@pytest.mark.asyncio
async def test_concurrent_runs_do_not_interfere(engine, store, registry, report, owner):
    """同一报表的两次执行同时进行，各自只包含自己参数对应的数据"""
    in_flight = []
    both_started = asyncio.Event()

    async def overlapping(reference, parameters):
        in_flight.append(parameters["quarter"])
        if len(in_flight) == 2:
            both_started.set()
        await both_started.wait()
        rows = {
            "Q1": [{"region": "华东", "amount": 1200}, {"region": "华南", "amount": 800}, {"region": "华北", "amount": 650}],
            "Q2": [{"region": "华东", "amount": 1500}],
        }
        return rows[parameters["quarter"]]

    registry.register("sales", CallableDataSource(overlapping))

    first = await engine.trigger(report.id, {"quarter": "Q1"}, owner)
    second = await engine.trigger(report.id, {"quarter": "Q2"}, owner)
    q1, q2 = await asyncio.gather(engine.wait_for(first.id, timeout=5), engine.wait_for(second.id, timeout=5))

    assert sorted(in_flight[:2]) == ["Q1", "Q2"]
    assert q1.status == q2.status == "completed"
    assert q1.execution_no != q2.execution_no
    assert q1.result.components[0].payload["rows"] == [["华东", 1200], ["华南", 800], ["华北", 650]]
    assert q2.result.components[0].payload["rows"] == [["华东", 1500]]
    assert q1.result.components[2].payload["cards"][0]["value"] == 2650
    assert q2.result.components[2].payload["cards"][0]["value"] == 1500
    assert store.get(report.id).execute_count == 2


@pytest.mark.asyncio
async def test_rerun_creates_new_execution_with_same_parameters(engine, report, owner, other_user):
    first = await engine.wait_for((await engine.trigger(report.id, {"quarter": "Q2"}, owner)).id)

    rerun = await engine.rerun(first.id, owner)
    assert rerun.id != first.id
    assert rerun.status == "pending"
    assert rerun.parameters == {"quarter": "Q2"}

    second = await engine.wait_for(rerun.id)
    assert second.result == first.result
    assert engine.get_execution(first.id).status == "completed"

    with pytest.raises(PermissionDeniedError):
        await engine.rerun(first.id, other_user)


@pytest.mark.asyncio
async def test_preview_renders_unsaved_components(engine, owner, components):
    result = await engine.preview(components, {"quarter": "Q1"})

    assert [c.component_id for c in result.components] == ["component_table", "component_chart", "component_kpi"]
    assert result.components[0].row_count == 3
    assert result.total_pages == 2
    assert engine.list_all_executions(owner) == ([], 0)

    broken = [c.model_copy(deep=True) for c in components]
    broken[1].config.pop("label_field")
    with pytest.raises(ValidationError):
        await engine.preview(broken)

    broken = [c.model_copy(deep=True) for c in components]
    broken[0].config["data_source"] = "missing"
    with pytest.raises(DataSourceError):
        await engine.preview(broken)


@pytest.mark.asyncio
async def test_list_all_executions_and_stats(engine, store, registry, report, owner, other_user):
    def broken(reference, parameters):
        raise RuntimeError("timeout")

    registry.register("broken", CallableDataSource(broken))
    public = store.create(
        ReportDefinition(
            name="公开报表",
            components=[c.model_copy(update={"config": {**c.config, "data_source": "broken"}}) for c in report.components[:1]],
            permissions={"is_public": True},
        ),
        owner,
    )

    await engine.wait_for((await engine.trigger(report.id, {"quarter": "Q1"}, owner)).id)
    await engine.wait_for((await engine.trigger(public.id, user=owner)).id)

    items, total = engine.list_all_executions(owner)
    assert total == 2
    assert engine.list_all_executions(owner, status="failed")[0][0].report_id == public.id

    stats = engine.execution_stats(owner)
    assert stats["total"] == 2
    assert stats["by_status"]["completed"] == 1
    assert stats["by_status"]["failed"] == 1
    assert stats["avg_execution_time_ms"] is not None

    # 其他用户只能看到公开报表的执行记录
    visible, visible_total = engine.list_all_executions(other_user)
    assert visible_total == 1
    assert visible[0].report_id == public.id
    assert engine.execution_stats(other_user)["by_status"]["failed"] == 1
