"""
定时调度测试
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from report_engine.services.data_sources import CallableDataSource
from report_engine.services.dto import ReportDefinition, ScheduleConfig
from report_engine.services.export_service import ExportService
from report_engine.services.scheduler import ReportScheduler, is_due, latest_fire_time


def schedule(frequency, time="08:00", enabled=True, recipients=None):
    return ScheduleConfig(enabled=enabled, frequency=frequency, time=time, recipients=recipients or [])


# 2026-10-19 是星期一
MONDAY = datetime(2026, 10, 19, 9, 30)


@pytest.mark.parametrize("config, now, expected", [
    (schedule("daily"), MONDAY, datetime(2026, 10, 19, 8, 0)),
    (schedule("daily"), datetime(2026, 10, 19, 7, 59), datetime(2026, 10, 18, 8, 0)),
    (schedule("hourly", "00:15"), MONDAY, datetime(2026, 10, 19, 9, 15)),
    (schedule("hourly", "00:45"), MONDAY, datetime(2026, 10, 19, 8, 45)),
    (schedule("weekly"), MONDAY, datetime(2026, 10, 19, 8, 0)),
    (schedule("weekly"), datetime(2026, 10, 22, 12, 0), datetime(2026, 10, 19, 8, 0)),
    (schedule("weekly"), datetime(2026, 10, 19, 7, 0), datetime(2026, 10, 12, 8, 0)),
    (schedule("monthly"), MONDAY, datetime(2026, 10, 1, 8, 0)),
    (schedule("monthly"), datetime(2026, 10, 1, 7, 0), datetime(2026, 9, 1, 8, 0)),
    (schedule("monthly"), datetime(2026, 1, 1, 0, 0), datetime(2025, 12, 1, 8, 0)),
])
def test_latest_fire_time(config, now, expected):
    assert latest_fire_time(config, now) == expected


def test_is_due_window_is_half_open():
    config = schedule("daily")
    fire = datetime(2026, 10, 19, 8, 0)

    assert is_due(config, fire - timedelta(minutes=1), fire)
    assert not is_due(config, fire, fire + timedelta(minutes=1))
    assert not is_due(schedule("daily", enabled=False), fire - timedelta(minutes=1), fire)


def create_scheduled(store, owner, components, name, recipients=None):
    return store.create(
        ReportDefinition(
            name=name,
            components=components,
            schedule_config=schedule("daily", recipients=recipients),
        ),
        owner,
    )


@pytest.fixture
def email_service():
    service = MagicMock()
    service.send_report_email.return_value = {"success": True, "message": "邮件发送成功"}
    return service


@pytest.fixture
def scheduler(store, engine, email_service):
    return ReportScheduler(store, engine, ExportService(), email_service, tick_seconds=60)


@pytest.mark.asyncio
async def test_tick_dispatches_due_reports(scheduler, store, engine, owner, components, email_service):
    scheduled = create_scheduled(store, owner, components, "日报", ["ops@example.com"])

    summary = await scheduler.tick(datetime(2026, 10, 19, 8, 0, 30))

    assert summary["due"] == [scheduled.id]
    assert summary["completed"] == [scheduled.id]
    assert summary["dispatched"] == [scheduled.id]
    assert summary["failed"] == []

    email_service.send_report_email.assert_called_once()
    args = email_service.send_report_email.call_args.args
    assert args[0] == ["ops@example.com"]
    assert args[1] == "日报"
    assert args[2].endswith(".pdf")
    assert args[3].startswith(b"%PDF")

    executions, total = engine.list_executions(scheduled.id)
    assert total == 1
    assert executions[0].trigger_type == "scheduled"
    assert executions[0].executed_by == "system"


@pytest.mark.asyncio
async def test_tick_isolates_failing_report(scheduler, store, registry, owner, components, email_service):
    """一个报表失败不影响同一 tick 中的其他报表"""
    def broken(reference, parameters):
        raise RuntimeError("warehouse offline")

    registry.register("broken", CallableDataSource(broken))
    healthy = create_scheduled(store, owner, components, "正常报表", ["a@example.com"])
    failing_components = [c.model_copy(deep=True) for c in components]
    failing_components[0].config["data_source"] = "broken"
    failing = create_scheduled(store, owner, failing_components, "故障报表", ["b@example.com"])

    summary = await scheduler.tick(datetime(2026, 10, 19, 8, 0, 30))

    assert set(summary["due"]) == {healthy.id, failing.id}
    assert summary["completed"] == [healthy.id]
    assert summary["dispatched"] == [healthy.id]
    assert [f["report_id"] for f in summary["failed"]] == [failing.id]
    assert "warehouse offline" in summary["failed"][0]["error"]
    email_service.send_report_email.assert_called_once()


@pytest.mark.asyncio
async def test_hung_execution_times_out_without_blocking_tick(store, engine, registry, owner, components, email_service):
    """卡住的数据源只让本报表超时失败，tick 照常返回"""
    release = asyncio.Event()

    async def hanging(reference, parameters):
        await release.wait()
        return [{"region": "华东", "amount": 1}]

    registry.register("hanging", CallableDataSource(hanging))
    stuck_components = [c.model_copy(deep=True) for c in components]
    stuck_components[0].config["data_source"] = "hanging"
    stuck = create_scheduled(store, owner, stuck_components, "卡住的报表", ["a@example.com"])
    healthy = create_scheduled(store, owner, components, "正常报表", ["b@example.com"])

    scheduler = ReportScheduler(store, engine, ExportService(), email_service, tick_seconds=60, execution_timeout=0.5)
    summary = await scheduler.tick(datetime(2026, 10, 19, 8, 0, 30))

    assert summary["completed"] == [healthy.id]
    assert [f["report_id"] for f in summary["failed"]] == [stuck.id]
    assert "超时" in summary["failed"][0]["error"]

    executions, _ = engine.list_executions(stuck.id)
    assert executions[0].cancel_requested is True

    release.set()
    finished = await engine.wait_for(executions[0].id, timeout=5)
    assert finished.status == "cancelled"
    assert finished.result is None


def test_execution_timeout_defaults_to_tick_interval(store, engine, email_service, monkeypatch):
    monkeypatch.delenv("SCHEDULER_EXECUTION_TIMEOUT", raising=False)
    assert ReportScheduler(store, engine, ExportService(), email_service, tick_seconds=30).execution_timeout == 30

    monkeypatch.setenv("SCHEDULER_EXECUTION_TIMEOUT", "300")
    assert ReportScheduler(store, engine, ExportService(), email_service, tick_seconds=30).execution_timeout == 300


@pytest.mark.asyncio
async def test_empty_recipients_executes_without_dispatch(scheduler, store, owner, components, email_service):
    scheduled = create_scheduled(store, owner, components, "无收件人")

    summary = await scheduler.tick(datetime(2026, 10, 19, 8, 0, 30))

    assert summary["completed"] == [scheduled.id]
    assert summary["dispatched"] == []
    email_service.send_report_email.assert_not_called()


@pytest.mark.asyncio
async def test_email_configuration_error_is_reported(scheduler, store, owner, components, email_service):
    email_service.send_report_email.side_effect = ValueError("SMTP 未配置")
    scheduled = create_scheduled(store, owner, components, "日报", ["ops@example.com"])

    summary = await scheduler.tick(datetime(2026, 10, 19, 8, 0, 30))

    assert summary["dispatched"] == []
    assert summary["failed"] == [{"report_id": scheduled.id, "error": "SMTP 未配置"}]


@pytest.mark.asyncio
async def test_report_fires_once_across_ticks(scheduler, store, owner, components):
    create_scheduled(store, owner, components, "日报")

    first = await scheduler.tick(datetime(2026, 10, 19, 8, 0, 30))
    second = await scheduler.tick(datetime(2026, 10, 19, 8, 1, 30))

    assert len(first["due"]) == 1
    assert second["due"] == []


@pytest.mark.asyncio
async def test_inactive_and_disabled_reports_are_skipped(scheduler, store, owner, components):
    inactive = create_scheduled(store, owner, components, "已停用")
    store.deactivate(inactive.id, owner)
    store.create(ReportDefinition(name="未启用定时", components=components), owner)

    summary = await scheduler.tick(datetime(2026, 10, 19, 8, 0, 30))

    assert summary["due"] == []


@pytest.mark.asyncio
async def test_start_and_stop(scheduler):
    scheduler.tick_seconds = 3600
    scheduler.start()
    assert scheduler.running

    await scheduler.stop()
    assert not scheduler.running
