"""
定时报表调度器
按固定间隔 tick，为到期的报表触发执行，完成后导出 PDF 并发送给收件人
"""
import asyncio
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .dto import ReportDefinition, ScheduleConfig
from .email_service import EmailService, get_email_service
from .errors import InvalidStateError
from .execution_engine import ExecutionEngine, get_execution_engine
from .export_service import ExportService, get_export_service
from .report_store import ReportStore, get_report_store
from ..utils.datetime_helper import to_iso_string
from ..utils.logger import get_logger, log_dispatch_error, log_error_with_context

logger = get_logger(__name__)

DEFAULT_TICK_SECONDS = 60


def latest_fire_time(schedule: ScheduleConfig, now: datetime) -> datetime:
    """
    计算不晚于 now 的最近一次触发时间（UTC）

    hourly: 每小时的 time 分钟；daily: 每天 time；weekly: 每周一 time；monthly: 每月1日 time
    """
    hour, minute = (int(part) for part in schedule.time.split(":"))

    if schedule.frequency == "hourly":
        candidate = now.replace(minute=minute, second=0, microsecond=0)
        if candidate > now:
            candidate -= timedelta(hours=1)
        return candidate

    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if schedule.frequency == "daily":
        if candidate > now:
            candidate -= timedelta(days=1)
        return candidate

    if schedule.frequency == "weekly":
        candidate -= timedelta(days=candidate.weekday())
        if candidate > now:
            candidate -= timedelta(days=7)
        return candidate

    # monthly
    candidate = candidate.replace(day=1)
    if candidate > now:
        previous_month_end = candidate - timedelta(days=1)
        candidate = candidate.replace(year=previous_month_end.year, month=previous_month_end.month)
    return candidate


def is_due(schedule: ScheduleConfig, previous_tick: datetime, now: datetime) -> bool:
    """tick 窗口 (previous_tick, now] 内是否包含触发时间"""
    if not schedule.enabled:
        return False
    fire_time = latest_fire_time(schedule, now)
    return previous_tick < fire_time <= now


class ReportScheduler:
    """定时报表调度器"""

    def __init__(
        self,
        store: Optional[ReportStore] = None,
        engine: Optional[ExecutionEngine] = None,
        export_service: Optional[ExportService] = None,
        email_service: Optional[EmailService] = None,
        tick_seconds: Optional[int] = None,
        execution_timeout: Optional[float] = None
    ):
        """
        初始化调度器

        Args:
            store: 报表存储
            engine: 执行引擎
            export_service: 导出服务
            email_service: 邮件服务
            tick_seconds: tick 间隔秒数，默认从环境变量 SCHEDULER_TICK_SECONDS 读取
            execution_timeout: 单次定时执行的等待上限（秒），默认读取 SCHEDULER_EXECUTION_TIMEOUT，未设置时等于 tick 间隔
        """
        self.store = store or get_report_store()
        self.engine = engine or get_execution_engine()
        self.export_service = export_service or get_export_service()
        self.email_service = email_service or get_email_service()
        self.tick_seconds = tick_seconds or int(os.getenv("SCHEDULER_TICK_SECONDS", str(DEFAULT_TICK_SECONDS)))
        self.execution_timeout = execution_timeout or float(
            os.getenv("SCHEDULER_EXECUTION_TIMEOUT", str(self.tick_seconds))
        )
        self._last_tick: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def due_reports(self, previous_tick: datetime, now: datetime) -> List[ReportDefinition]:
        return [
            report for report in self.store.list_scheduled()
            if is_due(report.schedule_config, previous_tick, now)
        ]

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        执行一次调度

        每个报表独立运行，一个报表失败不影响同一 tick 中的其他报表，也不在本 tick 内重试

        Returns:
            本次 tick 的汇总: due / completed / dispatched / failed
        """
        now = now or datetime.utcnow()
        previous_tick = self._last_tick or now - timedelta(seconds=self.tick_seconds)
        self._last_tick = now

        due = self.due_reports(previous_tick, now)
        summary: Dict[str, Any] = {
            "tick": now.isoformat(),
            "due": [r.id for r in due],
            "completed": [],
            "dispatched": [],
            "failed": [],
        }
        if not due:
            return summary

        logger.info(f"调度 tick: window=({previous_tick.isoformat()}, {now.isoformat()}], 到期报表={len(due)}")

        outcomes = await asyncio.gather(*(self._run_isolated(report) for report in due))
        for report, outcome in zip(due, outcomes):
            if outcome.get("error"):
                summary["failed"].append({"report_id": report.id, "error": outcome["error"]})
                continue
            summary["completed"].append(report.id)
            if outcome.get("dispatched"):
                summary["dispatched"].append(report.id)

        logger.info(
            f"调度 tick 完成: completed={len(summary['completed'])}, "
            f"dispatched={len(summary['dispatched'])}, failed={len(summary['failed'])}"
        )
        return summary

    async def _run_isolated(self, report: ReportDefinition) -> Dict[str, Any]:
        try:
            return await self.run_report(report)
        except Exception as e:
            log_error_with_context(logger, f"定时报表执行失败: report_id={report.id}", e, {"report_no": report.report_no})
            return {"error": str(e) or type(e).__name__}

    async def run_report(self, report: ReportDefinition) -> Dict[str, Any]:
        """触发一次定时执行，等待完成后分发"""
        execution = await self.engine.trigger(report.id, trigger_type="scheduled")
        try:
            execution = await self.engine.wait_for(execution.id, timeout=self.execution_timeout)
        except asyncio.TimeoutError:
            # 后台执行继续运行，请求取消后在下一个组件边界停止
            try:
                self.engine.cancel(execution.id)
            except InvalidStateError as e:
                logger.debug(f"超时后执行已结束: {e.message}")
            logger.warning(
                f"定时执行超时: report_id={report.id}, execution_no={execution.execution_no}, "
                f"timeout={self.execution_timeout}s"
            )
            return {"execution_id": execution.id, "error": f"执行超时（{self.execution_timeout:g}秒）"}

        if execution.status != "completed":
            logger.warning(
                f"定时执行未完成: report_id={report.id}, execution_no={execution.execution_no}, "
                f"status={execution.status}, error={execution.error_message}"
            )
            return {"error": execution.error_message or f"execution {execution.status}"}

        recipients = report.schedule_config.recipients
        if not recipients:
            logger.info(f"定时报表无收件人，跳过分发: report_id={report.id}")
            return {"execution_id": execution.id, "dispatched": False}

        export_file = await self.export_service.export(execution, "pdf", report)
        try:
            result = await asyncio.to_thread(
                self.email_service.send_report_email,
                recipients,
                report.name,
                export_file.filename,
                export_file.content,
                export_file.media_type,
                to_iso_string(execution.finished_at),
            )
        except ValueError as e:
            log_dispatch_error(logger, report.id, recipients, e, execution.id)
            return {"execution_id": execution.id, "error": str(e)}

        if not result.get("success"):
            return {"execution_id": execution.id, "error": result.get("error") or result.get("message")}

        return {"execution_id": execution.id, "dispatched": True}

    async def _loop(self):
        logger.info(f"调度器已启动: tick_seconds={self.tick_seconds}")
        while True:
            try:
                await self.tick()
            except Exception as e:
                log_error_with_context(logger, "调度 tick 异常", e)
            await asyncio.sleep(self.tick_seconds)

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("调度器已停止")


# 全局调度器实例
_scheduler = None


def get_scheduler() -> ReportScheduler:
    """获取全局调度器实例"""
    global _scheduler
    if _scheduler is None:
        _scheduler = ReportScheduler()
    return _scheduler
