"""
报表执行引擎
负责把一次执行从触发推进到终态: pending -> running -> completed | failed | cancelled
"""
import asyncio
import json
import math
import os
import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func

from .components import data_source_of, filter_defaults, sort_by_order, validate_components
from .data_sources import DataSourceRegistry, get_data_source_registry
from .dto import (
    ComponentNode,
    Execution,
    ExecutionResult,
    RenderedComponent,
    UserContext,
    EXECUTION_STATUSES,
    TERMINAL_STATUSES,
    TRIGGER_TYPES,
)
from .errors import InvalidStateError, NotFoundError, ReportEngineError, ValidationError
from .permission_gate import PermissionGate, get_permission_gate
from .renderers import render_component
from .report_store import ReportStore, get_report_store
from ..database import Database, get_database
from ..models.report import ReportExecution as ExecutionModel
from ..utils.logger import get_logger, log_error_with_context

logger = get_logger(__name__)

# 允许的状态转换，其他转换一律拒绝
EXECUTION_TRANSITIONS = {
    "pending": {"running"},
    "running": {"completed", "failed", "cancelled"},
}

DEFAULT_PAGE_SIZE = 50


def generate_execution_no() -> str:
    """生成执行编号: EXE + UTC时间戳 + 4位随机十六进制"""
    return f"EXE{datetime.utcnow().strftime('%Y%m%d%H%M%S')}{secrets.token_hex(2).upper()}"


def merge_parameters(defaults: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """在报表默认参数上逐键覆盖调用方参数，调用方参数优先"""
    merged = dict(defaults)
    merged.update(overrides or {})
    return merged


def compute_total_pages(row_count: int, page_size: int) -> int:
    """向上取整分页，0行也至少1页"""
    return max(1, math.ceil(row_count / page_size))


class ExecutionEngine:
    """报表执行引擎"""

    def __init__(
        self,
        database: Optional[Database] = None,
        store: Optional[ReportStore] = None,
        registry: Optional[DataSourceRegistry] = None,
        permission_gate: Optional[PermissionGate] = None,
        page_size: Optional[int] = None
    ):
        """
        初始化执行引擎

        Args:
            database: 数据库实例
            store: 报表存储
            registry: 数据源注册表
            permission_gate: 权限门
            page_size: 每页行数，默认从环境变量 REPORT_PAGE_SIZE 读取
        """
        self.db = database or get_database()
        self.store = store or get_report_store()
        self.registry = registry or get_data_source_registry()
        self.gate = permission_gate or get_permission_gate()
        self.page_size = page_size or int(os.getenv("REPORT_PAGE_SIZE", str(DEFAULT_PAGE_SIZE)))
        self._tasks: Dict[str, asyncio.Task] = {}

    # ============ 转换 ============

    @staticmethod
    def _to_execution(model: ExecutionModel) -> Execution:
        result = None
        if model.result:
            result = ExecutionResult.model_validate(json.loads(model.result))
        return Execution(
            id=model.id,
            tenant_id=model.tenant_id,
            execution_no=model.execution_no,
            report_id=model.report_id,
            status=model.status,
            trigger_type=model.trigger_type,
            parameters=json.loads(model.parameters or "{}"),
            executed_by=model.executed_by,
            started_at=model.started_at,
            finished_at=model.finished_at,
            execution_time_ms=model.execution_time_ms,
            result=result,
            result_count=model.result_count or 0,
            error_message=model.error_message,
            error_details=json.loads(model.error_details) if model.error_details else None,
            cancel_requested=bool(model.cancel_requested),
            created_at=model.created_at,
        )

    def _load(self, session, execution_id: str) -> ExecutionModel:
        model = session.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
        if not model:
            raise NotFoundError(f"执行记录不存在: {execution_id}")
        return model

    def _transition(self, execution_id: str, target: str, **fields) -> Execution:
        """
        状态转换的唯一入口

        Raises:
            InvalidStateError: 转换不在允许列表中（例如终态再次变更）
        """
        with self.db.get_session() as session:
            model = self._load(session, execution_id)
            if target not in EXECUTION_TRANSITIONS.get(model.status, set()):
                raise InvalidStateError(
                    f"执行状态不允许从 {model.status} 变更为 {target}",
                    {"execution_id": execution_id, "from": model.status, "to": target}
                )
            previous = model.status
            model.status = target
            for key, value in fields.items():
                setattr(model, key, value)
            session.flush()
            execution = self._to_execution(model)

        logger.info(f"执行状态变更: execution_no={execution.execution_no}, {previous} -> {target}")
        return execution

    def _cancel_requested(self, execution_id: str) -> bool:
        with self.db.get_session() as session:
            return bool(self._load(session, execution_id).cancel_requested)

    # ============ 触发 ============

    async def trigger(
        self,
        report_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        user: Optional[UserContext] = None,
        trigger_type: str = "manual"
    ) -> Execution:
        """
        触发报表执行

        同步完成校验并创建 pending 执行记录后立即返回，实际执行在后台任务中进行

        Args:
            report_id: 报表ID
            parameters: 调用方参数，覆盖报表默认参数
            user: 调用方身份
            trigger_type: 触发方式 manual / scheduled / api

        Returns:
            pending 状态的执行记录

        Raises:
            InvalidStateError: 报表已归档（或定时触发时报表已停用），不创建执行记录
            PermissionDeniedError: 调用方没有 trigger 权限
        """
        if trigger_type not in TRIGGER_TYPES:
            raise ValidationError(f"不支持的触发方式: {trigger_type}", field="trigger_type")
        if parameters is not None and not isinstance(parameters, dict):
            raise ValidationError("parameters 必须是对象", field="parameters")

        report = self.store.get(report_id)
        if user is not None:
            self.gate.authorize("trigger", report, user)

        if report.status == "archived":
            raise InvalidStateError(f"报表已归档，不允许执行: {report_id}", {"report_id": report_id})
        if report.status == "inactive" and trigger_type == "scheduled":
            raise InvalidStateError(f"报表已停用，跳过定时执行: {report_id}", {"report_id": report_id})

        merged = merge_parameters(filter_defaults(report.components), parameters)

        with self.db.get_session() as session:
            model = ExecutionModel(
                id=str(uuid.uuid4()),
                tenant_id=report.tenant_id,
                execution_no=generate_execution_no(),
                report_id=report.id,
                status="pending",
                trigger_type=trigger_type,
                parameters=json.dumps(merged, ensure_ascii=False, default=str),
                executed_by=user.user_id if user is not None else "system",
                result_count=0,
                cancel_requested=False,
                created_at=datetime.utcnow(),
            )
            session.add(model)
            session.flush()
            execution = self._to_execution(model)

        logger.info(
            f"创建执行记录: execution_no={execution.execution_no}, report_id={report_id}, "
            f"trigger_type={trigger_type}, parameters={merged}"
        )

        task = asyncio.create_task(self.run(execution.id))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _t, eid=execution.id: self._tasks.pop(eid, None))
        return execution

    async def rerun(self, execution_id: str, user: Optional[UserContext] = None) -> Execution:
        """用原执行记录保存的参数重新触发一次执行（新的执行记录，原记录不变）"""
        with self.db.get_session() as session:
            previous = self._to_execution(self._load(session, execution_id))

        logger.info(f"重新执行: source={previous.execution_no}, report_id={previous.report_id}")
        return await self.trigger(previous.report_id, previous.parameters, user, trigger_type="manual")

    async def preview(
        self,
        components: List[ComponentNode],
        parameters: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        """
        预览未保存的组件列表：校验、取数并渲染，不创建执行记录

        Raises:
            ValidationError: 组件配置不合法
            DataSourceError: 数据源查询失败
        """
        validate_components(components)
        merged = merge_parameters(filter_defaults(components), parameters)

        rendered: List[RenderedComponent] = []
        for node in sort_by_order(components):
            reference = data_source_of(node)
            data = await self.registry.fetch(reference, merged) if reference else None
            rendered.append(render_component(node, data, merged))

        result_count = max((item.row_count for item in rendered), default=0)
        return ExecutionResult(components=rendered, total_pages=compute_total_pages(result_count, self.page_size))

    # ============ 执行 ============

    async def run(self, execution_id: str) -> Execution:
        """
        执行报表

        按 order_index 逐个获取数据并渲染组件；每个组件开始前检查取消请求。
        任一组件失败则整个执行失败，已渲染的部分结果丢弃
        """
        try:
            return await self._execute(execution_id)
        except Exception as e:
            # 组件之外的错误（报表被删除、结果写入失败等）同样记录在执行记录上
            log_error_with_context(logger, "执行任务异常", e, {"execution_id": execution_id})
            with self.db.get_session() as session:
                model = self._load(session, execution_id)
                if model.status in TERMINAL_STATUSES:
                    return self._to_execution(model)
                status = model.status
            if status == "pending":
                self._transition(execution_id, "running", started_at=datetime.utcnow())
            return self._transition(
                execution_id,
                "failed",
                error_message=str(e) or type(e).__name__,
                error_details=json.dumps({"error_type": type(e).__name__}),
                finished_at=datetime.utcnow(),
            )

    async def _execute(self, execution_id: str) -> Execution:
        with self.db.get_session() as session:
            pending = self._to_execution(self._load(session, execution_id))

        report = self.store.get(pending.report_id)
        parameters = pending.parameters
        started_at = datetime.utcnow()
        self._transition(execution_id, "running", started_at=started_at)

        def _finish_fields() -> Dict[str, Any]:
            finished_at = datetime.utcnow()
            return {
                "finished_at": finished_at,
                "execution_time_ms": (finished_at - started_at).total_seconds() * 1000,
            }

        rendered: List[RenderedComponent] = []
        for node in sort_by_order(report.components):
            if self._cancel_requested(execution_id):
                logger.info(f"执行已取消: execution_no={pending.execution_no}, 已渲染={len(rendered)} 个组件（已丢弃）")
                return self._transition(execution_id, "cancelled", **_finish_fields())

            reference = data_source_of(node)
            try:
                data = await self.registry.fetch(reference, parameters) if reference else None
                rendered.append(render_component(node, data, parameters))
            except Exception as e:
                source = reference.get("source") if isinstance(reference, dict) else reference
                details = {
                    "component_id": node.id,
                    "component_type": node.type,
                    "order_index": node.order_index,
                    "error_type": type(e).__name__,
                    "data_source": source,
                }
                message = e.message if isinstance(e, ReportEngineError) else str(e)
                log_error_with_context(
                    logger,
                    f"报表执行失败: execution_no={pending.execution_no}",
                    e,
                    {**details, "parameters": parameters},
                )
                return self._transition(
                    execution_id,
                    "failed",
                    error_message=message or type(e).__name__,
                    error_details=json.dumps(details, ensure_ascii=False, default=str),
                    **_finish_fields(),
                )

        if self._cancel_requested(execution_id):
            return self._transition(execution_id, "cancelled", **_finish_fields())

        result_count = max((item.row_count for item in rendered), default=0)
        result = ExecutionResult(
            components=rendered,
            total_pages=compute_total_pages(result_count, self.page_size),
        )
        fields = _finish_fields()
        execution = self._transition(
            execution_id,
            "completed",
            result=json.dumps(result.model_dump(), ensure_ascii=False, default=str),
            result_count=result_count,
            **fields,
        )
        self.store.record_execution(report.id, fields["execution_time_ms"], fields["finished_at"])

        logger.info(
            f"报表执行完成: execution_no={execution.execution_no}, components={len(rendered)}, "
            f"result_count={result_count}, 耗时={execution.execution_time_ms:.2f}ms"
        )
        return execution

    def cancel(self, execution_id: str, user: Optional[UserContext] = None) -> Execution:
        """
        请求取消执行（协作式，在下一个组件边界生效）

        Raises:
            InvalidStateError: 执行已处于终态
        """
        with self.db.get_session() as session:
            model = self._load(session, execution_id)
            if user is not None:
                self.gate.authorize("trigger", self.store.get(model.report_id), user)
            if model.status in TERMINAL_STATUSES:
                raise InvalidStateError(
                    f"执行已结束，无法取消: status={model.status}",
                    {"execution_id": execution_id, "status": model.status}
                )
            model.cancel_requested = True
            session.flush()
            execution = self._to_execution(model)

        logger.info(f"收到取消请求: execution_no={execution.execution_no}, status={execution.status}")
        return execution

    # ============ 查询 ============

    def get_execution(self, execution_id: str, user: Optional[UserContext] = None) -> Execution:
        with self.db.get_session() as session:
            execution = self._to_execution(self._load(session, execution_id))
        if user is not None:
            self.gate.authorize("view", self.store.get(execution.report_id), user)
        return execution

    def list_executions(
        self,
        report_id: str,
        user: Optional[UserContext] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Execution], int]:
        """列出报表的执行历史（按创建时间倒序）"""
        report = self.store.get(report_id, user)

        with self.db.get_session() as session:
            query = session.query(ExecutionModel).filter(ExecutionModel.report_id == report.id)
            if status:
                query = query.filter(ExecutionModel.status == status)
            total = query.count()
            rows = query.order_by(ExecutionModel.created_at.desc()) \
                .offset((max(page, 1) - 1) * page_size).limit(page_size).all()
            return [self._to_execution(r) for r in rows], total

    def list_all_executions(
        self,
        user: UserContext,
        status: Optional[str] = None,
        trigger_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Execution], int]:
        """列出调用方可见的所有报表的执行记录（按创建时间倒序）"""
        report_ids = self.store.visible_report_ids(user)
        if not report_ids:
            return [], 0

        with self.db.get_session() as session:
            query = session.query(ExecutionModel).filter(ExecutionModel.report_id.in_(report_ids))
            if status:
                query = query.filter(ExecutionModel.status == status)
            if trigger_type:
                query = query.filter(ExecutionModel.trigger_type == trigger_type)
            total = query.count()
            rows = query.order_by(ExecutionModel.created_at.desc()) \
                .offset((max(page, 1) - 1) * page_size).limit(page_size).all()
            return [self._to_execution(r) for r in rows], total

    def execution_stats(self, user: UserContext) -> Dict[str, Any]:
        """
        调用方可见范围内的执行统计

        Returns:
            {"total", "by_status", "avg_execution_time_ms"}，平均耗时只统计已完成的执行
        """
        by_status = {status: 0 for status in EXECUTION_STATUSES}
        report_ids = self.store.visible_report_ids(user)
        if not report_ids:
            return {"total": 0, "by_status": by_status, "avg_execution_time_ms": None}

        with self.db.get_session() as session:
            visible = ExecutionModel.report_id.in_(report_ids)
            counts = session.query(ExecutionModel.status, func.count(ExecutionModel.id)) \
                .filter(visible).group_by(ExecutionModel.status).all()
            avg_time = session.query(func.avg(ExecutionModel.execution_time_ms)) \
                .filter(visible, ExecutionModel.status == "completed").scalar()

        by_status.update(dict(counts))
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "avg_execution_time_ms": float(avg_time) if avg_time is not None else None,
        }

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """等待后台执行结束并返回最新的执行记录"""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.get_execution(execution_id)

    async def shutdown(self, timeout: float = 30):
        """等待所有后台执行结束（应用关闭时调用）"""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"等待 {len(tasks)} 个执行任务结束")
            await asyncio.wait(tasks, timeout=timeout)


# 全局执行引擎实例
_execution_engine = None


def get_execution_engine() -> ExecutionEngine:
    """获取全局执行引擎实例"""
    global _execution_engine
    if _execution_engine is None:
        _execution_engine = ExecutionEngine()
    return _execution_engine
