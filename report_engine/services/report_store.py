"""
报表定义存储
负责报表定义和报表模板的持久化、状态流转、模板实例化以及统计
"""
import json
import re
import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func

from .components import (
    COPY_SUFFIX,
    clone_components,
    normalize_order,
    sort_by_order,
    validate_component,
    validate_components,
)
from .dto import (
    ComponentNode,
    ImportResult,
    PermissionSet,
    ReportDefinition,
    ReportStatistics,
    ReportTemplate,
    ScheduleConfig,
    UserContext,
    REPORT_CATEGORIES,
    REPORT_TYPES,
    SCHEDULE_FREQUENCIES,
)
from .errors import InvalidStateError, NotFoundError, ValidationError
from .permission_gate import PermissionGate, get_permission_gate
from ..database import Database, get_database
from ..models.report import Report as ReportModel
from ..models.report import ReportExecution as ExecutionModel
from ..models.report import ReportTemplate as TemplateModel
from ..utils.datetime_helper import to_iso_string
from ..utils.logger import get_logger

logger = get_logger(__name__)

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# 可通过 update 修改的字段（状态只能通过 archive/activate/deactivate 修改）
UPDATABLE_FIELDS = (
    "name", "name_en", "description", "category", "type",
    "components", "schedule_config", "permissions", "tags",
)
TEMPLATE_UPDATABLE_FIELDS = (
    "name", "name_en", "description", "category", "type",
    "tags", "is_public", "components",
)

# 状态机：active ⇄ inactive，active|inactive → archived（终态）
STATUS_TRANSITIONS = {
    "active": {"inactive", "archived"},
    "inactive": {"active", "archived"},
    "archived": set(),
}


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _unique(values: Iterable[str]) -> List[str]:
    """去重并保持顺序"""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def generate_report_no() -> str:
    """生成报表编号: RPT + UTC时间戳 + 4位随机十六进制"""
    return f"RPT{datetime.utcnow().strftime('%Y%m%d%H%M%S')}{secrets.token_hex(2).upper()}"


def validate_schedule(schedule: ScheduleConfig) -> ScheduleConfig:
    """
    校验定时配置（作为整体校验）

    启用定时但收件人为空是允许的，此时只执行不发送
    """
    if schedule.frequency not in SCHEDULE_FREQUENCIES:
        raise ValidationError(
            f"不支持的执行频率: {schedule.frequency}。支持: {', '.join(SCHEDULE_FREQUENCIES)}",
            field="schedule_config.frequency"
        )
    if not _TIME_PATTERN.match(schedule.time or ""):
        raise ValidationError(f"执行时间格式错误（应为 HH:MM）: {schedule.time}", field="schedule_config.time")
    for address in schedule.recipients:
        if not _EMAIL_PATTERN.match(address):
            raise ValidationError(f"收件人邮箱格式错误: {address}", field="schedule_config.recipients")
    schedule.recipients = _unique(schedule.recipients)
    return schedule


def validate_definition(definition: ReportDefinition):
    """
    校验报表定义

    Raises:
        ValidationError: 名称为空、分类/类型非法、定时配置非法或组件配置与类型不匹配
    """
    if not definition.name or not definition.name.strip():
        raise ValidationError("报表名称不能为空", field="name")
    if definition.category not in REPORT_CATEGORIES:
        raise ValidationError(f"不支持的报表分类: {definition.category}", field="category")
    if definition.type not in REPORT_TYPES:
        raise ValidationError(f"不支持的报表类型: {definition.type}", field="type")

    validate_schedule(definition.schedule_config)
    definition.permissions.view_users = _unique(definition.permissions.view_users)
    definition.permissions.edit_users = _unique(definition.permissions.edit_users)

    validate_components(definition.components)
    definition.components = normalize_order(sort_by_order(definition.components))


def _coerce(model_cls, value: Any, field: str):
    """把字典转换为DTO，pydantic 校验失败时转换为 ValidationError"""
    if isinstance(value, model_cls):
        return value.model_copy(deep=True)
    try:
        return model_cls.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(f"字段 {field} 格式错误: {e.errors()[0].get('msg')}", field=field) from e


def _coerce_components(value: Any) -> List[ComponentNode]:
    if not isinstance(value, list):
        raise ValidationError("components 必须是列表", field="components")
    return [_coerce(ComponentNode, item, "components") for item in value]


class ReportStore:
    """报表定义存储"""

    def __init__(self, database: Optional[Database] = None, permission_gate: Optional[PermissionGate] = None):
        """
        初始化报表存储

        Args:
            database: 数据库实例，默认使用全局实例
            permission_gate: 权限门，默认使用全局实例
        """
        self.db = database or get_database()
        self.gate = permission_gate or get_permission_gate()

    # ============ 转换 ============

    @staticmethod
    def _to_definition(report: ReportModel) -> ReportDefinition:
        return ReportDefinition(
            id=report.id,
            tenant_id=report.tenant_id,
            report_no=report.report_no,
            name=report.name,
            name_en=report.name_en,
            description=report.description,
            category=report.category,
            type=report.type,
            status=report.status,
            components=[ComponentNode.model_validate(c) for c in json.loads(report.components or "[]")],
            schedule_config=ScheduleConfig.model_validate(json.loads(report.schedule_config or "{}")),
            permissions=PermissionSet.model_validate(json.loads(report.permissions or "{}")),
            tags=json.loads(report.tags or "[]"),
            template_id=report.template_id,
            created_by=report.created_by,
            updated_by=report.updated_by,
            created_at=report.created_at,
            updated_at=report.updated_at,
            execute_count=report.execute_count or 0,
            avg_exec_time=report.avg_exec_time or 0.0,
            view_count=report.view_count or 0,
            last_viewed=report.last_viewed,
            last_executed=report.last_executed,
            version=report.version or 1,
        )

    @staticmethod
    def _to_template(template: TemplateModel) -> ReportTemplate:
        return ReportTemplate(
            id=template.id,
            tenant_id=template.tenant_id,
            name=template.name,
            name_en=template.name_en,
            description=template.description,
            category=template.category,
            type=template.type,
            tags=json.loads(template.tags or "[]"),
            is_public=bool(template.is_public),
            is_system=bool(template.is_system),
            usage_count=template.usage_count or 0,
            components=[ComponentNode.model_validate(c) for c in json.loads(template.components or "[]")],
            created_by=template.created_by,
            created_at=template.created_at,
            updated_at=template.updated_at,
        )

    @staticmethod
    def _components_json(components: List[ComponentNode]) -> str:
        return _dumps([c.model_dump() for c in components])

    def _load_report(self, session, report_id: str) -> ReportModel:
        report = session.query(ReportModel).filter(ReportModel.id == report_id).first()
        if not report:
            raise NotFoundError(f"报表不存在: {report_id}")
        return report

    def _load_template(self, session, template_id: str) -> TemplateModel:
        template = session.query(TemplateModel).filter(TemplateModel.id == template_id).first()
        if not template:
            raise NotFoundError(f"模板不存在: {template_id}")
        return template

    def _ensure_report_no(self, session, tenant_id: int, report_no: Optional[str]) -> str:
        if report_no:
            exists = session.query(ReportModel.id).filter(
                ReportModel.tenant_id == tenant_id,
                ReportModel.report_no == report_no
            ).first()
            if exists:
                raise ValidationError(f"报表编号已存在: {report_no}", field="report_no")
            return report_no

        while True:
            candidate = generate_report_no()
            exists = session.query(ReportModel.id).filter(
                ReportModel.tenant_id == tenant_id,
                ReportModel.report_no == candidate
            ).first()
            if not exists:
                return candidate

    # ============ 报表 CRUD ============

    def create(self, definition: Union[ReportDefinition, Dict[str, Any]], user: UserContext) -> ReportDefinition:
        """
        创建报表

        初始状态为 active，所有者为调用方

        Raises:
            ValidationError: 名称为空或组件配置不合法
        """
        definition = _coerce(ReportDefinition, definition, "definition")
        validate_definition(definition)

        with self.db.get_session() as session:
            report_no = self._ensure_report_no(session, user.tenant_id, definition.report_no)
            report = ReportModel(
                id=str(uuid.uuid4()),
                tenant_id=user.tenant_id,
                report_no=report_no,
                name=definition.name.strip(),
                name_en=definition.name_en,
                description=definition.description,
                category=definition.category,
                type=definition.type,
                status="active",
                components=self._components_json(definition.components),
                schedule_config=_dumps(definition.schedule_config.model_dump()),
                permissions=_dumps(definition.permissions.model_dump()),
                tags=_dumps(_unique(definition.tags)),
                template_id=definition.template_id,
                created_by=user.user_id,
                execute_count=0,
                avg_exec_time=0.0,
                view_count=0,
                version=1,
            )
            session.add(report)
            session.flush()
            result = self._to_definition(report)

        logger.info(f"报表创建成功: id={result.id}, report_no={result.report_no}, components={len(result.components)}")
        return result

    def get(self, report_id: str, user: Optional[UserContext] = None) -> ReportDefinition:
        """
        获取报表

        Args:
            report_id: 报表ID
            user: 调用方身份；传入时校验 view 权限（内部调用可不传）
        """
        with self.db.get_session() as session:
            definition = self._to_definition(self._load_report(session, report_id))

        if user is not None:
            self.gate.authorize("view", definition, user)
        return definition

    def list(
        self,
        user: UserContext,
        category: Optional[str] = None,
        type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[ReportDefinition], int]:
        """
        列出调用方可见的报表

        Returns:
            (当前页报表列表, 可见报表总数)
        """
        visible_ids = self.visible_report_ids(user, category=category, type=type, status=status, search=search)
        page = max(page, 1)
        start = (page - 1) * page_size
        page_ids = visible_ids[start:start + page_size]
        if not page_ids:
            return [], len(visible_ids)

        with self.db.get_session() as session:
            rows = session.query(ReportModel).filter(ReportModel.id.in_(page_ids)).all()
            by_id = {r.id: self._to_definition(r) for r in rows}
        return [by_id[i] for i in page_ids if i in by_id], len(visible_ids)

    def visible_report_ids(
        self,
        user: UserContext,
        category: Optional[str] = None,
        type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[str]:
        """
        调用方可见的报表ID（按创建时间倒序）

        筛选条件在SQL中完成；可见性只读取权限相关的列判断，不加载组件列表
        """
        with self.db.get_session() as session:
            query = session.query(
                ReportModel.id,
                ReportModel.tenant_id,
                ReportModel.created_by,
                ReportModel.permissions,
            ).filter(ReportModel.tenant_id == user.tenant_id)
            if category:
                query = query.filter(ReportModel.category == category)
            if type:
                query = query.filter(ReportModel.type == type)
            if status:
                query = query.filter(ReportModel.status == status)
            if search:
                pattern = f"%{search}%"
                query = query.filter(
                    ReportModel.name.ilike(pattern)
                    | ReportModel.report_no.ilike(pattern)
                    | ReportModel.description.ilike(pattern)
                )
            rows = query.order_by(ReportModel.created_at.desc()).all()

        if self.gate.is_admin(user):
            return [row.id for row in rows]

        visible = []
        for row in rows:
            candidate = ReportDefinition(
                id=row.id,
                tenant_id=row.tenant_id,
                name=row.id,
                created_by=row.created_by,
                permissions=PermissionSet.model_validate(json.loads(row.permissions or "{}")),
            )
            if self.gate.can("view", candidate, user):
                visible.append(row.id)
        return visible

    def update(
        self,
        report_id: str,
        changes: Union[ReportDefinition, Dict[str, Any]],
        user: UserContext,
        expected_version: Optional[int] = None
    ) -> ReportDefinition:
        """
        更新报表（后写覆盖）

        Args:
            report_id: 报表ID
            changes: 要修改的字段（字典）或完整的报表定义
            user: 调用方身份
            expected_version: 期望的当前版本号，不一致时拒绝更新

        Raises:
            InvalidStateError: 报表已归档或版本号冲突
            ValidationError: 合并后的定义不合法
        """
        if isinstance(changes, ReportDefinition):
            changes = changes.model_dump(include=set(UPDATABLE_FIELDS))
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"不允许修改的字段: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        with self.db.get_session() as session:
            report = self._load_report(session, report_id)
            current = self._to_definition(report)
            self.gate.authorize("edit", current, user)

            if current.status == "archived":
                raise InvalidStateError(f"报表已归档，不允许修改: {report_id}")
            if expected_version is not None and expected_version != current.version:
                raise InvalidStateError(
                    f"报表已被修改（当前版本 {current.version}，期望版本 {expected_version}）",
                    {"current_version": current.version, "expected_version": expected_version}
                )

            merged = current.model_copy(deep=True)
            for key, value in changes.items():
                if key == "components":
                    value = _coerce_components(value)
                elif key == "schedule_config":
                    value = _coerce(ScheduleConfig, value, key)
                elif key == "permissions":
                    value = _coerce(PermissionSet, value, key)
                elif key == "tags":
                    value = list(value or [])
                setattr(merged, key, value)
            validate_definition(merged)

            report.name = merged.name.strip()
            report.name_en = merged.name_en
            report.description = merged.description
            report.category = merged.category
            report.type = merged.type
            report.components = self._components_json(merged.components)
            report.schedule_config = _dumps(merged.schedule_config.model_dump())
            report.permissions = _dumps(merged.permissions.model_dump())
            report.tags = _dumps(_unique(merged.tags))
            report.updated_by = user.user_id
            report.version = current.version + 1
            session.flush()
            result = self._to_definition(report)

        logger.info(f"报表更新成功: id={report_id}, version={result.version}")
        return result

    def delete(self, report_id: str, user: UserContext):
        """
        删除报表及其执行记录

        Raises:
            InvalidStateError: 已归档报表保留历史，不允许删除
        """
        with self.db.get_session() as session:
            report = self._load_report(session, report_id)
            definition = self._to_definition(report)
            self.gate.authorize("delete", definition, user)

            if definition.status == "archived":
                raise InvalidStateError(f"报表已归档，不允许删除: {report_id}")

            session.query(ExecutionModel).filter(ExecutionModel.report_id == report_id).delete()
            session.delete(report)

        logger.info(f"报表删除成功: id={report_id}")

    def duplicate_report(self, report_id: str, user: UserContext) -> ReportDefinition:
        """复制报表：新编号、名称加 (copy) 后缀、组件新ID、默认私有"""
        source = self.get(report_id, user)

        duplicate = ReportDefinition(
            name=f"{source.name}{COPY_SUFFIX}",
            name_en=f"{source.name_en}{COPY_SUFFIX}" if source.name_en else None,
            description=source.description,
            category=source.category,
            type=source.type,
            components=clone_components(source.components, fresh_ids=True),
            schedule_config=source.schedule_config.model_copy(deep=True),
            permissions=PermissionSet(),
            tags=list(source.tags),
            template_id=source.template_id,
        )
        # 副本不继承定时任务
        duplicate.schedule_config.enabled = False
        return self.create(duplicate, user)

    # ============ 状态流转 ============

    def _transition(self, report_id: str, target: str, user: UserContext) -> ReportDefinition:
        with self.db.get_session() as session:
            report = self._load_report(session, report_id)
            definition = self._to_definition(report)
            self.gate.authorize("edit", definition, user)

            if report.status == target and target != "archived":
                return definition
            if target not in STATUS_TRANSITIONS.get(report.status, set()):
                raise InvalidStateError(
                    f"报表状态不允许从 {report.status} 变更为 {target}",
                    {"from": report.status, "to": target}
                )

            previous = report.status
            report.status = target
            report.updated_by = user.user_id
            session.flush()
            result = self._to_definition(report)

        logger.info(f"报表状态变更: id={report_id}, {previous} -> {target}")
        return result

    def archive(self, report_id: str, user: UserContext) -> ReportDefinition:
        return self._transition(report_id, "archived", user)

    def activate(self, report_id: str, user: UserContext) -> ReportDefinition:
        return self._transition(report_id, "active", user)

    def deactivate(self, report_id: str, user: UserContext) -> ReportDefinition:
        return self._transition(report_id, "inactive", user)

    # ============ 使用统计 ============

    def record_view(self, report_id: str, user: UserContext) -> ReportDefinition:
        """记录一次查看"""
        with self.db.get_session() as session:
            report = self._load_report(session, report_id)
            self.gate.authorize("view", self._to_definition(report), user)
            report.view_count = (report.view_count or 0) + 1
            report.last_viewed = datetime.utcnow()
            session.flush()
            return self._to_definition(report)

    def record_execution(self, report_id: str, execution_time_ms: float, finished_at: datetime):
        """
        记录一次成功执行：execute_count + 1，并更新平均执行时间（累计平均）
        """
        with self.db.get_session() as session:
            report = self._load_report(session, report_id)
            count = (report.execute_count or 0) + 1
            avg = report.avg_exec_time or 0.0
            report.execute_count = count
            report.avg_exec_time = avg + (execution_time_ms - avg) / count
            report.last_executed = finished_at

        logger.debug(f"更新报表执行统计: id={report_id}, execute_count={count}")

    def get_statistics(self, user: UserContext, popular_limit: int = 5, recent_limit: int = 10) -> ReportStatistics:
        """获取调用方可见范围内的报表统计（计数和排序在SQL中完成）"""
        visible_ids = self.visible_report_ids(user)
        templates = self.list_templates(user)
        if not visible_ids:
            return ReportStatistics(total_templates=len(templates))

        with self.db.get_session() as session:
            visible = ReportModel.id.in_(visible_ids)
            status_counts = dict(
                session.query(ReportModel.status, func.count(ReportModel.id))
                .filter(visible).group_by(ReportModel.status).all()
            )
            schedules = session.query(ReportModel.schedule_config).filter(visible).all()
            popular = session.query(ReportModel).filter(visible) \
                .order_by(ReportModel.execute_count.desc(), ReportModel.created_at.desc()) \
                .limit(popular_limit).all()

            executions = session.query(ExecutionModel).filter(ExecutionModel.report_id.in_(visible_ids))
            total_executions = executions.count()
            recent = [
                {
                    "id": e.id,
                    "execution_no": e.execution_no,
                    "report_id": e.report_id,
                    "status": e.status,
                    "execution_time_ms": e.execution_time_ms,
                    "created_at": to_iso_string(e.created_at),
                }
                for e in executions.order_by(ExecutionModel.created_at.desc()).limit(recent_limit).all()
            ]

            return ReportStatistics(
                total_reports=len(visible_ids),
                status_counts=status_counts,
                total_templates=len(templates),
                total_executions=total_executions,
                scheduled_reports=sum(
                    1 for (raw,) in schedules if json.loads(raw or "{}").get("enabled")
                ),
                popular_reports=[
                    {"id": r.id, "report_no": r.report_no, "name": r.name, "execute_count": r.execute_count or 0}
                    for r in popular
                ],
                recent_executions=recent,
            )

    def list_scheduled(self) -> List[ReportDefinition]:
        """列出所有启用定时且状态为 active 的报表（跨租户，供调度器使用）"""
        with self.db.get_session() as session:
            rows = session.query(ReportModel).filter(ReportModel.status == "active").all()
            definitions = [self._to_definition(r) for r in rows]
        return [d for d in definitions if d.schedule_config.enabled]

    # ============ 批量导入 ============

    def import_reports(self, items: List[Dict[str, Any]], user: UserContext) -> ImportResult:
        """
        批量导入报表

        单条失败不影响其他条目，失败原因记录在 errors 中
        """
        result = ImportResult()

        for item in items:
            if not isinstance(item, dict):
                result.failed += 1
                result.errors.append("导入条目格式错误")
                continue

            name = item.get("name")
            if not name:
                result.failed += 1
                result.errors.append("缺少报表名称")
                continue
            if not item.get("category"):
                result.failed += 1
                result.errors.append(f"报表 {name} 缺少分类")
                continue
            if not item.get("type"):
                result.failed += 1
                result.errors.append(f"报表 {name} 缺少类型")
                continue

            try:
                payload = {k: v for k, v in item.items() if k not in ("id", "status", "created_by")}
                self.create(payload, user)
            except ValidationError as e:
                result.failed += 1
                result.errors.append(f"导入报表 {name} 失败: {e.message}")
                continue

            result.success += 1
            result.imported_reports.append(name)

        logger.info(f"批量导入报表: success={result.success}, failed={result.failed}")
        return result

    # ============ 模板 ============

    def create_template(
        self,
        template: Union[ReportTemplate, Dict[str, Any]],
        user: Optional[UserContext] = None
    ) -> ReportTemplate:
        """
        创建模板

        user 为None时创建系统模板（无租户、无所有者）；只有管理员可以创建 is_system 模板
        """
        template = _coerce(ReportTemplate, template, "template")

        if not template.name or not template.name.strip():
            raise ValidationError("模板名称不能为空", field="name")
        if template.category not in REPORT_CATEGORIES:
            raise ValidationError(f"不支持的报表分类: {template.category}", field="category")
        if template.type not in REPORT_TYPES:
            raise ValidationError(f"不支持的报表类型: {template.type}", field="type")
        validate_components(template.components)

        is_system = template.is_system or user is None
        if is_system and user is not None and not self.gate.is_admin(user):
            raise ValidationError("只有管理员可以创建系统模板", field="is_system")

        with self.db.get_session() as session:
            model = TemplateModel(
                id=str(uuid.uuid4()),
                tenant_id=None if is_system else user.tenant_id,
                name=template.name.strip(),
                name_en=template.name_en,
                description=template.description,
                category=template.category,
                type=template.type,
                tags=_dumps(_unique(template.tags)),
                is_public=template.is_public or is_system,
                is_system=is_system,
                usage_count=0,
                components=self._components_json(normalize_order(sort_by_order(template.components))),
                created_by=None if user is None else user.user_id,
            )
            session.add(model)
            session.flush()
            result = self._to_template(model)

        logger.info(f"模板创建成功: id={result.id}, is_system={result.is_system}")
        return result

    def get_template(self, template_id: str, user: Optional[UserContext] = None) -> ReportTemplate:
        with self.db.get_session() as session:
            template = self._to_template(self._load_template(session, template_id))
        if user is not None:
            self.gate.authorize_template("view", template, user)
        return template

    def list_templates(
        self,
        user: UserContext,
        category: Optional[str] = None,
        type: Optional[str] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[ReportTemplate]:
        """列出调用方可见的模板（系统模板、公开模板、自己创建的模板）"""
        with self.db.get_session() as session:
            query = session.query(TemplateModel).filter(
                (TemplateModel.tenant_id == user.tenant_id) | (TemplateModel.tenant_id.is_(None))
            )
            if category:
                query = query.filter(TemplateModel.category == category)
            if type:
                query = query.filter(TemplateModel.type == type)
            if search:
                pattern = f"%{search}%"
                query = query.filter(
                    TemplateModel.name.ilike(pattern) | TemplateModel.description.ilike(pattern)
                )
            rows = query.order_by(TemplateModel.usage_count.desc(), TemplateModel.created_at.desc()).all()
            templates = [self._to_template(t) for t in rows]

        if tag:
            templates = [t for t in templates if tag in t.tags]
        return [t for t in templates if self.gate.can_template("view", t, user)]

    def update_template(self, template_id: str, changes: Dict[str, Any], user: UserContext) -> ReportTemplate:
        """
        更新模板

        Raises:
            PermissionDeniedError: 非管理员修改系统模板或他人模板
        """
        unknown = set(changes) - set(TEMPLATE_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"不允许修改的字段: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        with self.db.get_session() as session:
            model = self._load_template(session, template_id)
            current = self._to_template(model)
            self.gate.authorize_template("edit", current, user)

            merged = current.model_copy(deep=True)
            for key, value in changes.items():
                if key == "components":
                    value = _coerce_components(value)
                setattr(merged, key, value)

            if not merged.name or not merged.name.strip():
                raise ValidationError("模板名称不能为空", field="name")
            if merged.category not in REPORT_CATEGORIES:
                raise ValidationError(f"不支持的报表分类: {merged.category}", field="category")
            if merged.type not in REPORT_TYPES:
                raise ValidationError(f"不支持的报表类型: {merged.type}", field="type")
            validate_components(merged.components)

            model.name = merged.name.strip()
            model.name_en = merged.name_en
            model.description = merged.description
            model.category = merged.category
            model.type = merged.type
            model.tags = _dumps(_unique(merged.tags))
            model.is_public = merged.is_public
            model.components = self._components_json(normalize_order(sort_by_order(merged.components)))
            session.flush()
            result = self._to_template(model)

        logger.info(f"模板更新成功: id={template_id}")
        return result

    def delete_template(self, template_id: str, user: UserContext):
        with self.db.get_session() as session:
            model = self._load_template(session, template_id)
            self.gate.authorize_template("delete", self._to_template(model), user)
            session.delete(model)
        logger.info(f"模板删除成功: id={template_id}")

    def instantiate_from_template(
        self,
        template_id: str,
        user: UserContext,
        name: Optional[str] = None
    ) -> ReportDefinition:
        """
        从模板创建新报表

        复制模板的组件快照（生成新的组件ID），并增加模板的使用次数；模板本身的组件不变
        """
        template = self.get_template(template_id, user)
        self.gate.authorize_template("instantiate", template, user)

        definition = ReportDefinition(
            name=name or template.name,
            name_en=template.name_en,
            description=template.description,
            category=template.category,
            type=template.type,
            components=clone_components(template.components, fresh_ids=True),
            tags=list(template.tags),
            template_id=template.id,
        )
        report = self.create(definition, user)

        with self.db.get_session() as session:
            model = self._load_template(session, template_id)
            model.usage_count = (model.usage_count or 0) + 1

        logger.info(f"从模板创建报表: template_id={template_id}, report_id={report.id}")
        return report

    def save_as_template(
        self,
        report_id: str,
        user: UserContext,
        name: Optional[str] = None,
        is_public: bool = False
    ) -> ReportTemplate:
        """把报表的组件列表保存为模板"""
        report = self.get(report_id, user)
        template = ReportTemplate(
            name=name or report.name,
            name_en=report.name_en,
            description=report.description,
            category=report.category,
            type=report.type,
            tags=list(report.tags),
            is_public=is_public,
            is_system=False,
            components=clone_components(report.components, fresh_ids=True),
        )
        return self.create_template(template, user)

    def duplicate_template(self, template_id: str, user: UserContext) -> ReportTemplate:
        """复制模板：副本归调用方所有、默认私有、名称加 (copy) 后缀，系统模板复制后也是普通模板"""
        source = self.get_template(template_id, user)
        duplicate = ReportTemplate(
            name=f"{source.name}{COPY_SUFFIX}",
            name_en=f"{source.name_en}{COPY_SUFFIX}" if source.name_en else None,
            description=source.description,
            category=source.category,
            type=source.type,
            tags=list(source.tags),
            is_public=False,
            is_system=False,
            components=clone_components(source.components, fresh_ids=True),
        )
        result = self.create_template(duplicate, user)
        logger.info(f"复制模板: source={template_id}, new={result.id}")
        return result


def check_definition(payload: Union[ReportDefinition, Dict[str, Any]]) -> List[str]:
    """
    校验报表配置但不保存

    与 validate_definition 不同，这里收集所有问题（每个组件各自校验）而不是在第一个错误处停止

    Returns:
        错误消息列表，空列表表示配置合法
    """
    try:
        definition = _coerce(ReportDefinition, payload, "definition")
    except ValidationError as e:
        return [e.message]

    checks = [lambda: validate_definition(definition.model_copy(update={"components": []}, deep=True))]
    checks.extend((lambda node=node: validate_component(node)) for node in definition.components)
    # 组件ID重复
    checks.append(lambda: validate_components(definition.components))

    errors: List[str] = []
    for check in checks:
        try:
            check()
        except ValidationError as e:
            if e.message not in errors:
                errors.append(e.message)
    return errors


# 全局报表存储实例
_report_store = None


def get_report_store() -> ReportStore:
    """获取全局报表存储实例"""
    global _report_store
    if _report_store is None:
        _report_store = ReportStore()
    return _report_store
