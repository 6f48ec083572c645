"""
权限校验
根据报表的权限集合和调用方身份判断 view / edit / trigger / export / delete 操作是否允许
"""
import os
from typing import Optional, Set

from .dto import ReportDefinition, ReportTemplate, UserContext
from .errors import PermissionDeniedError, ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

REPORT_ACTIONS = ("view", "edit", "trigger", "export", "delete")
TEMPLATE_ACTIONS = ("view", "edit", "delete", "instantiate")


def _admin_roles_from_env() -> Set[str]:
    raw = os.getenv("REPORT_ADMIN_ROLES", "admin,superadmin")
    return {role.strip().lower() for role in raw.split(",") if role.strip()}


class PermissionGate:
    """权限门"""

    def __init__(self, admin_roles: Optional[Set[str]] = None):
        """
        初始化权限门

        Args:
            admin_roles: 管理员角色集合，默认从环境变量 REPORT_ADMIN_ROLES 读取
        """
        self.admin_roles = {r.lower() for r in admin_roles} if admin_roles else _admin_roles_from_env()

    def is_admin(self, user: UserContext) -> bool:
        return (user.role or "").lower() in self.admin_roles

    def can(self, action: str, report: ReportDefinition, user: UserContext) -> bool:
        """
        判断调用方能否对报表执行操作

        规则：
        - view / export: 公开报表、所有者、view_users 或 edit_users 成员、管理员
        - edit / trigger / delete: 所有者、edit_users 成员、管理员
        """
        if action not in REPORT_ACTIONS:
            raise ValidationError(f"未知的操作: {action}", field="action")

        # 跨租户一律拒绝（管理员也不例外）
        if report.tenant_id != user.tenant_id:
            return False

        if self.is_admin(user):
            return True

        is_owner = report.created_by is not None and report.created_by == user.user_id
        perms = report.permissions
        is_editor = user.user_id in perms.edit_users

        if action in ("view", "export"):
            return perms.is_public or is_owner or is_editor or user.user_id in perms.view_users

        return is_owner or is_editor

    def authorize(self, action: str, report: ReportDefinition, user: UserContext):
        """
        校验权限，不通过时抛出 PermissionDeniedError

        Raises:
            PermissionDeniedError: 调用方无权执行该操作
        """
        if not self.can(action, report, user):
            logger.warning(
                f"权限拒绝: action={action}, report_id={report.id}, "
                f"user={user.user_id}, role={user.role}"
            )
            raise PermissionDeniedError(action, report.id, user.user_id)

    def can_template(self, action: str, template: ReportTemplate, user: UserContext) -> bool:
        """
        判断调用方能否对模板执行操作

        系统模板除管理员外任何人都不能编辑或删除
        """
        if action not in TEMPLATE_ACTIONS:
            raise ValidationError(f"未知的操作: {action}", field="action")

        # 系统模板没有租户；其他模板只在所属租户内可见
        if template.tenant_id is not None and template.tenant_id != user.tenant_id:
            return False

        if self.is_admin(user):
            return True

        is_owner = template.created_by is not None and template.created_by == user.user_id

        if action in ("edit", "delete"):
            if template.is_system:
                return False
            return is_owner

        # view / instantiate
        return template.is_system or template.is_public or is_owner

    def authorize_template(self, action: str, template: ReportTemplate, user: UserContext):
        if not self.can_template(action, template, user):
            logger.warning(
                f"模板权限拒绝: action={action}, template_id={template.id}, user={user.user_id}"
            )
            raise PermissionDeniedError(action, template.id, user.user_id)


# 全局权限门实例
_permission_gate = None


def get_permission_gate() -> PermissionGate:
    """获取全局权限门实例"""
    global _permission_gate
    if _permission_gate is None:
        _permission_gate = PermissionGate()
    return _permission_gate
