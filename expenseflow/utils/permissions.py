"""Role to permission table, resolved once at the access-control boundary."""
from __future__ import annotations

import enum
from typing import Dict, FrozenSet

from expenseflow.models.user import UserRole


class Permission(enum.Enum):
    CREATE_COMPANY = "create_company"
    MANAGE_USERS = "manage_users"
    SET_ROLES = "set_roles"
    CONFIGURE_APPROVAL_RULES = "configure_approval_rules"
    VIEW_ALL_EXPENSES = "view_all_expenses"
    OVERRIDE_APPROVALS = "override_approvals"
    VIEW_REPORTS = "view_reports"
    MANAGE_CATEGORIES = "manage_categories"
    APPROVE_EXPENSES = "approve_expenses"
    REJECT_EXPENSES = "reject_expenses"
    VIEW_TEAM_EXPENSES = "view_team_expenses"
    ESCALATE_EXPENSES = "escalate_expenses"
    SUBMIT_EXPENSES = "submit_expenses"
    VIEW_OWN_EXPENSES = "view_own_expenses"
    TRACK_APPROVAL_STATUS = "track_approval_status"
    UPLOAD_RECEIPTS = "upload_receipts"


ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[Permission]] = {
    UserRole.ADMIN: frozenset(
        {
            Permission.CREATE_COMPANY,
            Permission.MANAGE_USERS,
            Permission.SET_ROLES,
            Permission.CONFIGURE_APPROVAL_RULES,
            Permission.VIEW_ALL_EXPENSES,
            Permission.OVERRIDE_APPROVALS,
            Permission.VIEW_REPORTS,
            Permission.MANAGE_CATEGORIES,
            # Admins are the fallback approvers.
            Permission.APPROVE_EXPENSES,
            Permission.REJECT_EXPENSES,
        }
    ),
    UserRole.MANAGER: frozenset(
        {
            Permission.APPROVE_EXPENSES,
            Permission.REJECT_EXPENSES,
            Permission.VIEW_TEAM_EXPENSES,
            Permission.ESCALATE_EXPENSES,
            Permission.VIEW_REPORTS,
            Permission.SUBMIT_EXPENSES,
            Permission.VIEW_OWN_EXPENSES,
            Permission.UPLOAD_RECEIPTS,
        }
    ),
    UserRole.EMPLOYEE: frozenset(
        {
            Permission.SUBMIT_EXPENSES,
            Permission.VIEW_OWN_EXPENSES,
            Permission.TRACK_APPROVAL_STATUS,
            Permission.UPLOAD_RECEIPTS,
        }
    ),
}


def permissions_for(role: UserRole) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS.get(role, ROLE_PERMISSIONS[UserRole.EMPLOYEE])


def has_permission(user, permission: Permission) -> bool:
    if user is None or not getattr(user, "is_authenticated", False):
        return False
    return permission in permissions_for(user.role)
