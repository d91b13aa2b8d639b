"""Administrative routes: users, company settings, categories and approval rules."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from flask import current_app
from flask_login import current_user
from sqlalchemy import func

from expenseflow import db
from expenseflow.errors import ExternalServiceDegraded, NotFoundError, ValidationError
from expenseflow.models import (
    ApprovalRule,
    ApprovalRuleType,
    AuditLog,
    Company,
    ExpenseCategory,
    RuleApprover,
    User,
    UserRole,
)
from expenseflow.models.company import EDITABLE_SETTINGS
from expenseflow.services import approval_engine, currency_service, expense_service
from expenseflow.utils.helpers import (
    get_payload,
    json_response,
    optional_int,
    parse_flag,
    permission_required,
    text_fields,
)
from expenseflow.utils.permissions import Permission

from . import admin_bp


def _company_user(user_id: Any) -> User:
    user = db.session.get(User, optional_int(user_id)) if optional_int(user_id) else None
    if user is None or user.company_id != current_user.company_id:
        raise NotFoundError("User not found.")
    return user


def _manager_for(manager_id: Any, user: Optional[User] = None) -> Optional[User]:
    if manager_id in (None, ""):
        return None
    manager = db.session.get(User, optional_int(manager_id)) if optional_int(manager_id) else None
    if manager is None or manager.company_id != current_user.company_id:
        raise ValidationError("Invalid manager selected.")
    if user is not None and manager.id == user.id:
        raise ValidationError("A user cannot be their own manager.")
    if manager.role is UserRole.EMPLOYEE:
        raise ValidationError("Manager must have the manager or admin role.")
    return manager


def _decimal(value: Any, field: str, minimum: Decimal = Decimal("0")) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"'{field}' must be a number.") from None
    if not number.is_finite() or number < minimum:
        raise ValidationError(f"'{field}' must be at least {minimum}.")
    return number


# Users -----------------------------------------------------------------------


@admin_bp.route("/users", methods=["GET"])
@permission_required(Permission.MANAGE_USERS)
def users() -> Any:
    """List all users in the admin's company."""
    company_users = (
        User.query.filter_by(company_id=current_user.company_id).order_by(User.id.asc()).all()
    )
    return json_response({"users": [user.to_dict() for user in company_users]})


@admin_bp.route("/users", methods=["POST"])
@permission_required(Permission.MANAGE_USERS)
def create_user() -> Any:
    """Create a new employee, manager or admin."""
    payload = get_payload()
    required_fields = {"first_name", "last_name", "email", "password"}
    if missing := {field for field in required_fields if not payload.get(field)}:
        return json_response({"error": f"Missing fields: {', '.join(sorted(missing))}"}, status=400)
    if wrong := text_fields(payload, required_fields | {"department"}):
        return json_response({"error": f"Fields must be strings: {', '.join(wrong)}"}, status=400)

    email = payload["email"].strip().lower()
    if User.query.filter_by(email=email).first():
        return json_response({"error": "Email already exists."}, status=409)

    try:
        role = UserRole(str(payload.get("role", UserRole.EMPLOYEE.value)).lower())
    except ValueError:
        return json_response({"error": "Unsupported role."}, status=400)

    manager = _manager_for(payload.get("manager_id"))

    new_user = User(
        first_name=payload["first_name"].strip(),
        last_name=payload["last_name"].strip(),
        email=email,
        role=role,
        company_id=current_user.company_id,
        manager_id=manager.id if manager else None,
        department=payload.get("department"),
        is_active=parse_flag(payload.get("is_active", True), "is_active"),
    )
    new_user.set_password(payload["password"])
    db.session.add(new_user)
    db.session.flush()
    AuditLog.record("user", new_user.id, "created", user_id=current_user.id, role=role.value)
    db.session.commit()

    return json_response({"message": "User created.", "user": new_user.to_dict()}, status=201)


@admin_bp.route("/users/<int:user_id>", methods=["PUT"])
@permission_required(Permission.MANAGE_USERS)
def update_user(user_id: int) -> Any:
    """Change a user's role, manager, department or active flag."""
    user = _company_user(user_id)
    payload = get_payload()

    if "role" in payload:
        try:
            user.role = UserRole(str(payload["role"]).lower())
        except ValueError:
            raise ValidationError("Unsupported role.") from None
    if "manager_id" in payload:
        manager = _manager_for(payload["manager_id"], user=user)
        user.manager_id = manager.id if manager else None
    if "department" in payload:
        user.department = payload["department"]
    if "is_active" in payload:
        user.is_active = parse_flag(payload["is_active"], "is_active")

    AuditLog.record("user", user.id, "updated", user_id=current_user.id, fields=sorted(payload))
    db.session.commit()
    return json_response({"message": "User updated.", "user": user.to_dict()})


def _user_summary(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "full_name": user.full_name,
        "email": user.email,
        "role": user.role.value,
    }


@admin_bp.route("/users/<int:user_id>", methods=["GET"])
@permission_required()
def user_detail(user_id: int) -> Any:
    """A colleague's profile with their manager and direct reports."""
    user = _company_user(user_id)
    body = user.to_dict()
    body["manager"] = _user_summary(user.manager) if user.manager else None
    body["subordinates"] = [_user_summary(member) for member in user.subordinates]
    return json_response({"user": body})


@admin_bp.route("/users/<int:user_id>", methods=["DELETE"])
@permission_required(Permission.MANAGE_USERS)
def deactivate_user(user_id: int) -> Any:
    """Soft delete: the account is deactivated and its email released."""
    user = _company_user(user_id)
    if user.id == current_user.id:
        return json_response({"error": "You cannot deactivate your own account."}, status=400)
    if any(member.is_active for member in user.subordinates):
        return json_response(
            {"error": "Cannot deactivate a user with active reports. Reassign them first."},
            status=400,
        )

    user.is_active = False
    user.email = f"deleted_{user.id}_{user.email}"
    AuditLog.record("user", user.id, "deactivated", user_id=current_user.id)
    db.session.commit()
    current_app.logger.info("User %s deactivated by %s", user.id, current_user.id)
    return json_response({"message": "User deactivated.", "user": user.to_dict()})


@admin_bp.route("/users/managers", methods=["GET"])
@permission_required(Permission.MANAGE_USERS)
def manager_choices() -> Any:
    """Active users who may be assigned as someone's manager."""
    managers = (
        User.query.filter(
            User.company_id == current_user.company_id,
            User.role.in_((UserRole.MANAGER, UserRole.ADMIN)),
            User.is_active.is_(True),
        )
        .order_by(User.first_name.asc(), User.id.asc())
        .all()
    )
    return json_response({"managers": [_user_summary(manager) for manager in managers]})


@admin_bp.route("/users/stats", methods=["GET"])
@permission_required(Permission.MANAGE_USERS)
def user_stats() -> Any:
    """Head counts by role and activity."""
    stats = {"total_users": 0, "active_users": 0}
    stats.update({f"{role.value}_count": 0 for role in UserRole})
    for role, is_active, count in (
        db.session.query(User.role, User.is_active, func.count(User.id))
        .filter(User.company_id == current_user.company_id)
        .group_by(User.role, User.is_active)
        .all()
    ):
        stats["total_users"] += count
        stats[f"{role.value}_count"] += count
        if is_active:
            stats["active_users"] += count
    return json_response({"stats": stats})


# Company settings -------------------------------------------------------------


@admin_bp.route("/company", methods=["GET"])
@permission_required(Permission.CREATE_COMPANY)
def company() -> Any:
    return json_response({"company": current_user.company.to_dict()})


@admin_bp.route("/company", methods=["PUT"])
@permission_required(Permission.CREATE_COMPANY)
def update_company() -> Any:
    """Update company name, country and approval settings."""
    payload = get_payload()
    company = current_user.company

    if wrong := text_fields(payload, ("name", "country")):
        raise ValidationError(f"Fields must be strings: {', '.join(wrong)}")
    name = (payload.get("name") or "").strip()
    if name and name != company.name:
        if Company.query.filter(Company.name == name, Company.id != company.id).first():
            return json_response({"error": "Company already exists."}, status=409)
        company.name = name
    if payload.get("country"):
        company.country = payload["country"].strip()

    settings: Dict[str, Any] = payload.get("settings") or {}
    if not isinstance(settings, dict):
        raise ValidationError("'settings' must be an object.")
    unknown = set(settings) - set(EDITABLE_SETTINGS)
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")

    if "is_manager_approver_enabled" in settings:
        company.is_manager_approver_enabled = parse_flag(
            settings["is_manager_approver_enabled"], "is_manager_approver_enabled"
        )
    if "max_expense_amount" in settings:
        company.max_expense_amount = _decimal(settings["max_expense_amount"], "max_expense_amount")
    if "auto_approval_limit" in settings:
        company.auto_approval_limit = _decimal(settings["auto_approval_limit"], "auto_approval_limit") or 0
    if "allowed_file_types" in settings:
        if not isinstance(settings["allowed_file_types"], list):
            raise ValidationError("'allowed_file_types' must be a list.")
        company.allowed_file_types = [str(value) for value in settings["allowed_file_types"]]
    if "max_file_size" in settings:
        size = optional_int(settings["max_file_size"])
        if size is None or size <= 0:
            raise ValidationError("'max_file_size' must be a positive integer.")
        company.max_file_size = size

    AuditLog.record("company", company.id, "settings_updated", user_id=current_user.id)
    db.session.commit()
    return json_response({"message": "Company updated.", "company": company.to_dict()})


# Categories ------------------------------------------------------------------


@admin_bp.route("/categories", methods=["GET"])
@permission_required(Permission.MANAGE_CATEGORIES)
def categories() -> Any:
    return json_response(
        {"categories": [category.to_dict() for category in current_user.company.categories]}
    )


@admin_bp.route("/categories", methods=["POST"])
@permission_required(Permission.MANAGE_CATEGORIES)
def create_category() -> Any:
    payload = get_payload()
    if wrong := text_fields(payload, ("name", "description")):
        return json_response({"error": f"Fields must be strings: {', '.join(wrong)}"}, status=400)
    name = (payload.get("name") or "").strip()
    if not name:
        return json_response({"error": "'name' is required."}, status=400)

    company = current_user.company
    if any(category.name.lower() == name.lower() for category in company.categories):
        return json_response({"error": "Category already exists."}, status=400)

    category = ExpenseCategory(name=name, description=payload.get("description") or "", is_active=True)
    company.categories.append(category)
    db.session.commit()
    return json_response({"message": "Category added.", "category": category.to_dict()}, status=201)


@admin_bp.route("/categories/<int:category_id>", methods=["PUT"])
@permission_required(Permission.MANAGE_CATEGORIES)
def update_category(category_id: int) -> Any:
    category = db.session.get(ExpenseCategory, category_id)
    if category is None or category.company_id != current_user.company_id:
        return json_response({"error": "Category not found."}, status=404)

    payload = get_payload()
    if wrong := text_fields(payload, ("name", "description")):
        return json_response({"error": f"Fields must be strings: {', '.join(wrong)}"}, status=400)
    name = (payload.get("name") or "").strip()
    if name and name.lower() != category.name.lower():
        if any(other.name.lower() == name.lower() for other in current_user.company.categories):
            return json_response({"error": "Category already exists."}, status=400)
    if name:
        category.name = name
    if "description" in payload:
        category.description = payload["description"]
    if "is_active" in payload:
        category.is_active = parse_flag(payload["is_active"], "is_active")

    db.session.commit()
    return json_response({"message": "Category updated.", "category": category.to_dict()})


# Approval rules -------------------------------------------------------------


def _rule_approvers(raw: Any) -> List[RuleApprover]:
    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValidationError("'specific_approvers' must be a list.")

    approvers: List[RuleApprover] = []
    for position, entry in enumerate(raw):
        if isinstance(entry, dict):
            user_id = entry.get("user_id")
            auto_approve = parse_flag(entry.get("auto_approve", False), "auto_approve")
        else:
            user_id, auto_approve = entry, False
        user = db.session.get(User, optional_int(user_id)) if optional_int(user_id) else None
        if user is None or user.company_id != current_user.company_id:
            raise ValidationError(f"Approver {user_id} does not belong to this company.")
        approvers.append(RuleApprover(user_id=user.id, auto_approve=auto_approve, position=position))
    return approvers


def _apply_rule_fields(rule: ApprovalRule, payload: Dict[str, Any]) -> None:
    if "name" in payload:
        if not str(payload["name"] or "").strip():
            raise ValidationError("'name' is required.")
        rule.name = str(payload["name"]).strip()
    if "rule_type" in payload:
        try:
            rule.rule_type = ApprovalRuleType(str(payload["rule_type"]).lower())
        except ValueError:
            raise ValidationError("Invalid rule_type.") from None
    if "percentage" in payload:
        percentage = _decimal(payload["percentage"], "percentage")
        if percentage is not None and percentage > 100:
            raise ValidationError("'percentage' must be between 0 and 100.")
        rule.percentage = percentage
    if "min_amount" in payload:
        rule.min_amount = _decimal(payload["min_amount"], "min_amount") or 0
    if "max_amount" in payload:
        rule.max_amount = _decimal(payload["max_amount"], "max_amount")
    if "categories" in payload:
        if not isinstance(payload["categories"], list):
            raise ValidationError("'categories' must be a list.")
        rule.categories = [str(name) for name in payload["categories"]]
    if "specific_approvers" in payload:
        rule.approvers = _rule_approvers(payload["specific_approvers"])
    if "is_active" in payload:
        rule.is_active = parse_flag(payload["is_active"], "is_active")

    if rule.rule_type is None or not rule.name:
        raise ValidationError("'name' and 'rule_type' are required.")
    if rule.rule_type is ApprovalRuleType.PERCENTAGE and rule.percentage is None:
        raise ValidationError("Percentage is required for percentage type rules.")
    if rule.rule_type is ApprovalRuleType.SPECIFIC and not rule.approvers:
        raise ValidationError("Specific approvers are required for specific type rules.")
    if rule.max_amount is not None and rule.max_amount < (rule.min_amount or 0):
        raise ValidationError("'max_amount' must not be below 'min_amount'.")


@admin_bp.route("/approval-rules", methods=["GET"])
@permission_required(Permission.CONFIGURE_APPROVAL_RULES)
def approval_rules() -> Any:
    """List the company's approval rules in evaluation order."""
    return json_response({"rules": [rule.to_dict() for rule in current_user.company.approval_rules]})


@admin_bp.route("/approval-rules", methods=["POST"])
@permission_required(Permission.CONFIGURE_APPROVAL_RULES)
def create_rule() -> Any:
    """Append an approval rule; it is evaluated after the existing ones."""
    payload = get_payload()
    company = current_user.company
    last_position = max((rule.position for rule in company.approval_rules), default=-1)

    rule = ApprovalRule(company_id=company.id, position=last_position + 1, min_amount=0, categories=[])
    _apply_rule_fields(rule, payload)

    db.session.add(rule)
    db.session.flush()
    AuditLog.record("approval_rule", rule.id, "created", user_id=current_user.id)
    db.session.commit()
    current_app.logger.info("Approval rule %s created for company %s", rule.id, company.id)

    return json_response({"message": "Approval rule created.", "rule": rule.to_dict()}, status=201)


@admin_bp.route("/approval-rules/<int:rule_id>", methods=["PUT"])
@permission_required(Permission.CONFIGURE_APPROVAL_RULES)
def update_rule(rule_id: int) -> Any:
    """Edit a rule. In-flight expenses keep the steps they were created with."""
    rule = db.session.get(ApprovalRule, rule_id)
    if rule is None or rule.company_id != current_user.company_id:
        return json_response({"error": "Approval rule not found."}, status=404)

    _apply_rule_fields(rule, get_payload())
    AuditLog.record("approval_rule", rule.id, "updated", user_id=current_user.id)
    db.session.commit()
    return json_response({"message": "Approval rule updated.", "rule": rule.to_dict()})


@admin_bp.route("/approval-rules/preview", methods=["POST"])
@permission_required(Permission.CONFIGURE_APPROVAL_RULES)
def preview_rules() -> Any:
    """Show which rule an amount (in base currency) and category would select."""
    payload = get_payload()
    amount = _decimal(payload.get("amount"), "amount")
    category = payload.get("category")
    if amount is None or not category:
        return json_response({"error": "'amount' and 'category' are required."}, status=400)

    organization = expense_service.organization_snapshot(current_user.company)
    return json_response(
        {"evaluation_preview": approval_engine.evaluate_rules(organization, amount, category)}
    )


# Reference data --------------------------------------------------------------


@admin_bp.route("/currencies", methods=["GET"])
@permission_required()
def currencies() -> Any:
    """Exchange rates against the company's base currency."""
    return json_response(currency_service.list_currencies(current_user.company.currency_code))


@admin_bp.route("/countries", methods=["GET"])
@permission_required()
def countries() -> Any:
    try:
        listing = currency_service.list_countries()
    except ExternalServiceDegraded as exc:
        current_app.logger.warning("Country list unavailable: %s", exc.message)
        return json_response({"error": "Failed to fetch countries data."}, status=503)
    return json_response({"countries": listing})
