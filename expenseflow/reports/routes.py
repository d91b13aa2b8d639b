"""Reporting routes: read-only aggregates over the expenses a user can see."""
from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import request
from flask_login import current_user
from sqlalchemy import case, extract, func, or_

from expenseflow import db
from expenseflow.errors import ValidationError
from expenseflow.models import ApprovalStep, Expense, ExpenseStatus, StepStatus, User, UserRole
from expenseflow.services import expense_service
from expenseflow.utils.helpers import json_response, permission_required
from expenseflow.utils.permissions import Permission, has_permission

from . import reports_bp


def _date_arg(name: str) -> Optional[date]:
    raw = request.args.get(name, "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Invalid '{name}' filter. Use YYYY-MM-DD.") from None


def _scoped_expense_ids():
    """Subquery of visible expense ids, narrowed by optional date filters."""
    query = expense_service.visible_expenses_query(current_user)
    start_date = _date_arg("start_date")
    if start_date is not None:
        query = query.filter(Expense.expense_date >= start_date)
    end_date = _date_arg("end_date")
    if end_date is not None:
        query = query.filter(Expense.expense_date <= end_date)
    return query.with_entities(Expense.id)


def _money(value: Any) -> str:
    return str(Decimal(value or 0).quantize(Decimal("0.01")))


@reports_bp.route("/summary", methods=["GET"])
@permission_required(Permission.VIEW_REPORTS)
def summary() -> Any:
    """Expense counts and converted totals per status."""
    rows = (
        db.session.query(
            Expense.status,
            func.count(Expense.id),
            func.coalesce(func.sum(Expense.converted_amount), 0),
        )
        .filter(Expense.id.in_(_scoped_expense_ids()))
        .group_by(Expense.status)
        .all()
    )

    by_status: Dict[str, Dict[str, Any]] = {
        status.value: {"count": 0, "total": _money(0)} for status in ExpenseStatus
    }
    count = 0
    total = Decimal("0")
    for status, status_count, status_total in rows:
        by_status[status.value] = {"count": status_count, "total": _money(status_total)}
        count += status_count
        total += Decimal(status_total or 0)

    return json_response(
        {
            "currency_code": current_user.company.currency_code,
            "count": count,
            "total": _money(total),
            "by_status": by_status,
        }
    )


@reports_bp.route("/by-category", methods=["GET"])
@permission_required(Permission.VIEW_REPORTS)
def by_category() -> Any:
    rows = (
        db.session.query(
            Expense.category,
            func.count(Expense.id),
            func.coalesce(func.sum(Expense.converted_amount), 0),
        )
        .filter(Expense.id.in_(_scoped_expense_ids()))
        .group_by(Expense.category)
        .order_by(Expense.category)
        .all()
    )
    return json_response(
        {
            "currency_code": current_user.company.currency_code,
            "categories": [
                {"category": category, "count": count, "total": _money(total)}
                for category, count, total in rows
            ],
        }
    )


# Dashboard and analytics -----------------------------------------------------


def _trend_start(today: date) -> date:
    """First day of the month eleven months back, so the trend spans twelve months."""
    year, month = today.year, today.month - 11
    if month <= 0:
        month += 12
        year -= 1
    return date(year, month, 1)


def _status_totals(scoped) -> Dict[str, Dict[str, Any]]:
    totals = {status.value: {"count": 0, "total": Decimal("0")} for status in ExpenseStatus}
    for status, status_count, status_total in (
        db.session.query(
            Expense.status,
            func.count(Expense.id),
            func.coalesce(func.sum(Expense.converted_amount), 0),
        )
        .filter(Expense.id.in_(scoped))
        .group_by(Expense.status)
        .all()
    ):
        totals[status.value] = {"count": status_count, "total": Decimal(status_total or 0)}
    return totals


@reports_bp.route("/dashboard", methods=["GET"])
@permission_required()
def dashboard() -> Any:
    """Overview for the logged-in user, scoped to the expenses they can see."""
    scoped = _scoped_expense_ids()
    totals = _status_totals(scoped)

    overview: Dict[str, Any] = {
        "total_expenses": sum(entry["count"] for entry in totals.values()),
        "total_amount": _money(sum(entry["total"] for entry in totals.values())),
    }
    for status in (ExpenseStatus.PENDING_APPROVAL, ExpenseStatus.APPROVED, ExpenseStatus.REJECTED):
        key = "pending" if status is ExpenseStatus.PENDING_APPROVAL else status.value
        overview[f"{key}_count"] = totals[status.value]["count"]
        overview[f"{key}_amount"] = _money(totals[status.value]["total"])

    category_rows = (
        db.session.query(
            Expense.category,
            func.count(Expense.id),
            func.coalesce(func.sum(Expense.converted_amount), 0),
        )
        .filter(Expense.id.in_(scoped))
        .group_by(Expense.category)
        .order_by(func.coalesce(func.sum(Expense.converted_amount), 0).desc(), Expense.category)
        .all()
    )

    year = extract("year", Expense.expense_date)
    month = extract("month", Expense.expense_date)
    trend_rows = (
        db.session.query(
            year,
            month,
            func.count(Expense.id),
            func.coalesce(func.sum(Expense.converted_amount), 0),
        )
        .filter(Expense.id.in_(scoped), Expense.expense_date >= _trend_start(date.today()))
        .group_by(year, month)
        .order_by(year, month)
        .all()
    )

    recent = (
        Expense.query.filter(Expense.id.in_(scoped))
        .order_by(Expense.created_at.desc(), Expense.id.desc())
        .limit(5)
        .all()
    )

    pending_approvals = 0
    if has_permission(current_user, Permission.APPROVE_EXPENSES):
        pending_approvals = len(expense_service.pending_for_approver(current_user.id))

    return json_response(
        {
            "currency_code": current_user.company.currency_code,
            "overview": overview,
            "category_breakdown": [
                {"category": category, "count": count, "total": _money(total)}
                for category, count, total in category_rows
            ],
            "monthly_trend": [
                {"year": int(y), "month": int(m), "count": count, "total": _money(total)}
                for y, m, count, total in trend_rows
            ],
            "recent_expenses": [
                {
                    "id": expense.id,
                    "title": expense.title,
                    "employee_name": expense.employee.full_name if expense.employee else None,
                    "converted_amount": _money(expense.converted_amount),
                    "category": expense.category,
                    "status": expense.status.value,
                    "created_at": expense.created_at.isoformat() if expense.created_at else None,
                }
                for expense in recent
            ],
            "pending_approvals": pending_approvals,
        }
    )


def _seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    # Stored timestamps are UTC; some backends drop the offset.
    return (end.replace(tzinfo=None) - start.replace(tzinfo=None)).total_seconds()


@reports_bp.route("/approvals", methods=["GET"])
@permission_required(Permission.VIEW_REPORTS)
def approvals() -> Any:
    """Turnaround times, per-approver outcomes and chain-length breakdown for decided expenses."""
    query = expense_service.visible_expenses_query(current_user).filter(
        Expense.status.in_((ExpenseStatus.APPROVED, ExpenseStatus.REJECTED))
    )
    start_date = _date_arg("start_date")
    if start_date is not None:
        query = query.filter(Expense.submitted_at >= datetime.combine(start_date, time.min))
    end_date = _date_arg("end_date")
    if end_date is not None:
        query = query.filter(Expense.submitted_at <= datetime.combine(end_date, time.max))
    decided = query.order_by(Expense.id.asc()).all()

    durations: Dict[str, List[float]] = {}
    by_length: Dict[int, Dict[str, int]] = {}
    for expense in decided:
        seconds = _seconds_between(
            expense.submitted_at, expense.workflow_completed_at or expense.rejected_at
        )
        if seconds is not None:
            durations.setdefault(expense.status.value, []).append(seconds)
        bucket = by_length.setdefault(
            len(expense.steps), {"steps": len(expense.steps), "count": 0, "approved": 0, "rejected": 0}
        )
        bucket["count"] += 1
        bucket[expense.status.value] += 1

    approval_times = [
        {
            "status": status,
            "count": len(values),
            "avg_seconds": sum(values) / len(values),
            "min_seconds": min(values),
            "max_seconds": max(values),
        }
        for status, values in sorted(durations.items())
    ]

    approved_steps = func.sum(case((ApprovalStep.status == StepStatus.APPROVED, 1), else_=0))
    rejected_steps = func.sum(case((ApprovalStep.status == StepStatus.REJECTED, 1), else_=0))
    performance_rows = (
        db.session.query(
            User.id,
            User.first_name,
            User.last_name,
            User.email,
            func.count(ApprovalStep.id),
            approved_steps,
            rejected_steps,
        )
        .join(ApprovalStep, ApprovalStep.approver_id == User.id)
        .filter(
            ApprovalStep.expense_id.in_([expense.id for expense in decided]),
            ApprovalStep.status.in_((StepStatus.APPROVED, StepStatus.REJECTED)),
        )
        .group_by(User.id, User.first_name, User.last_name, User.email)
        .order_by(func.count(ApprovalStep.id).desc(), User.id.asc())
        .all()
    )
    approver_performance = [
        {
            "approver": {"id": user_id, "full_name": f"{first} {last}", "email": email},
            "total_decisions": total,
            "approved_count": int(approved or 0),
            "rejected_count": int(rejected or 0),
            "approval_rate": round(100 * int(approved or 0) / total, 2) if total else 0.0,
        }
        for user_id, first, last, email, total, approved, rejected in performance_rows
    ]

    return json_response(
        {
            "approval_times": approval_times,
            "approver_performance": approver_performance,
            "workflow_analytics": [by_length[length] for length in sorted(by_length)],
        }
    )


@reports_bp.route("/employees", methods=["GET"])
@permission_required(Permission.VIEW_REPORTS)
def employees() -> Any:
    """Per-employee expense totals for active users the caller oversees."""
    users_query = User.query.filter_by(company_id=current_user.company_id, is_active=True)
    if current_user.role is UserRole.MANAGER:
        users_query = users_query.filter(
            or_(User.manager_id == current_user.id, User.id == current_user.id)
        )
    department = request.args.get("department", "").strip()
    if department:
        users_query = users_query.filter(User.department == department)
    people = users_query.order_by(User.id.asc()).all()

    expense_query = db.session.query(
        Expense.employee_id,
        Expense.status,
        func.count(Expense.id),
        func.coalesce(func.sum(Expense.converted_amount), 0),
    ).filter(Expense.employee_id.in_([person.id for person in people]))
    start_date = _date_arg("start_date")
    if start_date is not None:
        expense_query = expense_query.filter(Expense.expense_date >= start_date)
    end_date = _date_arg("end_date")
    if end_date is not None:
        expense_query = expense_query.filter(Expense.expense_date <= end_date)

    stats: Dict[int, Dict[str, Any]] = {
        person.id: {"count": 0, "total": Decimal("0"), "by_status": {}} for person in people
    }
    for employee_id, status, count, total in expense_query.group_by(
        Expense.employee_id, Expense.status
    ).all():
        entry = stats[employee_id]
        entry["count"] += count
        entry["total"] += Decimal(total or 0)
        entry["by_status"][status.value] = count

    rows = []
    for person in people:
        entry = stats[person.id]
        rows.append(
            {
                "user": {
                    "id": person.id,
                    "full_name": person.full_name,
                    "email": person.email,
                    "department": person.department,
                    "role": person.role.value,
                },
                "total_expenses": entry["count"],
                "total_amount": _money(entry["total"]),
                "pending_expenses": entry["by_status"].get(ExpenseStatus.PENDING_APPROVAL.value, 0),
                "approved_expenses": entry["by_status"].get(ExpenseStatus.APPROVED.value, 0),
                "rejected_expenses": entry["by_status"].get(ExpenseStatus.REJECTED.value, 0),
                "avg_expense_amount": _money(entry["total"] / entry["count"]) if entry["count"] else None,
            }
        )
    rows.sort(key=lambda row: Decimal(row["total_amount"]), reverse=True)
    return json_response({"currency_code": current_user.company.currency_code, "employees": rows})
