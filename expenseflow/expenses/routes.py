"""Expense submission, listing and approval routes."""
from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from math import ceil
from typing import Any, Optional

from flask import current_app, request, send_file
from flask_login import current_user
from sqlalchemy import or_

from expenseflow.errors import AuthorizationError, ValidationError
from expenseflow.models import Expense, ExpenseStatus
from expenseflow.services import expense_service
from expenseflow.utils.helpers import get_payload, json_response, optional_int, permission_required
from expenseflow.utils.permissions import Permission

from . import expenses_bp


def _filter_decimal(name: str) -> Optional[Decimal]:
    raw = request.args.get(name, "").strip()
    if not raw:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ValidationError(f"Invalid '{name}' filter.") from None


def _filter_date(name: str) -> Optional[date]:
    raw = request.args.get(name, "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Invalid '{name}' filter. Use YYYY-MM-DD.") from None


def _visible_expense(expense_id: int) -> Expense:
    expense = expense_service.get_expense(expense_id)
    if not expense_service.can_view(current_user, expense):
        raise AuthorizationError("Access denied to this expense.")
    return expense


def _approver_dict(step) -> Optional[dict]:
    if step is None:
        return None
    return step.to_dict()


@expenses_bp.route("", methods=["GET"])
@expenses_bp.route("/", methods=["GET"])
@permission_required()
def list_expenses() -> Any:
    """Paginated list of the expenses the current user may see."""
    query = expense_service.visible_expenses_query(current_user)

    status_raw = request.args.get("status", "").strip().lower()
    if status_raw:
        try:
            query = query.filter(Expense.status == ExpenseStatus(status_raw))
        except ValueError:
            raise ValidationError("Invalid 'status' filter.") from None

    category = request.args.get("category", "").strip()
    if category:
        query = query.filter(Expense.category == category)

    search = request.args.get("q", "").strip()
    if search:
        like_term = f"%{search}%"
        query = query.filter(
            or_(
                Expense.title.ilike(like_term),
                Expense.description.ilike(like_term),
                Expense.merchant.ilike(like_term),
            )
        )

    min_amount = _filter_decimal("min_amount")
    if min_amount is not None:
        query = query.filter(Expense.converted_amount >= min_amount)
    max_amount = _filter_decimal("max_amount")
    if max_amount is not None:
        query = query.filter(Expense.converted_amount <= max_amount)
    start_date = _filter_date("start_date")
    if start_date is not None:
        query = query.filter(Expense.expense_date >= start_date)
    end_date = _filter_date("end_date")
    if end_date is not None:
        query = query.filter(Expense.expense_date <= end_date)

    default_per_page = current_app.config.get("EXPENSES_PER_PAGE", 20)
    page = optional_int(request.args.get("page")) or 1
    per_page = optional_int(request.args.get("per_page")) or default_per_page
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)

    query = query.order_by(Expense.created_at.desc(), Expense.id.desc())
    total = query.count()
    pages = max(1, ceil(total / per_page)) if total else 1
    if page > pages:
        page = pages
    expenses = query.offset((page - 1) * per_page).limit(per_page).all() if total else []

    pagination = {
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": pages,
        "has_prev": page > 1,
        "has_next": page < pages,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < pages else None,
    }
    return json_response(
        {"expenses": [expense.to_dict() for expense in expenses], "pagination": pagination}
    )


@expenses_bp.route("", methods=["POST"])
@expenses_bp.route("/", methods=["POST"])
@permission_required(Permission.SUBMIT_EXPENSES)
def create_expense() -> Any:
    payload = get_payload()
    expense = expense_service.create_expense(
        employee_id=current_user.id,
        company_id=current_user.company_id,
        title=payload.get("title"),
        amount=payload.get("amount"),
        currency_code=payload.get("currency_code"),
        category=payload.get("category"),
        expense_date=payload.get("expense_date"),
        merchant=payload.get("merchant"),
        description=payload.get("description"),
    )
    return json_response(
        {"message": "Expense created.", "expense": expense.to_dict()}, status=201
    )


@expenses_bp.route("/pending", methods=["GET"])
@permission_required(Permission.APPROVE_EXPENSES)
def pending_approvals() -> Any:
    """Expenses currently waiting on the logged-in approver."""
    expenses = expense_service.pending_for_approver(current_user.id)
    return json_response({"expenses": [expense.to_dict() for expense in expenses]})


@expenses_bp.route("/<int:expense_id>", methods=["GET"])
@permission_required()
def get_expense(expense_id: int) -> Any:
    expense = _visible_expense(expense_id)
    return json_response({"expense": expense.to_dict(include_notes=True)})


@expenses_bp.route("/<int:expense_id>/submit", methods=["POST", "PUT"])
@permission_required(Permission.SUBMIT_EXPENSES)
def submit_expense(expense_id: int) -> Any:
    payload = get_payload()
    expense = expense_service.submit_expense(
        expense_id, current_user.id, expected_version=optional_int(payload.get("version"))
    )
    return json_response({"message": "Expense submitted.", "expense": expense.to_dict()})


@expenses_bp.route("/<int:expense_id>/approve", methods=["POST", "PUT"])
@permission_required(Permission.APPROVE_EXPENSES)
def approve_expense(expense_id: int) -> Any:
    payload = get_payload()
    expense = expense_service.approve_expense(
        expense_id,
        current_user.id,
        comments=payload.get("comments"),
        expected_version=optional_int(payload.get("version")),
    )
    return json_response({"message": "Expense approved.", "expense": expense.to_dict()})


@expenses_bp.route("/<int:expense_id>/reject", methods=["POST", "PUT"])
@permission_required(Permission.REJECT_EXPENSES)
def reject_expense(expense_id: int) -> Any:
    payload = get_payload()
    expense = expense_service.reject_expense(
        expense_id,
        current_user.id,
        comments=payload.get("comments"),
        expected_version=optional_int(payload.get("version")),
    )
    return json_response({"message": "Expense rejected.", "expense": expense.to_dict()})


@expenses_bp.route("/<int:expense_id>/can-approve", methods=["GET"])
@permission_required()
def can_approve(expense_id: int) -> Any:
    _visible_expense(expense_id)
    return json_response(
        {"can_approve": expense_service.can_approve(expense_id, current_user.id)}
    )


@expenses_bp.route("/<int:expense_id>/current-approver", methods=["GET"])
@permission_required()
def current_approver(expense_id: int) -> Any:
    _visible_expense(expense_id)
    return json_response(
        {
            "current_approver": _approver_dict(expense_service.current_approver(expense_id)),
            "next_approver": _approver_dict(expense_service.next_approver(expense_id)),
        }
    )


@expenses_bp.route("/<int:expense_id>/notes", methods=["POST"])
@permission_required()
def add_note(expense_id: int) -> Any:
    payload = get_payload()
    note = expense_service.add_note(expense_id, current_user.id, payload.get("content"))
    return json_response({"message": "Note added.", "note": note.to_dict()}, status=201)


@expenses_bp.route("/<int:expense_id>/receipts", methods=["POST"])
@permission_required(Permission.UPLOAD_RECEIPTS)
def upload_receipt(expense_id: int) -> Any:
    """Attach a receipt file (multipart field ``receipt``) and return OCR hints."""
    receipt = expense_service.attach_receipt(
        expense_id, current_user.id, request.files.get("receipt")
    )
    return json_response({"message": "Receipt uploaded.", "receipt": receipt.to_dict()}, status=201)


@expenses_bp.route("/receipts/<path:filename>", methods=["GET"])
@permission_required()
def download_receipt(filename: str) -> Any:
    receipt = expense_service.receipt_for_download(filename, current_user)
    return send_file(
        receipt.path,
        mimetype=receipt.mimetype,
        as_attachment=True,
        download_name=receipt.original_name,
    )


@expenses_bp.route("/<int:expense_id>/receipts/<int:receipt_id>", methods=["DELETE"])
@permission_required(Permission.UPLOAD_RECEIPTS)
def delete_receipt(expense_id: int, receipt_id: int) -> Any:
    """Remove a receipt while the expense is still a draft."""
    expense_service.delete_receipt(expense_id, receipt_id, current_user.id)
    return json_response({"message": "Receipt deleted."})
