"""Expense lifecycle operations.

This module is the only writer of expense status and workflow fields. Each
operation loads the expense, hands an immutable snapshot to
:mod:`expenseflow.services.approval_engine`, and writes the returned
snapshot back in a single transaction guarded by the row's ``version``.
"""
from __future__ import annotations

import logging
import os
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from expenseflow import db
from expenseflow.errors import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
    NotOwnerError,
    ValidationError,
)
from expenseflow.models import (
    ApprovalRule,
    ApprovalStep,
    AuditLog,
    Company,
    Expense,
    ExpenseNote,
    ExpenseStatus,
    Receipt,
    StepStatus,
    User,
    UserRole,
)
from expenseflow.services import approval_engine, currency_service, ocr_service
from expenseflow.services.snapshots import (
    ExpenseDraft,
    ExpenseSnapshot,
    OrganizationSnapshot,
    RuleApproverSpec,
    RuleSpec,
    StepSnapshot,
    WorkflowSnapshot,
)

logger = logging.getLogger(__name__)


# Snapshot conversion --------------------------------------------------------


def rule_spec(rule: ApprovalRule) -> RuleSpec:
    return RuleSpec(
        rule_type=rule.rule_type,
        name=rule.name,
        percentage=Decimal(rule.percentage) if rule.percentage is not None else None,
        approvers=tuple(
            RuleApproverSpec(user_id=entry.user_id, auto_approve=entry.auto_approve)
            for entry in rule.approvers
        ),
        min_amount=Decimal(rule.min_amount or 0),
        max_amount=Decimal(rule.max_amount) if rule.max_amount is not None else None,
        categories=tuple(rule.categories or ()),
        is_active=rule.is_active,
    )


def organization_snapshot(company: Company) -> OrganizationSnapshot:
    admins = (
        User.query.filter_by(company_id=company.id, role=UserRole.ADMIN, is_active=True)
        .order_by(User.id.asc())
        .all()
    )
    return OrganizationSnapshot(
        company_id=company.id,
        is_manager_approver_enabled=company.is_manager_approver_enabled,
        rules=tuple(rule_spec(rule) for rule in company.approval_rules),
        admin_ids=tuple(admin.id for admin in admins),
    )


def snapshot_of(expense: Expense) -> ExpenseSnapshot:
    workflow = WorkflowSnapshot(
        current_step=expense.current_step,
        steps=tuple(
            StepSnapshot(
                approver_id=step.approver_id,
                order=step.order,
                status=step.status,
                comments=step.comments,
                processed_at=step.processed_at,
                auto_approve=step.auto_approve,
            )
            for step in expense.steps
        ),
        completion_policy=expense.completion_policy,
        approval_percentage=Decimal(expense.approval_percentage)
        if expense.approval_percentage is not None
        else None,
        completed_at=expense.workflow_completed_at,
        final_status=expense.final_status,
    )
    return ExpenseSnapshot(
        id=expense.id,
        employee_id=expense.employee_id,
        status=expense.status,
        workflow=workflow,
        version=expense.version,
        submitted_at=expense.submitted_at,
        approved_at=expense.approved_at,
        rejected_at=expense.rejected_at,
    )


def _write_snapshot(expense: Expense, snapshot: ExpenseSnapshot) -> None:
    workflow = snapshot.workflow
    if len(workflow.steps) != len(expense.steps):
        # Steps are fixed at creation; a transition must never resize them.
        raise ConflictError("Approval steps changed while processing the expense.")

    expense.status = snapshot.status
    expense.submitted_at = snapshot.submitted_at
    expense.approved_at = snapshot.approved_at
    expense.rejected_at = snapshot.rejected_at
    expense.current_step = workflow.current_step
    expense.workflow_completed_at = workflow.completed_at
    expense.final_status = workflow.final_status
    expense.updated_at = approval_engine.utcnow()

    for model_step, step in zip(expense.steps, workflow.steps):
        if model_step.status is not step.status or model_step.processed_at != step.processed_at:
            model_step.status = step.status
            model_step.comments = step.comments
            model_step.processed_at = step.processed_at


# Lookups --------------------------------------------------------------------


def get_expense(expense_id: int) -> Expense:
    expense = db.session.get(Expense, expense_id)
    if expense is None:
        raise NotFoundError("Expense not found.")
    return expense


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found.")
    return user


def can_view(user: User, expense: Expense) -> bool:
    if user.company_id != expense.company_id:
        return False
    if user.role is UserRole.ADMIN or expense.employee_id == user.id:
        return True
    if any(step.approver_id == user.id for step in expense.steps):
        return True
    return user.role is UserRole.MANAGER and expense.employee.manager_id == user.id


def visible_expenses_query(user: User):
    """Expenses a user may list: admins see the company, managers their team."""
    query = Expense.query.filter(Expense.company_id == user.company_id)
    if user.role is UserRole.ADMIN:
        return query
    if user.role is UserRole.MANAGER:
        team_ids = [member.id for member in User.query.filter_by(manager_id=user.id).all()]
        approver_of = db.session.query(ApprovalStep.expense_id).filter(
            ApprovalStep.approver_id == user.id
        )
        return query.filter(
            or_(
                Expense.employee_id == user.id,
                Expense.employee_id.in_(team_ids),
                Expense.id.in_(approver_of),
            )
        )
    return query.filter(Expense.employee_id == user.id)


def pending_for_approver(user_id: int) -> List[Expense]:
    """Expenses whose active step belongs to ``user_id``, oldest submission first."""
    return (
        Expense.query.join(
            ApprovalStep,
            and_(
                ApprovalStep.expense_id == Expense.id,
                ApprovalStep.order == Expense.current_step,
            ),
        )
        .filter(
            Expense.status == ExpenseStatus.PENDING_APPROVAL,
            ApprovalStep.approver_id == user_id,
            ApprovalStep.status == StepStatus.PENDING,
        )
        .order_by(Expense.submitted_at.asc(), Expense.id.asc())
        .all()
    )


# Creation -------------------------------------------------------------------


def _parse_amount(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Invalid amount.") from None
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero.")
    return value.quantize(currency_service.CENT)


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError("Invalid 'expense_date' format. Use YYYY-MM-DD.") from None


def create_expense(
    employee_id: int,
    company_id: int,
    title: str,
    amount: Any,
    currency_code: Optional[str],
    category: str,
    expense_date: Any,
    merchant: Optional[str] = None,
    description: Optional[str] = None,
) -> Expense:
    """Validate, normalize and route a new expense. It is stored as a draft."""
    company = db.session.get(Company, company_id)
    if company is None:
        raise NotFoundError("Company not found.")
    employee = _get_user(employee_id)
    if employee.company_id != company.id:
        raise NotFoundError("Employee not found in this company.")

    if not title or not str(title).strip():
        raise ValidationError("Title is required.")
    value = _parse_amount(amount)
    spent_on = _parse_date(expense_date)
    if company.active_category(category) is None:
        raise ValidationError("Invalid expense category.")

    source_currency = (currency_code or company.currency_code).strip().upper()
    normalized = currency_service.normalize(value, source_currency, company.currency_code)

    limit = company.max_expense_amount
    if limit and normalized.converted_amount > limit:
        raise LimitExceededError(
            f"Expense amount exceeds company limit of {company.currency_code} {limit}."
        )

    draft = ExpenseDraft(
        employee_id=employee.id,
        converted_amount=normalized.converted_amount,
        category=category,
        manager_id=employee.manager_id,
    )
    workflow = approval_engine.build_workflow(draft, organization_snapshot(company))

    expense = Expense(
        company_id=company.id,
        employee_id=employee.id,
        title=str(title).strip(),
        description=description,
        amount=value,
        currency_code=source_currency,
        currency_rate=normalized.rate,
        converted_amount=normalized.converted_amount,
        category=category,
        expense_date=spent_on,
        merchant=merchant,
        status=ExpenseStatus.DRAFT,
        current_step=workflow.current_step,
        completion_policy=workflow.completion_policy,
        approval_percentage=workflow.approval_percentage,
    )
    expense.steps = [
        ApprovalStep(
            approver_id=step.approver_id,
            order=step.order,
            status=step.status,
            auto_approve=step.auto_approve,
        )
        for step in workflow.steps
    ]

    db.session.add(expense)
    db.session.flush()
    AuditLog.record(
        "expense",
        expense.id,
        "created",
        user_id=employee.id,
        approvers=[step.approver_id for step in workflow.steps],
    )
    db.session.commit()

    logger.info(
        "Expense %s created with %d approval step(s) (converted %s %s)",
        expense.id,
        len(workflow.steps),
        normalized.converted_amount,
        company.currency_code,
    )
    return expense


# Transitions ----------------------------------------------------------------


Transition = Callable[..., ExpenseSnapshot]


def _apply_transition(
    expense_id: int,
    actor_id: int,
    action: str,
    transition: Transition,
    expected_version: Optional[int] = None,
    **kwargs: Any,
) -> Expense:
    expense = get_expense(expense_id)
    before = snapshot_of(expense)
    if expected_version is not None and expected_version != before.version:
        raise ConflictError("Expense has been modified since it was loaded; reload and retry.")

    after = transition(before, actor_id, **kwargs)
    _write_snapshot(expense, after)
    AuditLog.record(
        "expense",
        expense.id,
        action,
        user_id=actor_id,
        status=after.status.value,
        current_step=after.workflow.current_step,
    )
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent update rejected for expense %s (%s)", expense_id, action)
        raise ConflictError(
            "Expense has been modified by another request; reload and retry."
        ) from exc

    logger.info(
        "Expense %s %s by user %s; status=%s step=%s",
        expense.id,
        action,
        actor_id,
        expense.status.value,
        expense.current_step,
    )
    return expense


def submit_expense(expense_id: int, acting_user_id: int, expected_version: Optional[int] = None) -> Expense:
    return _apply_transition(
        expense_id, acting_user_id, "submitted", approval_engine.submit, expected_version
    )


def approve_expense(
    expense_id: int,
    acting_user_id: int,
    comments: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Expense:
    return _apply_transition(
        expense_id,
        acting_user_id,
        "approved",
        approval_engine.approve,
        expected_version,
        comments=comments,
    )


def reject_expense(
    expense_id: int,
    acting_user_id: int,
    comments: Optional[str],
    expected_version: Optional[int] = None,
) -> Expense:
    return _apply_transition(
        expense_id,
        acting_user_id,
        "rejected",
        approval_engine.reject,
        expected_version,
        comments=comments,
    )


# Queries --------------------------------------------------------------------


def can_approve(expense_id: int, user_id: int) -> bool:
    return approval_engine.can_act_on(snapshot_of(get_expense(expense_id)), user_id)


def current_approver(expense_id: int) -> Optional[StepSnapshot]:
    return approval_engine.current_approver(snapshot_of(get_expense(expense_id)))


def next_approver(expense_id: int) -> Optional[StepSnapshot]:
    return approval_engine.next_approver(snapshot_of(get_expense(expense_id)))


# Side lists -----------------------------------------------------------------


def add_note(expense_id: int, author_id: int, content: Optional[str]) -> ExpenseNote:
    if not content or not content.strip():
        raise ValidationError("Note content is required.")
    expense = get_expense(expense_id)
    author = _get_user(author_id)
    if not can_view(author, expense):
        raise AuthorizationError("Access denied.")

    note = ExpenseNote(expense=expense, author_id=author.id, content=content.strip())
    db.session.add(note)
    db.session.commit()
    return note


def attach_receipt(expense_id: int, actor_id: int, upload: FileStorage) -> Receipt:
    """Store an uploaded receipt and annotate it with OCR hints."""
    expense = get_expense(expense_id)
    if expense.employee_id != actor_id:
        raise NotOwnerError("Access denied to this expense.")
    if upload is None or not upload.filename:
        raise ValidationError("No file uploaded.")

    company = expense.company
    mimetype = upload.mimetype or "application/octet-stream"
    if company.allowed_file_types and mimetype not in company.allowed_file_types:
        raise ValidationError(f"File type {mimetype} is not allowed.")

    original_name = secure_filename(upload.filename) or "receipt"
    stored_name = f"{uuid.uuid4().hex}_{original_name}"
    folder = os.path.abspath(os.path.join(current_app.config["UPLOAD_FOLDER"], str(company.id)))
    os.makedirs(folder, exist_ok=True)
    path = os.path.join(folder, stored_name)
    upload.save(path)

    size = os.path.getsize(path)
    if size > company.max_file_size:
        os.remove(path)
        raise ValidationError(f"File exceeds the maximum size of {company.max_file_size} bytes.")

    hints: Dict[str, Any] = ocr_service.process_receipt(path, mimetype)
    receipt = Receipt(
        expense=expense,
        filename=stored_name,
        original_name=upload.filename,
        mimetype=mimetype,
        size=size,
        path=path,
        ocr_text=hints.get("text"),
        ocr_amount=hints.get("amount"),
        ocr_date=hints.get("date"),
        ocr_merchant=hints.get("merchant"),
        ocr_category=hints.get("category"),
    )
    db.session.add(receipt)
    db.session.commit()
    logger.info("Receipt %s attached to expense %s", receipt.id, expense.id)
    return receipt


def receipt_for_download(filename: str, user: User) -> Receipt:
    """The stored receipt behind ``filename``, if ``user`` may see its expense."""
    receipt = (
        Receipt.query.join(Expense, Receipt.expense_id == Expense.id)
        .filter(Receipt.filename == filename, Expense.company_id == user.company_id)
        .first()
    )
    if receipt is None:
        raise NotFoundError("Receipt not found.")
    if not can_view(user, receipt.expense):
        raise AuthorizationError("Access denied to this receipt.")
    if not os.path.isfile(receipt.path):
        raise NotFoundError("File not found.")
    return receipt


def delete_receipt(expense_id: int, receipt_id: int, actor_id: int) -> None:
    """Remove a receipt from a draft expense, file included."""
    expense = get_expense(expense_id)
    if expense.employee_id != actor_id:
        raise NotOwnerError("Access denied to this expense.")
    if expense.status is not ExpenseStatus.DRAFT:
        raise InvalidStateError("Receipts can only be removed from draft expenses.")
    receipt = next((r for r in expense.receipts if r.id == receipt_id), None)
    if receipt is None:
        raise NotFoundError("Receipt not found.")

    if os.path.isfile(receipt.path):
        os.remove(receipt.path)
    expense.receipts.remove(receipt)
    db.session.delete(receipt)
    db.session.commit()
    logger.info("Receipt %s removed from expense %s", receipt_id, expense_id)
