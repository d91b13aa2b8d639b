"""Expense model definitions."""
from __future__ import annotations

import enum

from expenseflow import db
from expenseflow.models.approval import CompletionPolicy


class ExpenseStatus(enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    REIMBURSED = "reimbursed"


def _iso(value):
    return value.isoformat() if value else None


class Expense(db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency_code = db.Column(db.String(10), nullable=False)
    currency_rate = db.Column(db.Numeric(18, 8), nullable=False, default=1)
    converted_amount = db.Column(db.Numeric(12, 2), nullable=False)

    category = db.Column(db.String(120), nullable=False)
    expense_date = db.Column(db.Date, nullable=False)
    merchant = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.Enum(ExpenseStatus, name="expense_status"),
        nullable=False,
        default=ExpenseStatus.DRAFT,
        index=True,
    )

    # Workflow state; steps live in approval_steps.
    current_step = db.Column(db.Integer, nullable=False, default=0)
    completion_policy = db.Column(
        db.Enum(CompletionPolicy, name="completion_policy"),
        nullable=False,
        default=CompletionPolicy.ALL,
    )
    approval_percentage = db.Column(db.Numeric(5, 2), nullable=True)
    workflow_completed_at = db.Column(db.DateTime, nullable=True)
    final_status = db.Column(db.Enum(ExpenseStatus, name="expense_final_status"), nullable=True)

    submitted_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    reimbursed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    company = db.relationship("Company", back_populates="expenses")
    employee = db.relationship("User", foreign_keys=[employee_id], lazy="joined")
    steps = db.relationship(
        "ApprovalStep",
        back_populates="expense",
        lazy="selectin",
        order_by="ApprovalStep.order",
        cascade="all, delete-orphan",
    )
    receipts = db.relationship(
        "Receipt",
        back_populates="expense",
        lazy="selectin",
        order_by="Receipt.id",
        cascade="all, delete-orphan",
    )
    notes = db.relationship(
        "ExpenseNote",
        back_populates="expense",
        lazy="selectin",
        order_by="ExpenseNote.id",
        cascade="all, delete-orphan",
    )

    def workflow_dict(self) -> dict:
        return {
            "current_step": self.current_step,
            "steps": [step.to_dict() for step in self.steps],
            "completion_policy": self.completion_policy.value if self.completion_policy else None,
            "approval_percentage": float(self.approval_percentage)
            if self.approval_percentage is not None
            else None,
            "completed_at": _iso(self.workflow_completed_at),
            "final_status": self.final_status.value if self.final_status else None,
        }

    def to_dict(self, include_notes: bool = False) -> dict:
        payload = {
            "id": self.id,
            "company_id": self.company_id,
            "employee_id": self.employee_id,
            "employee_name": self.employee.full_name if self.employee else None,
            "title": self.title,
            "description": self.description,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": {
                "code": self.currency_code,
                "rate": float(self.currency_rate) if self.currency_rate is not None else None,
            },
            "converted_amount": float(self.converted_amount)
            if self.converted_amount is not None
            else None,
            "category": self.category,
            "expense_date": _iso(self.expense_date),
            "merchant": self.merchant,
            "status": self.status.value if self.status else None,
            "approval_workflow": self.workflow_dict(),
            "receipts": [receipt.to_dict() for receipt in self.receipts],
            "submitted_at": _iso(self.submitted_at),
            "approved_at": _iso(self.approved_at),
            "rejected_at": _iso(self.rejected_at),
            "reimbursed_at": _iso(self.reimbursed_at),
            "created_at": _iso(self.created_at),
            "version": self.version,
        }
        if include_notes:
            payload["notes"] = [note.to_dict() for note in self.notes]
        return payload

    def __repr__(self) -> str:
        return f"<Expense id={self.id} status={self.status.value if self.status else None}>"


class Receipt(db.Model):
    __tablename__ = "receipts"

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, index=True)
    filename = db.Column(db.String(255), nullable=False)
    original_name = db.Column(db.String(255), nullable=False)
    mimetype = db.Column(db.String(120), nullable=False)
    size = db.Column(db.Integer, nullable=False)
    path = db.Column(db.String(512), nullable=False)

    # Best-effort OCR hints. Informational only.
    ocr_text = db.Column(db.Text, nullable=True)
    ocr_amount = db.Column(db.Numeric(12, 2), nullable=True)
    ocr_date = db.Column(db.Date, nullable=True)
    ocr_merchant = db.Column(db.String(255), nullable=True)
    ocr_category = db.Column(db.String(120), nullable=True)
    uploaded_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    expense = db.relationship("Expense", back_populates="receipts")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "original_name": self.original_name,
            "mimetype": self.mimetype,
            "size": self.size,
            "ocr": {
                "amount": float(self.ocr_amount) if self.ocr_amount is not None else None,
                "date": _iso(self.ocr_date),
                "merchant": self.ocr_merchant,
                "category": self.ocr_category,
            },
            "uploaded_at": _iso(self.uploaded_at),
        }


class ExpenseNote(db.Model):
    __tablename__ = "expense_notes"

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, index=True)
    author_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    expense = db.relationship("Expense", back_populates="notes")
    author = db.relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "author_id": self.author_id,
            "author_name": self.author.full_name if self.author else None,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }
