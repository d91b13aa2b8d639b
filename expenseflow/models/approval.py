"""Approval rule configuration and per-expense approval steps."""
from __future__ import annotations

import enum

from expenseflow import db


class ApprovalRuleType(enum.Enum):
    PERCENTAGE = "percentage"
    SPECIFIC = "specific"
    HYBRID = "hybrid"


class StepStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CompletionPolicy(enum.Enum):
    ALL = "all"
    PERCENTAGE = "percentage"


def _decimal_or_none(value):
    return float(value) if value is not None else None


class ApprovalRule(db.Model):
    __tablename__ = "approval_rules"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    rule_type = db.Column(db.Enum(ApprovalRuleType, name="approval_rule_type"), nullable=False)
    percentage = db.Column(db.Numeric(5, 2), nullable=True)
    min_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    max_amount = db.Column(db.Numeric(12, 2), nullable=True)
    categories = db.Column(db.JSON, default=list, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    # Organization-defined evaluation order; the first matching rule wins.
    position = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    company = db.relationship("Company", back_populates="approval_rules")
    approvers = db.relationship(
        "RuleApprover",
        back_populates="rule",
        lazy="selectin",
        order_by="RuleApprover.position",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "rule_type": self.rule_type.value if self.rule_type else None,
            "percentage": _decimal_or_none(self.percentage),
            "specific_approvers": [approver.to_dict() for approver in self.approvers],
            "min_amount": _decimal_or_none(self.min_amount),
            "max_amount": _decimal_or_none(self.max_amount),
            "categories": list(self.categories or []),
            "is_active": self.is_active,
            "position": self.position,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<ApprovalRule id={self.id} type={self.rule_type.value if self.rule_type else None}>"


class RuleApprover(db.Model):
    __tablename__ = "rule_approvers"

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("approval_rules.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    auto_approve = db.Column(db.Boolean, default=False, nullable=False)
    position = db.Column(db.Integer, default=0, nullable=False)

    rule = db.relationship("ApprovalRule", back_populates="approvers")
    user = db.relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "auto_approve": self.auto_approve,
        }


class ApprovalStep(db.Model):
    __tablename__ = "approval_steps"
    __table_args__ = (db.UniqueConstraint("expense_id", "step_order", name="uq_step_expense_order"),)

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, index=True)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order = db.Column("step_order", db.Integer, nullable=False)
    status = db.Column(
        db.Enum(StepStatus, name="approval_step_status"),
        nullable=False,
        default=StepStatus.PENDING,
    )
    comments = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    auto_approve = db.Column(db.Boolean, default=False, nullable=False)

    expense = db.relationship("Expense", back_populates="steps")
    approver = db.relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "approver_id": self.approver_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "order": self.order,
            "status": self.status.value if self.status else None,
            "comments": self.comments,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "auto_approve": self.auto_approve,
        }

    def __repr__(self) -> str:
        return (
            f"<ApprovalStep expense_id={self.expense_id} order={self.order} "
            f"status={self.status.value if self.status else None}>"
        )
