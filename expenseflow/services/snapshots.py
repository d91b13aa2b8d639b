"""Immutable views of expenses, workflows and company configuration.

The approval engine only ever sees these values. Transitions take a snapshot
and return a new one; :mod:`expenseflow.services.expense_service` is
responsible for loading them from and writing them back to the database.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from expenseflow.models.approval import ApprovalRuleType, CompletionPolicy, StepStatus
from expenseflow.models.expense import ExpenseStatus


@dataclass(frozen=True)
class StepSnapshot:
    approver_id: int
    order: int
    status: StepStatus = StepStatus.PENDING
    comments: Optional[str] = None
    processed_at: Optional[datetime] = None
    auto_approve: bool = False

    def to_dict(self) -> dict:
        return {
            "approver_id": self.approver_id,
            "order": self.order,
            "status": self.status.value,
            "comments": self.comments,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "auto_approve": self.auto_approve,
        }


@dataclass(frozen=True)
class WorkflowSnapshot:
    current_step: int = 0
    steps: Tuple[StepSnapshot, ...] = ()
    completion_policy: CompletionPolicy = CompletionPolicy.ALL
    approval_percentage: Optional[Decimal] = None
    completed_at: Optional[datetime] = None
    final_status: Optional[ExpenseStatus] = None


@dataclass(frozen=True)
class ExpenseSnapshot:
    id: Optional[int]
    employee_id: int
    status: ExpenseStatus
    workflow: WorkflowSnapshot
    version: int = 1
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None


@dataclass(frozen=True)
class RuleApproverSpec:
    user_id: int
    auto_approve: bool = False


@dataclass(frozen=True)
class RuleSpec:
    rule_type: ApprovalRuleType
    name: str = ""
    percentage: Optional[Decimal] = None
    approvers: Tuple[RuleApproverSpec, ...] = ()
    min_amount: Decimal = Decimal("0")
    max_amount: Optional[Decimal] = None
    categories: Tuple[str, ...] = ()
    is_active: bool = True

    @property
    def uses_percentage(self) -> bool:
        return self.rule_type in (ApprovalRuleType.PERCENTAGE, ApprovalRuleType.HYBRID)

    @property
    def uses_specific_approvers(self) -> bool:
        return self.rule_type in (ApprovalRuleType.SPECIFIC, ApprovalRuleType.HYBRID)


@dataclass(frozen=True)
class OrganizationSnapshot:
    """What the workflow builder reads from a company at creation time."""

    company_id: Optional[int] = None
    is_manager_approver_enabled: bool = True
    rules: Tuple[RuleSpec, ...] = ()
    # Active admins, lowest id first; the first one is the fallback approver.
    admin_ids: Tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ExpenseDraft:
    """The normalized expense the workflow builder routes."""

    employee_id: int
    converted_amount: Decimal
    category: str
    manager_id: Optional[int] = None
