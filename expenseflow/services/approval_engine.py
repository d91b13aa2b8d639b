"""Approval workflow engine.

Builds the per-expense approval chain and applies submit/approve/reject
transitions. Every function here is pure: it reads immutable snapshots and
returns new ones, leaving persistence and version checks to the caller.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from expenseflow.errors import (
    InvalidStateError,
    NotOwnerError,
    UnauthorizedApproverError,
    ValidationError,
)
from expenseflow.models.approval import CompletionPolicy, StepStatus
from expenseflow.models.expense import ExpenseStatus
from expenseflow.services import rules
from expenseflow.services.snapshots import (
    ExpenseDraft,
    ExpenseSnapshot,
    OrganizationSnapshot,
    StepSnapshot,
    WorkflowSnapshot,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Workflow builder -----------------------------------------------------------


def build_workflow(expense: ExpenseDraft, organization: OrganizationSnapshot) -> WorkflowSnapshot:
    """Construct the approval chain for a freshly created expense.

    Order of construction:

    1. the employee's manager, when manager approval is enabled;
    2. the approvers of the first matching rule, skipping anyone already
       in the chain;
    3. the first active admin, only if the chain is still empty.

    With no admin to fall back on the chain stays empty and the expense is
    approved on submission.
    """
    steps: List[StepSnapshot] = []
    policy = CompletionPolicy.ALL
    percentage: Optional[Decimal] = None

    if organization.is_manager_approver_enabled and expense.manager_id is not None:
        steps.append(StepSnapshot(approver_id=expense.manager_id, order=0))

    rule = rules.select_rule(organization.rules, expense.converted_amount, expense.category)
    if rule is not None:
        if rule.uses_specific_approvers:
            present = {step.approver_id for step in steps}
            for entry in rule.approvers:
                if entry.user_id in present:
                    continue
                present.add(entry.user_id)
                steps.append(
                    StepSnapshot(
                        approver_id=entry.user_id,
                        order=len(steps),
                        auto_approve=entry.auto_approve,
                    )
                )
        if rule.uses_percentage and rule.percentage is not None:
            policy = CompletionPolicy.PERCENTAGE
            percentage = Decimal(rule.percentage)

    if not steps and organization.admin_ids:
        steps.append(StepSnapshot(approver_id=organization.admin_ids[0], order=0))
    if not steps:
        logger.debug("No approvers for expense of employee %s; chain is empty", expense.employee_id)

    steps.sort(key=lambda step: step.order)
    return WorkflowSnapshot(
        current_step=0,
        steps=tuple(steps),
        completion_policy=policy,
        approval_percentage=percentage,
    )


def evaluate_rules(
    organization: OrganizationSnapshot, converted_amount: Decimal, category: str
) -> Dict[str, Any]:
    """Preview which rules would apply to an amount and category."""
    matching = rules.applicable_rules(organization.rules, converted_amount, category)
    selected = matching[0] if matching else None
    return {
        "matching_rules": [rule.name for rule in matching],
        "selected_rule": selected.name if selected else None,
        "approver_ids": [entry.user_id for entry in selected.approvers]
        if selected and selected.uses_specific_approvers
        else [],
    }


# Query helpers --------------------------------------------------------------


def current_approver(expense: ExpenseSnapshot) -> Optional[StepSnapshot]:
    workflow = expense.workflow
    if not 0 <= workflow.current_step < len(workflow.steps):
        return None
    return workflow.steps[workflow.current_step]


def next_approver(expense: ExpenseSnapshot) -> Optional[StepSnapshot]:
    workflow = expense.workflow
    next_index = workflow.current_step + 1
    if next_index < len(workflow.steps):
        return workflow.steps[next_index]
    return None


def can_act_on(expense: ExpenseSnapshot, user_id: int) -> bool:
    if expense.status is not ExpenseStatus.PENDING_APPROVAL:
        return False
    step = current_approver(expense)
    return step is not None and step.approver_id == user_id and step.status is StepStatus.PENDING


def approval_progress(workflow: WorkflowSnapshot) -> Decimal:
    """Share of approved steps, as a percentage."""
    if not workflow.steps:
        return Decimal("0")
    approved = sum(1 for step in workflow.steps if step.status is StepStatus.APPROVED)
    return Decimal(approved * 100) / Decimal(len(workflow.steps))


# Transitions ----------------------------------------------------------------


def _complete(
    expense: ExpenseSnapshot,
    workflow: WorkflowSnapshot,
    outcome: ExpenseStatus,
    now: datetime,
) -> ExpenseSnapshot:
    workflow = replace(workflow, completed_at=now, final_status=outcome)
    if outcome is ExpenseStatus.APPROVED:
        return replace(expense, status=outcome, approved_at=now, workflow=workflow)
    return replace(expense, status=outcome, rejected_at=now, workflow=workflow)


def _active_step(expense: ExpenseSnapshot, actor_id: int, verb: str) -> StepSnapshot:
    if expense.status is not ExpenseStatus.PENDING_APPROVAL:
        raise InvalidStateError(
            f"Expense is {expense.status.value}; only expenses pending approval can be acted on."
        )
    step = current_approver(expense)
    if step is None or step.status is not StepStatus.PENDING or step.approver_id != actor_id:
        raise UnauthorizedApproverError(f"You are not authorized to {verb} this expense.")
    return step


def _completion_reached(workflow: WorkflowSnapshot, acted: StepSnapshot) -> bool:
    if acted.auto_approve:
        return True
    if workflow.completion_policy is CompletionPolicy.PERCENTAGE and workflow.approval_percentage is not None:
        return approval_progress(workflow) >= workflow.approval_percentage
    return False


def submit(expense: ExpenseSnapshot, actor_id: int, now: Optional[datetime] = None) -> ExpenseSnapshot:
    if actor_id != expense.employee_id:
        raise NotOwnerError("Only the employee who created the expense can submit it.")
    if expense.status is not ExpenseStatus.DRAFT:
        raise InvalidStateError("Expense can only be submitted from draft status.")

    now = now or utcnow()
    submitted = replace(expense, submitted_at=now)
    if not expense.workflow.steps:
        return _complete(submitted, expense.workflow, ExpenseStatus.APPROVED, now)
    return replace(submitted, status=ExpenseStatus.PENDING_APPROVAL)


def approve(
    expense: ExpenseSnapshot,
    actor_id: int,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExpenseSnapshot:
    step = _active_step(expense, actor_id, "approve")
    now = now or utcnow()

    workflow = expense.workflow
    index = workflow.current_step
    acted = replace(step, status=StepStatus.APPROVED, comments=comments, processed_at=now)
    steps = workflow.steps[:index] + (acted,) + workflow.steps[index + 1:]
    workflow = replace(workflow, steps=steps)

    if index + 1 >= len(steps) or _completion_reached(workflow, acted):
        return _complete(expense, workflow, ExpenseStatus.APPROVED, now)
    return replace(expense, workflow=replace(workflow, current_step=index + 1))


def reject(
    expense: ExpenseSnapshot,
    actor_id: int,
    comments: Optional[str],
    now: Optional[datetime] = None,
) -> ExpenseSnapshot:
    if not comments or not comments.strip():
        raise ValidationError("Comments are required for rejection.")
    step = _active_step(expense, actor_id, "reject")
    now = now or utcnow()

    workflow = expense.workflow
    index = workflow.current_step
    acted = replace(step, status=StepStatus.REJECTED, comments=comments.strip(), processed_at=now)
    workflow = replace(workflow, steps=workflow.steps[:index] + (acted,) + workflow.steps[index + 1:])
    return _complete(expense, workflow, ExpenseStatus.REJECTED, now)
