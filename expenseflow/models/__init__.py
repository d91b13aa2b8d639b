"""Application data models exposed for easy imports."""
from expenseflow import db  # noqa: F401
from .company import Company, ExpenseCategory  # noqa: F401
from .user import User, UserRole  # noqa: F401
from .approval import (
    ApprovalRule,
    ApprovalRuleType,
    ApprovalStep,
    CompletionPolicy,
    RuleApprover,
    StepStatus,
)  # noqa: F401
from .expense import Expense, ExpenseNote, ExpenseStatus, Receipt  # noqa: F401
from .audit import AuditLog  # noqa: F401

__all__ = [
    "db",
    "Company",
    "ExpenseCategory",
    "User",
    "UserRole",
    "Expense",
    "ExpenseStatus",
    "ExpenseNote",
    "Receipt",
    "ApprovalRule",
    "ApprovalRuleType",
    "ApprovalStep",
    "CompletionPolicy",
    "RuleApprover",
    "StepStatus",
    "AuditLog",
]
