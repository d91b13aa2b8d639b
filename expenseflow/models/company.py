"""Company and expense category models."""
from __future__ import annotations

from typing import Optional

from expenseflow import db

DEFAULT_CATEGORIES = (
    ("Travel", "Travel related expenses"),
    ("Meals", "Business meals and entertainment"),
    ("Office Supplies", "Office equipment and supplies"),
    ("Transportation", "Local transportation costs"),
    ("Accommodation", "Hotel and lodging expenses"),
    ("Training", "Professional development and training"),
    ("Software", "Software licenses and subscriptions"),
    ("Marketing", "Marketing and promotional expenses"),
    ("Other", "Miscellaneous business expenses"),
)

DEFAULT_FILE_TYPES = ("image/jpeg", "image/png", "image/jpg", "application/pdf")
DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024

# Settings an admin may change through the company settings endpoint.
EDITABLE_SETTINGS = (
    "is_manager_approver_enabled",
    "max_expense_amount",
    "auto_approval_limit",
    "allowed_file_types",
    "max_file_size",
)


class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    country = db.Column(db.String(120), nullable=False)
    currency_code = db.Column(db.String(10), nullable=False)

    is_manager_approver_enabled = db.Column(db.Boolean, default=True, nullable=False)
    max_expense_amount = db.Column(db.Numeric(12, 2), default=10000, nullable=True)
    auto_approval_limit = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    allowed_file_types = db.Column(db.JSON, default=lambda: list(DEFAULT_FILE_TYPES), nullable=False)
    max_file_size = db.Column(db.Integer, default=DEFAULT_MAX_FILE_SIZE, nullable=False)

    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    users = db.relationship(
        "User",
        back_populates="company",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    expenses = db.relationship(
        "Expense",
        back_populates="company",
        lazy="select",
        cascade="all, delete-orphan",
    )
    categories = db.relationship(
        "ExpenseCategory",
        back_populates="company",
        lazy="selectin",
        order_by="ExpenseCategory.id",
        cascade="all, delete-orphan",
    )
    approval_rules = db.relationship(
        "ApprovalRule",
        back_populates="company",
        lazy="selectin",
        order_by="ApprovalRule.position",
        cascade="all, delete-orphan",
    )

    def seed_default_categories(self) -> None:
        if self.categories:
            return
        for name, description in DEFAULT_CATEGORIES:
            self.categories.append(ExpenseCategory(name=name, description=description))

    def active_category(self, name: str) -> Optional["ExpenseCategory"]:
        return next(
            (cat for cat in self.categories if cat.name == name and cat.is_active),
            None,
        )

    def settings_dict(self) -> dict:
        return {
            "is_manager_approver_enabled": self.is_manager_approver_enabled,
            "max_expense_amount": float(self.max_expense_amount)
            if self.max_expense_amount is not None
            else None,
            "auto_approval_limit": float(self.auto_approval_limit or 0),
            "allowed_file_types": list(self.allowed_file_types or []),
            "max_file_size": self.max_file_size,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "country": self.country,
            "currency_code": self.currency_code,
            "settings": self.settings_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Company {self.name} ({self.currency_code})>"


class ExpenseCategory(db.Model):
    __tablename__ = "expense_categories"
    __table_args__ = (db.UniqueConstraint("company_id", "name", name="uq_category_company_name"),)

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    company = db.relationship("Company", back_populates="categories")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<ExpenseCategory {self.name} company={self.company_id}>"
