"""Shared fixtures: an in-memory app, a seeded company and user factories."""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Iterator, Optional

import pytest
from flask import g

from expenseflow import create_app, db
from expenseflow.models import (
    ApprovalRule,
    ApprovalRuleType,
    Company,
    RuleApprover,
    User,
    UserRole,
)

PASSWORD = "secret123"


@pytest.fixture()
def app(tmp_path) -> Iterator:
    app = create_app("testing")
    app.config["UPLOAD_FOLDER"] = str(tmp_path / "uploads")

    @app.teardown_request
    def _forget_login_user(exc: Optional[BaseException]) -> None:
        # Requests share the fixture's app context, so g outlives a request.
        g.pop("_login_user", None)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def company(app) -> Company:
    company = Company(name="Acme Corp", country="United States", currency_code="USD")
    company.seed_default_categories()
    db.session.add(company)
    db.session.commit()
    return company


@pytest.fixture()
def make_user(company):
    counter = {"value": 0}

    def _make_user(
        role: UserRole = UserRole.EMPLOYEE,
        manager: Optional[User] = None,
        first_name: Optional[str] = None,
        target_company: Optional[Company] = None,
        is_active: bool = True,
    ) -> User:
        counter["value"] += 1
        name = first_name or f"{role.value.title()}{counter['value']}"
        user = User(
            first_name=name,
            last_name="Tester",
            email=f"{name.lower()}.{counter['value']}@example.com",
            role=role,
            company=target_company or company,
            manager_id=manager.id if manager else None,
            is_active=is_active,
        )
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture()
def admin(make_user) -> User:
    return make_user(UserRole.ADMIN, first_name="Alice")


@pytest.fixture()
def manager(make_user) -> User:
    return make_user(UserRole.MANAGER, first_name="Mark")


@pytest.fixture()
def employee(make_user, manager) -> User:
    return make_user(UserRole.EMPLOYEE, manager=manager, first_name="Erin")


@pytest.fixture()
def make_rule(company):
    def _make_rule(
        rule_type: ApprovalRuleType,
        approvers: Iterable = (),
        percentage: Optional[str] = None,
        min_amount: str = "0",
        max_amount: Optional[str] = None,
        categories: Iterable[str] = (),
        name: Optional[str] = None,
        is_active: bool = True,
    ) -> ApprovalRule:
        rule = ApprovalRule(
            name=name or f"{rule_type.value} rule",
            rule_type=rule_type,
            percentage=Decimal(percentage) if percentage is not None else None,
            min_amount=Decimal(min_amount),
            max_amount=Decimal(max_amount) if max_amount is not None else None,
            categories=list(categories),
            is_active=is_active,
            position=len(company.approval_rules),
        )
        for position, entry in enumerate(approvers):
            user, auto_approve = entry if isinstance(entry, tuple) else (entry, False)
            rule.approvers.append(
                RuleApprover(user_id=user.id, auto_approve=auto_approve, position=position)
            )
        company.approval_rules.append(rule)
        db.session.commit()
        return rule

    return _make_rule


@pytest.fixture()
def login_as(client):
    """Log the test client in as ``user``."""

    def _login_as(user: User):
        response = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        assert response.status_code == 200, response.get_json()
        return client

    return _login_as
