"""Reporting aggregates."""
from __future__ import annotations

from datetime import date

from expenseflow.models import UserRole
from expenseflow.services import expense_service


def _expense(user, amount, category="Travel", expense_date="2024-04-02"):
    return expense_service.create_expense(
        employee_id=user.id,
        company_id=user.company_id,
        title=f"{category} {amount}",
        amount=amount,
        currency_code="USD",
        category=category,
        expense_date=expense_date,
    )


def test_summary_by_status(login_as, admin, employee, manager):
    first = _expense(employee, "100")
    _expense(employee, "50.25", category="Meals")
    expense_service.submit_expense(first.id, employee.id)

    client = login_as(admin)
    body = client.get("/reports/summary").get_json()
    assert body["currency_code"] == "USD"
    assert body["count"] == 2
    assert body["total"] == "150.25"
    assert body["by_status"]["pending_approval"] == {"count": 1, "total": "100.00"}
    assert body["by_status"]["draft"] == {"count": 1, "total": "50.25"}
    assert body["by_status"]["approved"] == {"count": 0, "total": "0.00"}


def test_by_category_with_date_filter(login_as, admin, employee):
    _expense(employee, "100", category="Travel")
    _expense(employee, "40", category="Travel", expense_date="2024-06-01")
    _expense(employee, "10", category="Meals")

    client = login_as(admin)
    rows = client.get("/reports/by-category").get_json()["categories"]
    assert rows == [
        {"category": "Meals", "count": 1, "total": "10.00"},
        {"category": "Travel", "count": 2, "total": "140.00"},
    ]

    june = client.get("/reports/by-category?start_date=2024-06-01").get_json()["categories"]
    assert june == [{"category": "Travel", "count": 1, "total": "40.00"}]
    assert client.get("/reports/by-category?end_date=June").status_code == 400


def test_managers_see_their_team_only(login_as, make_user, employee, manager):
    loner = make_user(UserRole.EMPLOYEE)
    _expense(employee, "100")
    _expense(loner, "999")

    client = login_as(manager)
    assert client.get("/reports/summary").get_json()["total"] == "100.00"


def test_employees_cannot_view_reports(login_as, employee):
    client = login_as(employee)
    assert client.get("/reports/summary").status_code == 403


def test_dashboard_overview(login_as, admin, employee, manager):
    today = date.today().isoformat()
    pending = _expense(employee, "120", category="Travel", expense_date=today)
    approved = _expense(employee, "30", category="Meals", expense_date=today)
    _expense(employee, "5", category="Meals")
    expense_service.submit_expense(pending.id, employee.id)
    expense_service.submit_expense(approved.id, employee.id)
    expense_service.approve_expense(approved.id, manager.id)

    client = login_as(admin)
    body = client.get("/reports/dashboard").get_json()
    assert body["overview"] == {
        "total_expenses": 3,
        "total_amount": "155.00",
        "pending_count": 1,
        "pending_amount": "120.00",
        "approved_count": 1,
        "approved_amount": "30.00",
        "rejected_count": 0,
        "rejected_amount": "0.00",
    }
    assert [row["category"] for row in body["category_breakdown"]] == ["Travel", "Meals"]
    assert body["monthly_trend"] == [
        {"year": date.today().year, "month": date.today().month, "count": 2, "total": "150.00"}
    ]
    assert len(body["recent_expenses"]) == 3
    assert body["recent_expenses"][0]["employee_name"] == "Erin Tester"
    assert body["pending_approvals"] == 0

    client = login_as(manager)
    assert client.get("/reports/dashboard").get_json()["pending_approvals"] == 1


def test_employees_get_their_own_dashboard(login_as, employee, make_user):
    _expense(employee, "20")
    _expense(make_user(UserRole.EMPLOYEE), "999")

    client = login_as(employee)
    body = client.get("/reports/dashboard").get_json()
    assert body["overview"]["total_amount"] == "20.00"
    assert body["pending_approvals"] == 0


def test_approval_analytics(login_as, admin, employee, manager):
    approved = _expense(employee, "100")
    rejected = _expense(employee, "200")
    _expense(employee, "300")
    for expense in (approved, rejected):
        expense_service.submit_expense(expense.id, employee.id)
    expense_service.approve_expense(approved.id, manager.id)
    expense_service.reject_expense(rejected.id, manager.id, "Duplicate")

    client = login_as(admin)
    body = client.get("/reports/approvals").get_json()
    assert sorted(row["status"] for row in body["approval_times"]) == ["approved", "rejected"]
    assert all(row["count"] == 1 and row["min_seconds"] >= 0 for row in body["approval_times"])
    assert body["approver_performance"] == [
        {
            "approver": {"id": manager.id, "full_name": "Mark Tester", "email": manager.email},
            "total_decisions": 2,
            "approved_count": 1,
            "rejected_count": 1,
            "approval_rate": 50.0,
        }
    ]
    assert body["workflow_analytics"] == [{"steps": 1, "count": 2, "approved": 1, "rejected": 1}]

    future = client.get("/reports/approvals?start_date=2999-01-01").get_json()
    assert future["approver_performance"] == []
    assert future["workflow_analytics"] == []


def test_employee_breakdown(login_as, admin, employee, manager, make_user):
    other = make_user(UserRole.EMPLOYEE, first_name="Olga")
    make_user(UserRole.EMPLOYEE, first_name="Gone", is_active=False)
    first = _expense(employee, "100")
    _expense(employee, "50")
    _expense(other, "400", expense_date="2024-06-01")
    expense_service.submit_expense(first.id, employee.id)

    client = login_as(admin)
    rows = client.get("/reports/employees").get_json()["employees"]
    assert [row["user"]["full_name"] for row in rows][:2] == ["Olga Tester", "Erin Tester"]
    assert "Gone Tester" not in [row["user"]["full_name"] for row in rows]
    erin = rows[1]
    assert erin["total_expenses"] == 2
    assert erin["total_amount"] == "150.00"
    assert erin["pending_expenses"] == 1
    assert erin["avg_expense_amount"] == "75.00"
    idle = next(row for row in rows if row["user"]["id"] == admin.id)
    assert idle["avg_expense_amount"] is None

    april = client.get("/reports/employees?end_date=2024-05-01").get_json()["employees"]
    assert april[0]["user"]["id"] == employee.id

    client = login_as(manager)
    team = client.get("/reports/employees").get_json()["employees"]
    assert sorted(row["user"]["id"] for row in team) == sorted([employee.id, manager.id])
