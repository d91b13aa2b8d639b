"""Expense HTTP flows: creation, approval chains and permission gates."""
from __future__ import annotations

import io

import pytest

from expenseflow.models import ApprovalRuleType, UserRole

EXPENSE = {
    "title": "Conference travel",
    "amount": "250.00",
    "currency_code": "USD",
    "category": "Travel",
    "expense_date": "2024-04-02",
    "merchant": "Lufthansa",
}


def _create(client, **overrides):
    response = client.post("/expenses/", json={**EXPENSE, **overrides})
    assert response.status_code == 201, response.get_json()
    return response.get_json()["expense"]


def _post(client, expense_id, action, **payload):
    return client.post(f"/expenses/{expense_id}/{action}", json=payload)


@pytest.fixture()
def cfo(make_user):
    return make_user(UserRole.MANAGER, first_name="Carla")


@pytest.fixture()
def director(make_user):
    return make_user(UserRole.MANAGER, first_name="Dan")


def test_three_step_chain_approved_in_order(login_as, employee, manager, cfo, director, make_rule):
    make_rule(ApprovalRuleType.SPECIFIC, approvers=[cfo, director], min_amount="1000")

    client = login_as(employee)
    expense = _create(client, amount="2500")
    steps = expense["approval_workflow"]["steps"]
    assert [step["approver_id"] for step in steps] == [manager.id, cfo.id, director.id]
    assert expense["status"] == "draft"

    submitted = _post(client, expense["id"], "submit").get_json()["expense"]
    assert submitted["status"] == "pending_approval"

    for approver in (manager, cfo, director):
        client = login_as(approver)
        current = client.get(f"/expenses/{expense['id']}/current-approver").get_json()
        assert current["current_approver"]["approver_id"] == approver.id
        assert client.get(f"/expenses/{expense['id']}/can-approve").get_json() == {
            "can_approve": True
        }
        response = _post(client, expense["id"], "approve", comments="ok")
        assert response.status_code == 200, response.get_json()

    final = response.get_json()["expense"]
    assert final["status"] == "approved"
    assert final["approval_workflow"]["final_status"] == "approved"
    assert [step["status"] for step in final["approval_workflow"]["steps"]] == ["approved"] * 3


def test_rejection_stops_the_chain(login_as, employee, manager, cfo, make_rule):
    make_rule(ApprovalRuleType.SPECIFIC, approvers=[cfo])
    client = login_as(employee)
    expense = _create(client)
    _post(client, expense["id"], "submit")

    client = login_as(manager)
    missing = _post(client, expense["id"], "reject")
    assert missing.status_code == 400
    assert missing.get_json() == {"error": "Comments are required for rejection."}

    rejected = _post(client, expense["id"], "reject", comments="Personal trip")
    assert rejected.status_code == 200
    assert rejected.get_json()["expense"]["status"] == "rejected"

    client = login_as(cfo)
    late = _post(client, expense["id"], "approve")
    assert late.status_code == 409


def test_wrong_approver_is_forbidden(login_as, employee, manager, cfo, make_rule):
    make_rule(ApprovalRuleType.SPECIFIC, approvers=[cfo])
    client = login_as(employee)
    expense = _create(client)
    _post(client, expense["id"], "submit")

    client = login_as(cfo)
    response = _post(client, expense["id"], "approve")
    assert response.status_code == 403
    assert response.get_json() == {"error": "You are not authorized to approve this expense."}
    assert client.get(f"/expenses/{expense['id']}/can-approve").get_json() == {
        "can_approve": False
    }


def test_limit_exceeded_is_a_validation_error(login_as, employee):
    client = login_as(employee)
    response = client.post("/expenses/", json={**EXPENSE, "amount": "15000"})
    assert response.status_code == 400
    assert "exceeds company limit" in response.get_json()["error"]
    assert client.get("/expenses/").get_json()["pagination"]["total"] == 0


def test_zero_step_expense_approves_on_submit(login_as, make_user):
    make_user(UserRole.ADMIN, is_active=False)
    employee = make_user(UserRole.EMPLOYEE)

    client = login_as(employee)
    expense = _create(client, amount="20")
    assert expense["approval_workflow"]["steps"] == []
    response = _post(client, expense["id"], "submit")
    assert response.get_json()["expense"]["status"] == "approved"


def test_stale_version_is_a_conflict(login_as, employee, manager):
    client = login_as(employee)
    expense = _create(client)
    _post(client, expense["id"], "submit")

    client = login_as(manager)
    response = _post(client, expense["id"], "approve", version=expense["version"])
    assert response.status_code == 409
    assert _post(client, expense["id"], "approve", version=expense["version"] + 1).status_code == 200


def test_employees_cannot_approve(login_as, employee, manager):
    client = login_as(employee)
    expense = _create(client)
    _post(client, expense["id"], "submit")
    response = _post(client, expense["id"], "approve")
    assert response.status_code == 403
    assert response.get_json() == {"error": "Permission approve_expenses required."}
    assert client.get("/expenses/pending").status_code == 403


def test_only_owner_submits(login_as, employee, manager):
    client = login_as(employee)
    expense = _create(client)
    client = login_as(manager)
    assert _post(client, expense["id"], "submit").status_code == 403


def test_pending_queue(login_as, employee, manager):
    client = login_as(employee)
    first = _create(client, title="First")
    _create(client, title="Draft")
    _post(client, first["id"], "submit")

    client = login_as(manager)
    pending = client.get("/expenses/pending").get_json()["expenses"]
    assert [expense["id"] for expense in pending] == [first["id"]]


def test_listing_filters_and_pagination(login_as, employee):
    client = login_as(employee)
    _create(client, title="Taxi", amount="30", category="Transportation")
    _create(client, title="Hotel", amount="400", category="Accommodation")
    _create(client, title="Dinner", amount="80", category="Meals", expense_date="2024-05-10")

    everything = client.get("/expenses/").get_json()
    assert everything["pagination"]["total"] == 3

    by_category = client.get("/expenses/?category=Meals").get_json()["expenses"]
    assert [e["title"] for e in by_category] == ["Dinner"]

    by_amount = client.get("/expenses/?min_amount=50&max_amount=100").get_json()["expenses"]
    assert [e["title"] for e in by_amount] == ["Dinner"]

    by_date = client.get("/expenses/?start_date=2024-05-01").get_json()["expenses"]
    assert [e["title"] for e in by_date] == ["Dinner"]

    assert client.get("/expenses/?status=draft").get_json()["pagination"]["total"] == 3
    assert client.get("/expenses/?status=approved").get_json()["pagination"]["total"] == 0
    assert client.get("/expenses/?status=bogus").status_code == 400

    page = client.get("/expenses/?per_page=2&page=2").get_json()
    assert page["pagination"]["pages"] == 2
    assert page["pagination"]["has_prev"] is True
    assert len(page["expenses"]) == 1


def test_detail_visibility_and_notes(login_as, employee, manager, make_user):
    outsider = make_user(UserRole.EMPLOYEE)
    client = login_as(employee)
    expense = _create(client)

    client = login_as(manager)
    note = client.post(f"/expenses/{expense['id']}/notes", json={"content": "Add the invoice"})
    assert note.status_code == 201
    detail = client.get(f"/expenses/{expense['id']}").get_json()["expense"]
    assert [n["content"] for n in detail["notes"]] == ["Add the invoice"]

    client = login_as(outsider)
    assert client.get(f"/expenses/{expense['id']}").status_code == 403
    assert client.get("/expenses/999").status_code == 404


def test_receipt_upload(login_as, employee):
    client = login_as(employee)
    expense = _create(client)
    response = client.post(
        f"/expenses/{expense['id']}/receipts",
        data={"receipt": (io.BytesIO(b"png bytes"), "taxi.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 201, response.get_json()
    receipt = response.get_json()["receipt"]
    assert receipt["original_name"] == "taxi.png"
    assert receipt["mimetype"] == "image/png"

    missing = client.post(
        f"/expenses/{expense['id']}/receipts", data={}, content_type="multipart/form-data"
    )
    assert missing.status_code == 400


def _upload(client, expense_id, content=b"png bytes", name="taxi.png"):
    response = client.post(
        f"/expenses/{expense_id}/receipts",
        data={"receipt": (io.BytesIO(content), name, "image/png")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["receipt"]


def test_receipt_download(login_as, employee, manager, make_user):
    outsider = make_user(UserRole.EMPLOYEE)
    client = login_as(employee)
    expense = _create(client)
    receipt = _upload(client, expense["id"], content=b"\x89PNG receipt")

    download = client.get(f"/expenses/receipts/{receipt['filename']}")
    assert download.status_code == 200
    assert download.data == b"\x89PNG receipt"
    assert download.mimetype == "image/png"
    assert "taxi.png" in download.headers["Content-Disposition"]
    download.close()

    client = login_as(manager)
    team_copy = client.get(f"/expenses/receipts/{receipt['filename']}")
    assert team_copy.status_code == 200
    team_copy.close()

    client = login_as(outsider)
    assert client.get(f"/expenses/receipts/{receipt['filename']}").status_code == 403
    assert client.get("/expenses/receipts/unknown.png").status_code == 404


def test_receipt_removal_is_limited_to_owner_drafts(login_as, employee, manager):
    client = login_as(employee)
    expense = _create(client)
    kept = _upload(client, expense["id"], name="kept.png")
    dropped = _upload(client, expense["id"], name="dropped.png")

    client = login_as(manager)
    assert client.delete(f"/expenses/{expense['id']}/receipts/{dropped['id']}").status_code == 403

    client = login_as(employee)
    response = client.delete(f"/expenses/{expense['id']}/receipts/{dropped['id']}")
    assert response.status_code == 200
    detail = client.get(f"/expenses/{expense['id']}").get_json()["expense"]
    assert [r["id"] for r in detail["receipts"]] == [kept["id"]]
    assert client.get(f"/expenses/receipts/{dropped['filename']}").status_code == 404
    assert client.delete(f"/expenses/{expense['id']}/receipts/{dropped['id']}").status_code == 404

    _post(client, expense["id"], "submit")
    locked = client.delete(f"/expenses/{expense['id']}/receipts/{kept['id']}")
    assert locked.status_code == 409
    assert locked.get_json() == {"error": "Receipts can only be removed from draft expenses."}
