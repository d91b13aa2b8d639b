"""Authentication routes."""
from __future__ import annotations

from typing import Any

from flask import current_app, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from expenseflow import db
from expenseflow.models import Company, User, UserRole
from expenseflow.services import currency_service
from expenseflow.utils.helpers import get_payload, json_response, parse_flag, text_fields
from expenseflow.utils.permissions import permissions_for

from . import auth_bp


@auth_bp.route("/signup", methods=["POST"])
def signup() -> Any:
    """Register a new company together with its first admin."""
    payload = get_payload()

    required_fields = {"email", "password", "first_name", "last_name", "company_name", "country"}
    if missing := {field for field in required_fields if not payload.get(field)}:
        return json_response(
            {"error": f"Missing required fields: {', '.join(sorted(missing))}"}, status=400
        )
    if wrong := text_fields(payload, required_fields | {"currency_code"}):
        return json_response({"error": f"Fields must be strings: {', '.join(wrong)}"}, status=400)

    if len(payload["password"]) < 6:
        return json_response({"error": "Password must be at least 6 characters."}, status=400)

    email = payload["email"].strip().lower()
    if User.query.filter_by(email=email).first():
        return json_response({"error": "Email already registered."}, status=409)
    if Company.query.filter_by(name=payload["company_name"].strip()).first():
        return json_response({"error": "Company already exists."}, status=409)

    currency_code = payload.get("currency_code")
    if not currency_code:
        currency_code = currency_service.get_default_currency_for_country(payload["country"])[
            "currency_code"
        ] or current_app.config.get("DEFAULT_CURRENCY", "USD")

    company = Company(
        name=payload["company_name"].strip(),
        country=payload["country"].strip(),
        currency_code=currency_code.upper(),
    )
    company.seed_default_categories()
    db.session.add(company)

    user = User(
        first_name=payload["first_name"].strip(),
        last_name=payload["last_name"].strip(),
        email=email,
        role=UserRole.ADMIN,
        company=company,
    )
    user.set_password(payload["password"])
    db.session.add(user)
    db.session.commit()

    current_app.logger.info("Company %s bootstrapped by %s", company.id, user.email)
    login_user(user)
    return json_response(
        {"message": "Signup successful.", "user": user.to_dict(), "company": company.to_dict()},
        status=201,
    )


@auth_bp.route("/login", methods=["POST"])
def login() -> Any:
    """Authenticate a user using email/password."""
    payload = get_payload()
    if text_fields(payload, ("email", "password")):
        return json_response({"error": "Email and password must be strings."}, status=400)
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password")

    if not email or not password:
        return json_response({"error": "Email and password are required."}, status=400)

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return json_response({"error": "Invalid credentials."}, status=401)

    if not user.is_active:
        return json_response({"error": "User account is inactive."}, status=403)

    login_user(user, remember=parse_flag(payload.get("remember", False), "remember"))
    return json_response({"message": "Login successful.", "user": user.to_dict()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout() -> Any:
    """Terminate the user session."""
    logout_user()
    session.clear()
    return json_response({"message": "Logged out."})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me() -> Any:
    return json_response(
        {
            "user": current_user.to_dict(),
            "company": current_user.company.to_dict(),
            "permissions": sorted(p.value for p in permissions_for(current_user.role)),
        }
    )


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token() -> Any:
    """Token for the X-CSRFToken header on state-changing requests."""
    return json_response({"csrf_token": generate_csrf()})
