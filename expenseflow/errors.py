"""Error taxonomy for expense and workflow operations, plus Flask handlers."""
from __future__ import annotations

import logging

from flask import Flask
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ExpenseFlowError(Exception):
    """Base class for errors the caller can recover from."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ExpenseFlowError):
    """Malformed or disallowed input."""

    status_code = 400


class LimitExceededError(ValidationError):
    """Converted amount is above the company's maximum expense amount."""


class AuthorizationError(ExpenseFlowError):
    status_code = 403


class NotOwnerError(AuthorizationError):
    pass


class UnauthorizedApproverError(AuthorizationError):
    pass


class InvalidStateError(ExpenseFlowError):
    """Action attempted from a status that forbids it."""

    status_code = 409


class NotFoundError(ExpenseFlowError):
    status_code = 404


class ConflictError(ExpenseFlowError):
    """The expense changed underneath a transition (stale version)."""

    status_code = 409


class ExternalServiceDegraded(ExpenseFlowError):
    """An external lookup failed. Conversions absorb it; reference-data routes answer 503."""

    status_code = 503


def register_error_handlers(app: Flask) -> None:
    from expenseflow import db
    from expenseflow.utils.helpers import json_response

    @app.errorhandler(ExpenseFlowError)
    def handle_expenseflow_error(exc: ExpenseFlowError):
        db.session.rollback()
        return json_response({"error": exc.message}, status=exc.status_code)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return json_response({"error": exc.description}, status=exc.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        logger.exception("Unhandled error while processing request")
        db.session.rollback()
        return json_response({"error": "An unexpected error occurred."}, status=500)
