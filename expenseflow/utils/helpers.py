"""General helper utilities."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Optional

from flask import jsonify, request
from flask_login import current_user

from expenseflow.errors import ValidationError
from expenseflow.utils.permissions import Permission, has_permission

JsonView = Callable[..., Any]

TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


def json_response(payload: Any, status: int = 200):
    """Return a JSON response with status code."""
    return jsonify(payload), status


def get_payload() -> Dict[str, Any]:
    """Request body as a dict, from JSON or form data."""
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def parse_flag(value: Any, field: str) -> bool:
    """Boolean from JSON or form input; form values arrive as strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
    raise ValidationError(f"'{field}' must be true or false.")


def text_fields(payload: Dict[str, Any], fields: Iterable[str]) -> List[str]:
    """Names of non-null ``fields`` in ``payload`` that are not strings."""
    return sorted(
        field
        for field in fields
        if payload.get(field) is not None and not isinstance(payload[field], str)
    )


def optional_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def permission_required(*permissions: Permission):
    """Restrict a route to users holding every listed permission."""
    def decorator(view_func: JsonView) -> JsonView:
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return json_response({"error": "Authentication required."}, status=401)
            for permission in permissions:
                if not has_permission(current_user, permission):
                    return json_response(
                        {"error": f"Permission {permission.value} required."}, status=403
                    )
            return view_func(*args, **kwargs)

        return wrapped

    return decorator
