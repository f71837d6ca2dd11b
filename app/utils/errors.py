"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Operation cycle not found")
    return api_error(E.VALIDATION_REQUIRED, "operation_template_id is required")
    return api_error(E.VALIDATION_INVALID, "Bad payload", status=422, details={"title": "required"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return ``(jsonify(body), http_status)`` for a Flask view.

    ``status`` overrides the code's default mapping (400 when unmapped).
    ``details`` is included only when non-empty.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)
