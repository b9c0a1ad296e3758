"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workflow not found")
    return api_error(E.VALIDATION_REQUIRED, "tenant_id is required")
    return api_error(E.CONFLICT_STATE, "Configuration changed", details={"version": 3})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation: 400 missing tenant, 422 rule broken by the requested change
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not found: 404, also for rows of another tenant
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict: 409 stale configuration version
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Server: 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """JSON error body ``{"error", "code", "details"?}`` plus its HTTP status.

    The status defaults to the code's entry in ``_DEFAULT_STATUS`` (400 when
    the code is unknown); ``details`` is only included when non-empty.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
