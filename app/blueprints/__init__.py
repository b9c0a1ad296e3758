"""
Permission Impact Engine
Blueprint registry and shared request helpers.
"""

from flask import g, request

from app.core.exceptions import ValidationError


def tenant_id_from_request():
    """Resolve the caller's tenant: middleware context, then query string, then JSON body."""
    tid = getattr(g, "tenant_id", None)
    if tid is not None:
        return tid
    tid = request.args.get("tenant_id", type=int)
    if tid is not None:
        return tid
    body = request.get_json(silent=True) or {}
    raw = body.get("tenant_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def int_list(payload: dict, key: str) -> list[int]:
    """Read an optional list of integer ids from a JSON payload.

    Raises:
        ValidationError: the value is not a list of integers.
    """
    raw = payload.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list) or any(isinstance(v, bool) or not isinstance(v, int) for v in raw):
        raise ValidationError(f"{key} must be a list of integers", details={key: "invalid"})
    return raw
