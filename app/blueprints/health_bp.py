"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready   simple 200 for load balancers
    GET /api/v1/health/live    detailed system health (DB, schema)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import inspect as sa_inspect

from app.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

# Tables the impact engine cannot work without
_CORE_TABLES = (
    "item_type_configurations",
    "permission_assignments",
    "project_permission_assignments",
    "field_owner_permissions",
    "status_owner_permissions",
    "field_status_permissions",
    "executor_permissions",
    "worker_permissions",
    "creator_permissions",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe: always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Schema ───────────────────────────────────────────────────────
    if overall:
        try:
            present = set(sa_inspect(db.engine).get_table_names())
            missing = [t for t in _CORE_TABLES if t not in present]
            if missing:
                checks["schema"] = {"status": "missing_tables", "missing": missing}
                overall = False
            else:
                checks["schema"] = {"status": "ok", "tables": len(present)}
        except Exception as exc:
            checks["schema"] = {"status": "error", "detail": str(exc)}
            overall = False
            logger.error("Health check: schema inspection failed: %s", exc)

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Permission Impact Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
