"""
Tenant Context Middleware: resolves the caller's tenant for API requests.

Authentication lives in front of this service; the gateway forwards the
authenticated tenant in the ``X-Tenant-Id`` header. This middleware:
  1. Parses the header (non-numeric → 400)
  2. Verifies the tenant exists and is active (unknown/inactive → 403)
  3. Sets g.tenant_id and g.tenant for route handlers

Requests without the header fall through unchanged; blueprints may still
take ``tenant_id`` from the query string or JSON body.

Chain order:
  timing.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, jsonify, request

from app.models import db
from app.models.auth import Tenant

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-Id"

# Paths that never carry tenant context
TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.tenant_id = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        raw = request.headers.get(TENANT_HEADER)
        if raw is None:
            return None
        if not raw.strip().isdigit():
            return jsonify({"error": f"{TENANT_HEADER} must be an integer"}), 400

        tenant_id = int(raw)
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning(
                "Tenant %d from %s not found", tenant_id, TENANT_HEADER,
                extra={"tenant_id": tenant_id, "event_type": "tenant_not_found"},
            )
            return jsonify({"error": "Tenant not found"}), 403
        if not tenant.is_active:
            logger.warning(
                "Tenant %d is deactivated", tenant_id,
                extra={"tenant_id": tenant_id, "event_type": "tenant_deactivated"},
            )
            return jsonify({"error": "Tenant account is deactivated"}), 403

        g.tenant = tenant
        g.tenant_id = tenant.id
        return None

    logger.info("Tenant context middleware installed")
