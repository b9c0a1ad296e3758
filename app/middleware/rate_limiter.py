"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category, keyed by tenant
when one is known and by remote address otherwise.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

# Analysis walks every configuration using a structure; apply mutates in bulk.
ANALYSIS_LIMIT = "120/minute"
MUTATION_LIMIT = "30/minute"


def tenant_rate_limit_key():
    """Rate limit key: tenant_id if available, else remote IP."""
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def _is_mutation() -> bool:
    if flask_request.method == "GET":
        return False
    path = flask_request.path
    return "/analyze-" not in path and "/export-" not in path


def request_limit() -> str:
    """Limit string for the current request (evaluated per request)."""
    return MUTATION_LIMIT if _is_mutation() else ANALYSIS_LIMIT


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per tenant, falling back to remote IP):
        - Analysis / export endpoints: 120/minute
        - Mutating endpoints:           30/minute (confirm, migrate, provision)
        - Health check:                 exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("permission_impact")
    if bp:
        limiter.limit(request_limit, key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: analysis: %s, mutations: %s", ANALYSIS_LIMIT, MUTATION_LIMIT,
    )
