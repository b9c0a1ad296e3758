"""Permission impact & migration blueprint.

REST API over the impact engine. Analysis endpoints are read-only; the
confirm / migrate / provision endpoints mutate in a single transaction.

Endpoint groups:
  Field set edits       POST /api/v1/field-sets/<id>/analyze-removal-impact
                        POST /api/v1/field-sets/<id>/export-removal-impact
                        POST /api/v1/field-sets/<id>/export-removal-impact-csv
                        POST /api/v1/field-sets/<id>/remove-orphaned-permissions
                        POST /api/v1/field-sets/<id>/provision-permissions
  Workflow edits        POST /api/v1/workflows/<id>/analyze-status-removal-impact
                        POST /api/v1/workflows/<id>/analyze-transition-removal-impact
                        POST /api/v1/workflows/<id>/export-removal-impact-csv
                        POST /api/v1/workflows/<id>/confirm-removal
                        POST /api/v1/workflows/<id>/provision-permissions
  Item-type-sets        POST /api/v1/item-type-sets/<id>/analyze-configuration-removal-impact
                        POST /api/v1/item-type-sets/<id>/export-configuration-removal-impact-csv
                        POST /api/v1/item-type-sets/<id>/remove-configuration-permissions
  Configuration swaps   GET  /api/v1/item-type-configurations/<id>/migration-impact
                        GET  /api/v1/item-type-configurations/<id>/export-migration-impact-csv
                        POST /api/v1/item-type-configurations/<id>/migrate-permissions
                        POST /api/v1/item-type-configurations/<id>/provision-permissions

Permission references in request bodies are objects:
    {"permission_type": "FIELD_OWNERS" | "FIELD_EDITORS" | ..., "permission_id": 12}

tenant_id is resolved from the X-Tenant-Id header (tenant context middleware),
else from the query string or JSON body.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import Blueprint, Response, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.impact_analysis as impact_analysis
import app.services.migration_service as migration
import app.services.provisioning as provisioning
from app.blueprints import int_list, tenant_id_from_request
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.structure import ItemTypeConfiguration
from app.services.helpers.scoped_queries import get_scoped
from app.services.impact_report import impact_report_to_csv, impact_report_to_json, migration_impact_to_csv
from app.services.permission_catalog import PermissionKind, PermissionRef
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

permission_impact_bp = Blueprint("permission_impact", __name__, url_prefix="/api/v1")


# ── Request helpers ───────────────────────────────────────────────────────────


def _tenant_required() -> tuple[int | None, tuple | None]:
    tid = tenant_id_from_request()
    if not tid:
        return None, api_error(E.VALIDATION_REQUIRED, "tenant_id is required")
    return tid, None


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _optional_int(value, name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", details={name: "invalid"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", details={name: "invalid"}) from None


def _flag(payload: dict, name: str) -> bool:
    value = payload.get(name, False)
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean", details={name: "invalid"})
    return value


def _permission_refs(payload: dict, key: str = "preserve_permission_ids") -> list[PermissionRef] | None:
    """Parse a list of permission references; None when the key is absent or null."""
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ValidationError(f"{key} must be a list", details={key: "invalid"})
    refs = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"{key}[{i}] must be an object", details={key: i})
        try:
            kind = PermissionKind.from_label(str(item.get("permission_type") or ""))
        except ValueError:
            raise ValidationError(
                f"{key}[{i}] has an unknown permission_type",
                details={key: i, "permission_type": item.get("permission_type")},
            ) from None
        refs.append(PermissionRef(kind, _optional_int(item.get("permission_id"), f"{key}[{i}].permission_id")))
    if any(r.permission_id is None for r in refs):
        raise ValidationError(f"{key} entries need a permission_id", details={key: "invalid"})
    return refs


def _attachment(content: str, mimetype: str, stem: str, ext: str) -> Response:
    prefix = current_app.config.get("IMPACT_EXPORT_FILENAME_PREFIX", "permission-impact")
    date_str = datetime.now(timezone.utc).strftime("%Y%m%d")
    filename = f"{prefix}-{stem}-{date_str}.{ext}"
    return Response(
        content,
        mimetype=mimetype,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# ── Error handlers ────────────────────────────────────────────────────────────


@permission_impact_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@permission_impact_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), status=422, details=error.details)


@permission_impact_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error), details={"field": error.field, "value": error.value})


@permission_impact_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in permission_impact_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Field sets  (/api/v1/field-sets/<id>/...)
# ═════════════════════════════════════════════════════════════════════════


def _field_set_report(field_set_id: int, tenant_id: int, data: dict):
    return impact_analysis.analyze_field_set_impact(
        tenant_id,
        field_set_id,
        int_list(data, "removed_field_configuration_ids"),
        int_list(data, "added_field_configuration_ids"),
    )


@permission_impact_bp.route("/field-sets/<int:field_set_id>/analyze-removal-impact", methods=["POST"])
def analyze_field_set_removal(field_set_id):
    """Preview the permission rows a field set edit would orphan.

    Body: {tenant_id?, removed_field_configuration_ids, added_field_configuration_ids?}
    Returns: ImpactReport dict.
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    report = _field_set_report(field_set_id, tenant_id, _body())
    return jsonify(report.to_dict()), 200


@permission_impact_bp.route("/field-sets/<int:field_set_id>/export-removal-impact", methods=["POST"])
def export_field_set_removal_json(field_set_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    report = _field_set_report(field_set_id, tenant_id, _body())
    return _attachment(impact_report_to_json(report), "application/json", f"field-set-{field_set_id}", "json")


@permission_impact_bp.route("/field-sets/<int:field_set_id>/export-removal-impact-csv", methods=["POST"])
def export_field_set_removal_csv(field_set_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    report = _field_set_report(field_set_id, tenant_id, _body())
    return _attachment(impact_report_to_csv(report), "text/csv", f"field-set-{field_set_id}", "csv")


@permission_impact_bp.route("/field-sets/<int:field_set_id>/remove-orphaned-permissions", methods=["POST"])
def remove_field_set_orphans(field_set_id):
    """Confirm a field set edit: delete orphaned rows and their assignments.

    Body: {
        tenant_id?, removed_field_configuration_ids, added_field_configuration_ids?,
        preserve_permission_ids?, only_without_assignments?
    }
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = _body()
    removed = int_list(data, "removed_field_configuration_ids")
    added = int_list(data, "added_field_configuration_ids")
    if _flag(data, "only_without_assignments"):
        summary = migration.remove_permissions_without_assignments(tenant_id, field_set_id, removed, added)
    else:
        summary = migration.remove_orphaned_field_set_permissions(
            tenant_id, field_set_id, removed, added, _permission_refs(data) or [],
        )
    return jsonify(summary), 200


@permission_impact_bp.route("/field-sets/<int:field_set_id>/provision-permissions", methods=["POST"])
def provision_field_set(field_set_id):
    """Create empty rows for fields added to a field set.  Body: {added_field_ids}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = provisioning.provision_field_set(tenant_id, field_set_id, int_list(_body(), "added_field_ids"))
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Workflows  (/api/v1/workflows/<id>/...)
# ═════════════════════════════════════════════════════════════════════════


def _workflow_report(workflow_id: int, tenant_id: int, data: dict):
    return impact_analysis.analyze_workflow_impact(
        tenant_id,
        workflow_id,
        int_list(data, "removed_workflow_status_ids"),
        int_list(data, "removed_transition_ids"),
    )


@permission_impact_bp.route("/workflows/<int:workflow_id>/analyze-status-removal-impact", methods=["POST"])
def analyze_status_removal(workflow_id):
    """Preview removing workflow statuses (and the transitions touching them).

    Body: {tenant_id?, removed_workflow_status_ids}
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = _body()
    report = impact_analysis.analyze_workflow_impact(
        tenant_id, workflow_id, int_list(data, "removed_workflow_status_ids"), (),
    )
    return jsonify(report.to_dict()), 200


@permission_impact_bp.route("/workflows/<int:workflow_id>/analyze-transition-removal-impact", methods=["POST"])
def analyze_transition_removal(workflow_id):
    """Preview removing transitions.  Body: {tenant_id?, removed_transition_ids}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = _body()
    report = impact_analysis.analyze_workflow_impact(
        tenant_id, workflow_id, (), int_list(data, "removed_transition_ids"),
    )
    return jsonify(report.to_dict()), 200


@permission_impact_bp.route("/workflows/<int:workflow_id>/export-removal-impact-csv", methods=["POST"])
def export_workflow_removal_csv(workflow_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    report = _workflow_report(workflow_id, tenant_id, _body())
    return _attachment(impact_report_to_csv(report), "text/csv", f"workflow-{workflow_id}", "csv")


@permission_impact_bp.route("/workflows/<int:workflow_id>/confirm-removal", methods=["POST"])
def confirm_workflow_removal(workflow_id):
    """Confirm a workflow edit: delete orphaned rows and their assignments.

    Body: {tenant_id?, removed_workflow_status_ids?, removed_transition_ids?, preserve_permission_ids?}
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = _body()
    summary = migration.remove_orphaned_workflow_permissions(
        tenant_id,
        workflow_id,
        int_list(data, "removed_workflow_status_ids"),
        int_list(data, "removed_transition_ids"),
        _permission_refs(data) or [],
    )
    return jsonify(summary), 200


@permission_impact_bp.route("/workflows/<int:workflow_id>/provision-permissions", methods=["POST"])
def provision_workflow(workflow_id):
    """Create empty rows for new statuses/transitions.  Body: {new_workflow_status_ids?, new_transition_ids?}"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = _body()
    result = provisioning.provision_workflow(
        tenant_id,
        workflow_id,
        int_list(data, "new_workflow_status_ids"),
        int_list(data, "new_transition_ids"),
    )
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Item-type-sets  (/api/v1/item-type-sets/<id>/...)
# ═════════════════════════════════════════════════════════════════════════


def _configuration_removal_report(item_type_set_id: int, tenant_id: int, data: dict):
    return impact_analysis.analyze_configuration_removal_impact(
        tenant_id, item_type_set_id, int_list(data, "removed_item_type_configuration_ids"),
    )


@permission_impact_bp.route(
    "/item-type-sets/<int:item_type_set_id>/analyze-configuration-removal-impact", methods=["POST"],
)
def analyze_configuration_removal(item_type_set_id):
    """Preview the assigned rows lost when configurations leave an item-type-set.

    Body: {tenant_id?, removed_item_type_configuration_ids}
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    report = _configuration_removal_report(item_type_set_id, tenant_id, _body())
    return jsonify(report.to_dict()), 200


@permission_impact_bp.route(
    "/item-type-sets/<int:item_type_set_id>/export-configuration-removal-impact-csv", methods=["POST"],
)
def export_configuration_removal_csv(item_type_set_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    report = _configuration_removal_report(item_type_set_id, tenant_id, _body())
    return _attachment(impact_report_to_csv(report), "text/csv", f"item-type-set-{item_type_set_id}", "csv")


@permission_impact_bp.route(
    "/item-type-sets/<int:item_type_set_id>/remove-configuration-permissions", methods=["POST"],
)
def remove_configuration_permissions(item_type_set_id):
    """Delete the rows (and assignments) of configurations leaving the set.

    Body: {
        tenant_id?, removed_item_type_configuration_ids,
        preserve_permission_ids?, delete_configurations?
    }
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = _body()
    summary = migration.remove_configuration_permissions(
        tenant_id,
        item_type_set_id,
        int_list(data, "removed_item_type_configuration_ids"),
        _permission_refs(data) or [],
        delete_configurations=_flag(data, "delete_configurations"),
    )
    return jsonify(summary), 200


# ═════════════════════════════════════════════════════════════════════════
# Item type configurations  (/api/v1/item-type-configurations/<id>/...)
# ═════════════════════════════════════════════════════════════════════════


def _migration_impact(configuration_id: int, tenant_id: int):
    return migration.analyze_migration_impact(
        tenant_id,
        configuration_id,
        _optional_int(request.args.get("new_field_set_id"), "new_field_set_id"),
        _optional_int(request.args.get("new_workflow_id"), "new_workflow_id"),
    )


@permission_impact_bp.route("/item-type-configurations/<int:configuration_id>/migration-impact", methods=["GET"])
def migration_impact(configuration_id):
    """Preview a field set / workflow swap.

    Query params: tenant_id?, new_field_set_id?, new_workflow_id?
    Returns: MigrationImpact dict (carries ``version`` for the apply call).
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(_migration_impact(configuration_id, tenant_id).to_dict()), 200


@permission_impact_bp.route(
    "/item-type-configurations/<int:configuration_id>/export-migration-impact-csv", methods=["GET"],
)
def export_migration_impact_csv(configuration_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    impact = _migration_impact(configuration_id, tenant_id)
    return _attachment(
        migration_impact_to_csv(impact), "text/csv", f"configuration-{configuration_id}-migration", "csv",
    )


@permission_impact_bp.route(
    "/item-type-configurations/<int:configuration_id>/migrate-permissions", methods=["POST"],
)
def migrate_permissions(configuration_id):
    """Apply a field set / workflow swap.

    Body: {
        tenant_id?, new_field_set_id?, new_workflow_id?,
        preserve_permission_ids?  (list of refs; omitted/null = every preservable row),
        preserve_all_preservable?, remove_all?, expected_version?
    }
    """
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = _body()
    result = migration.apply_migration(
        tenant_id,
        configuration_id,
        new_field_set_id=_optional_int(data.get("new_field_set_id"), "new_field_set_id"),
        new_workflow_id=_optional_int(data.get("new_workflow_id"), "new_workflow_id"),
        preserve_permission_ids=_permission_refs(data),
        preserve_all_preservable=_flag(data, "preserve_all_preservable"),
        remove_all=_flag(data, "remove_all"),
        expected_version=_optional_int(data.get("expected_version"), "expected_version"),
    )
    return jsonify(result.to_dict()), 200


@permission_impact_bp.route(
    "/item-type-configurations/<int:configuration_id>/provision-permissions", methods=["POST"],
)
def provision_configuration(configuration_id):
    """Create every missing row for the configuration's current structure."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    configuration = get_scoped(ItemTypeConfiguration, configuration_id, tenant_id=tenant_id)
    result = provisioning.create_permissions_for_configuration(tenant_id, configuration)
    return jsonify(result.to_dict()), 200
