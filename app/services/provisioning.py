"""
Provisioning Engine: empty permission rows for every anchor a configuration exposes.

Row keys per kind (unique per configuration):

    FIELD_OWNERS    field_id
    STATUS_OWNERS   workflow_status_id
    FIELD_STATUS    (field_id, workflow_status_id, access_type)   EDITOR + VIEWER
    EXECUTORS       transition_id
    WORKERS         ()
    CREATORS        ()

Two entry points with different cleanup rules:
  - provision_for_new_anchors: anchors were just (re-)introduced; existing
    rows for them get any stale tenant assignment cleared.
  - create_permissions_for_configuration: fill in whatever is missing and
    never touch existing rows or their assignments.

``provision_missing_rows`` and the ``_provision_*`` helpers only flush; the other
public functions commit.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from app.core.exceptions import ValidationError
from app.models import db
from app.models.structure import Field, FieldSet, ItemTypeConfiguration, Workflow
from app.services.assignment_resolution import clear_tenant_assignment
from app.services.helpers.scoped_queries import ensure_same_tenant, get_scoped, get_scoped_many
from app.services.impact_analysis import (
    configurations_using_field_set,
    configurations_using_workflow,
    load_permission_rows,
)
from app.services.permission_catalog import FieldStatusType, PermissionKind

logger = logging.getLogger(__name__)

ACCESS_TYPES = (FieldStatusType.EDITOR.value, FieldStatusType.VIEWER.value)


def row_key(kind: PermissionKind, row) -> tuple:
    if kind is PermissionKind.FIELD_OWNERS:
        return (row.field_id,)
    if kind is PermissionKind.STATUS_OWNERS:
        return (row.workflow_status_id,)
    if kind is PermissionKind.FIELD_STATUS:
        return (row.field_id, row.workflow_status_id, row.access_type)
    if kind is PermissionKind.EXECUTORS:
        return (row.transition_id,)
    return ()


def _new_row(kind: PermissionKind, tenant_id: int, configuration_id: int, key: tuple):
    attrs = {"tenant_id": tenant_id, "item_type_configuration_id": configuration_id}
    if kind is PermissionKind.FIELD_OWNERS:
        attrs["field_id"] = key[0]
    elif kind is PermissionKind.STATUS_OWNERS:
        attrs["workflow_status_id"] = key[0]
    elif kind is PermissionKind.FIELD_STATUS:
        attrs["field_id"], attrs["workflow_status_id"], attrs["access_type"] = key
    elif kind is PermissionKind.EXECUTORS:
        attrs["transition_id"] = key[0]
    return kind.model(**attrs)


def expected_keys(field_ids: Iterable[int], workflow: Workflow) -> dict[PermissionKind, list[tuple]]:
    """Every row key a configuration with these fields and this workflow should have."""
    fields = sorted(set(field_ids))
    ws_ids = [ws.id for ws in workflow.statuses]
    return {
        PermissionKind.FIELD_OWNERS: [(f,) for f in fields],
        PermissionKind.STATUS_OWNERS: [(ws,) for ws in ws_ids],
        PermissionKind.FIELD_STATUS: [(f, ws, a) for f in fields for ws in ws_ids for a in ACCESS_TYPES],
        PermissionKind.EXECUTORS: [(t.id,) for t in workflow.transitions],
        PermissionKind.WORKERS: [()],
        PermissionKind.CREATORS: [()],
    }


def describe_key(kind: PermissionKind, key: tuple, field_set: FieldSet, workflow: Workflow) -> dict:
    """Anchor description for a row that does not exist yet (same shape as describe_anchor)."""
    fields = field_set.fields_by_id()
    statuses = {ws.id: ws for ws in workflow.statuses}
    transitions = {t.id: t for t in workflow.transitions}
    info: dict = {}
    if kind in (PermissionKind.FIELD_OWNERS, PermissionKind.FIELD_STATUS):
        f = fields.get(key[0])
        info["field_id"] = key[0]
        info["field_name"] = f.name if f else None
    if kind in (PermissionKind.STATUS_OWNERS, PermissionKind.FIELD_STATUS):
        ws_id = key[0] if kind is PermissionKind.STATUS_OWNERS else key[1]
        ws = statuses.get(ws_id)
        info["workflow_status_id"] = ws_id
        info["status_id"] = ws.status_id if ws else None
        info["status_name"] = ws.name if ws else None
        info["status_category"] = ws.status.category if ws and ws.status else None
    if kind is PermissionKind.EXECUTORS:
        t = transitions.get(key[0])
        info["transition_id"] = key[0]
        info["transition_name"] = t.label if t else None
        info["from_status_id"] = t.from_status.status_id if t else None
        info["to_status_id"] = t.to_status.status_id if t else None
    if kind is PermissionKind.FIELD_STATUS:
        info["access_type"] = key[2]
    return info


@dataclass
class ProvisionResult:
    created: dict[str, int] = field(default_factory=dict)
    cleared_assignments: int = 0

    @property
    def total_created(self) -> int:
        return sum(self.created.values())

    def merge(self, other: "ProvisionResult") -> None:
        for k, v in other.created.items():
            self.created[k] = self.created.get(k, 0) + v
        self.cleared_assignments += other.cleared_assignments

    def to_dict(self) -> dict:
        return {
            "created": dict(sorted(self.created.items())),
            "total_created": self.total_created,
            "cleared_assignments": self.cleared_assignments,
        }


@dataclass(frozen=True)
class NewAnchors:
    """Anchor ids newly exposed by a configuration's field set / workflow."""

    field_ids: frozenset[int] = frozenset()
    workflow_status_ids: frozenset[int] = frozenset()
    transition_ids: frozenset[int] = frozenset()

    @classmethod
    def of(cls, field_ids=(), workflow_status_ids=(), transition_ids=()) -> "NewAnchors":
        return cls(frozenset(field_ids), frozenset(workflow_status_ids), frozenset(transition_ids))

    @property
    def is_empty(self) -> bool:
        return not (self.field_ids or self.workflow_status_ids or self.transition_ids)


def _existing_rows(tenant_id: int, configuration_id: int) -> dict[PermissionKind, dict[tuple, object]]:
    return {
        kind: {row_key(kind, row): row for row in load_permission_rows(tenant_id, kind, [configuration_id])}
        for kind in PermissionKind
    }


def _wanted_for_new_anchors(configuration: ItemTypeConfiguration, anchors: NewAnchors) -> dict[PermissionKind, list[tuple]]:
    workflow = configuration.workflow
    ws_ids = sorted(ws.id for ws in workflow.statuses)
    field_ids = sorted(configuration.field_set.field_ids())

    wanted: dict[PermissionKind, list[tuple]] = {kind: [] for kind in PermissionKind}
    wanted[PermissionKind.FIELD_OWNERS] = [(f,) for f in sorted(anchors.field_ids)]
    wanted[PermissionKind.STATUS_OWNERS] = [(ws,) for ws in sorted(anchors.workflow_status_ids)]
    wanted[PermissionKind.EXECUTORS] = [(t,) for t in sorted(anchors.transition_ids)]

    pairs = set()
    for f in sorted(anchors.field_ids):
        pairs.update((f, ws) for ws in ws_ids)
    for ws in sorted(anchors.workflow_status_ids):
        pairs.update((f, ws) for f in field_ids)
    wanted[PermissionKind.FIELD_STATUS] = [(f, ws, a) for f, ws in sorted(pairs) for a in ACCESS_TYPES]
    return wanted


def _validate_anchors(tenant_id: int, configuration: ItemTypeConfiguration, anchors: NewAnchors) -> None:
    get_scoped_many(Field, anchors.field_ids, tenant_id=tenant_id)
    field_set = ensure_same_tenant(configuration.field_set, tenant_id)
    unknown_f = sorted(anchors.field_ids - set(field_set.field_ids()))
    if unknown_f:
        raise ValidationError(
            "Fields do not belong to the configuration's field set",
            details={"field_ids": unknown_f},
        )
    workflow = configuration.workflow
    unknown_ws = sorted(anchors.workflow_status_ids - {ws.id for ws in workflow.statuses})
    unknown_t = sorted(anchors.transition_ids - {t.id for t in workflow.transitions})
    if unknown_ws or unknown_t:
        raise ValidationError(
            "Anchors do not belong to the configuration's workflow",
            details={"workflow_status_ids": unknown_ws, "transition_ids": unknown_t},
        )


def _provision_rows(
    tenant_id: int,
    configuration: ItemTypeConfiguration,
    wanted: dict[PermissionKind, list[tuple]],
    *,
    clear_stale: bool,
) -> ProvisionResult:
    result = ProvisionResult()
    existing = _existing_rows(tenant_id, configuration.id)
    for kind in sorted(wanted, key=lambda k: k.order):
        have = existing[kind]
        for key in wanted[kind]:
            row = have.get(key)
            if row is None:
                row = _new_row(kind, tenant_id, configuration.id, key)
                db.session.add(row)
                have[key] = row
                result.created[kind.value] = result.created.get(kind.value, 0) + 1
            elif clear_stale and row.id is not None:
                if clear_tenant_assignment(tenant_id, kind, row.id):
                    result.cleared_assignments += 1
    db.session.flush()
    if result.cleared_assignments:
        logger.warning(
            "Cleared %d stale tenant assignments on re-added anchors of configuration %s",
            result.cleared_assignments,
            configuration.id,
            extra={"tenant_id": tenant_id, "item_type_configuration_id": configuration.id},
        )
    return result


def _provision_new_anchors(tenant_id: int, configuration: ItemTypeConfiguration, anchors: NewAnchors) -> ProvisionResult:
    ensure_same_tenant(configuration, tenant_id)
    if anchors.is_empty:
        return ProvisionResult()
    _validate_anchors(tenant_id, configuration, anchors)
    return _provision_rows(
        tenant_id, configuration, _wanted_for_new_anchors(configuration, anchors), clear_stale=True,
    )


def provision_missing_rows(tenant_id: int, configuration: ItemTypeConfiguration) -> ProvisionResult:
    ensure_same_tenant(configuration, tenant_id)
    ensure_same_tenant(configuration.field_set, tenant_id)
    ensure_same_tenant(configuration.workflow, tenant_id)
    wanted = expected_keys(configuration.field_set.field_ids(), configuration.workflow)
    return _provision_rows(tenant_id, configuration, wanted, clear_stale=False)


# ═════════════════════════════════════════════════════════════════════════════
# Public operations
# ═════════════════════════════════════════════════════════════════════════════


def provision_for_new_anchors(
    tenant_id: int,
    configuration: ItemTypeConfiguration,
    anchors: NewAnchors,
) -> ProvisionResult:
    """Create empty rows for anchors newly exposed by one configuration.

    Idempotent: existing rows are kept (their stale tenant assignment, if
    any, is cleared) and no duplicate is ever created. FIELD_STATUS rows are
    created as EDITOR+VIEWER pairs for every (field, workflow status)
    combination touching a new anchor.

    Raises:
        TenantIsolationError: configuration owned by another tenant.
        NotFoundError: a field id does not exist in the tenant.
        ValidationError: a field is not in the configuration's field set, or a
                         workflow status / transition is not in its workflow.
    """
    try:
        result = _provision_new_anchors(tenant_id, configuration, anchors)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Provisioned configuration %s: created=%d cleared=%d",
        configuration.id,
        result.total_created,
        result.cleared_assignments,
        extra={"tenant_id": tenant_id, "item_type_configuration_id": configuration.id},
    )
    return result


def provision_field_set(tenant_id: int, field_set_id: int, added_field_ids: Iterable[int]) -> ProvisionResult:
    """Provision rows for fields added to a field set, across every configuration using it."""
    get_scoped(FieldSet, field_set_id, tenant_id=tenant_id)
    anchors = NewAnchors.of(field_ids=added_field_ids)
    total = ProvisionResult()
    try:
        for cfg in configurations_using_field_set(tenant_id, field_set_id):
            total.merge(_provision_new_anchors(tenant_id, cfg, anchors))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Provisioned field set %s: fields=%d created=%d",
        field_set_id,
        len(anchors.field_ids),
        total.total_created,
        extra={"tenant_id": tenant_id},
    )
    return total


def provision_workflow(
    tenant_id: int,
    workflow_id: int,
    new_workflow_status_ids: Iterable[int] = (),
    new_transition_ids: Iterable[int] = (),
) -> ProvisionResult:
    """Provision rows for statuses/transitions added to a workflow, across every configuration using it."""
    get_scoped(Workflow, workflow_id, tenant_id=tenant_id)
    anchors = NewAnchors.of(workflow_status_ids=new_workflow_status_ids, transition_ids=new_transition_ids)
    total = ProvisionResult()
    try:
        for cfg in configurations_using_workflow(tenant_id, workflow_id):
            total.merge(_provision_new_anchors(tenant_id, cfg, anchors))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Provisioned workflow %s: statuses=%d transitions=%d created=%d",
        workflow_id,
        len(anchors.workflow_status_ids),
        len(anchors.transition_ids),
        total.total_created,
        extra={"tenant_id": tenant_id},
    )
    return total


def create_permissions_for_configuration(tenant_id: int, configuration: ItemTypeConfiguration) -> ProvisionResult:
    """Create every missing row for a configuration's current field set and workflow.

    Existing rows and their assignments are left alone.
    """
    try:
        result = provision_missing_rows(tenant_id, configuration)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Created %d permission rows for configuration %s",
        result.total_created,
        configuration.id,
        extra={"tenant_id": tenant_id, "item_type_configuration_id": configuration.id},
    )
    return result
