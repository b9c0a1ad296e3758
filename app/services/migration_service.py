"""
Selective Migration Applier: swap a configuration's field set and/or workflow
while keeping the permission rows (and assignments) the admin chose.

Flow (one transaction for apply):

    analyze_migration_impact ─► MigrationImpact (preview, carries ``version``)
                                      │ admin picks preserve set
    apply_migration ─────────────────►│
        1. validate flags / version
        2. re-plan against current state (never trusts the preview)
        3. delete non-preserved impacted rows + tenant/project assignments
        4. re-anchor preserved rows onto the matching new anchor
        5. switch the configuration (version bump)
        6. provision rows for anchors still missing

Impacted kinds: FIELD_OWNERS when the field set changes, STATUS_OWNERS and
EXECUTORS when the workflow changes, FIELD_STATUS on either. Other rows of
the configuration are left untouched whatever the preserve flags say.

Preserve-set resolution:
    remove_all               → nothing
    preserve_all_preservable → every row with can_be_preserved
    explicit list            → exactly that list (empty list = nothing)
    nothing given            → every row with can_be_preserved

Also hosts the confirmation step of the field set / workflow edit flows
(``remove_orphaned_*``), the cleanup of configurations leaving an
item-type-set and the no-assignment cleanup.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConflictError, ValidationError
from app.models import db
from app.models.structure import FieldSet, ItemTypeConfiguration, Workflow
from app.services.assignment_resolution import delete_assignments
from app.services.helpers.scoped_queries import ensure_same_tenant, get_scoped
from app.services.impact_analysis import (
    AffectedGroup,
    assess_groups,
    collect_configuration_removal_impact,
    collect_field_set_impact,
    collect_workflow_impact,
    load_permission_rows,
)
from app.services.impact_report import MigrationImpact, PermissionImpact
from app.services.permission_catalog import PermissionKind, PermissionRef, report_label
from app.services.preservability import Assessment, assess_rows
from app.services.provisioning import (
    ProvisionResult,
    describe_key,
    expected_keys,
    provision_missing_rows,
    row_key,
)
from app.services.structural_diff import StructureChange, compare_structures

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Planning
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class MigrationPlan:
    configuration: ItemTypeConfiguration
    old_field_set: FieldSet
    new_field_set: FieldSet
    old_workflow: Workflow
    new_workflow: Workflow
    change: StructureChange
    assessments: list[Assessment] = field(default_factory=list)
    # Row key each preservable row takes in the new structure.
    targets: dict[PermissionRef, tuple] = field(default_factory=dict)
    new_keys: dict[PermissionKind, list[tuple]] = field(default_factory=dict)
    # Rows of kinds the change leaves alone; never deleted.
    untouched: set[PermissionRef] = field(default_factory=set)

    @property
    def refs(self) -> set[PermissionRef]:
        return {a.ref for a in self.assessments}

    @property
    def preservable_refs(self) -> set[PermissionRef]:
        return {a.ref for a in self.assessments if a.can_be_preserved}

    @property
    def project_ids(self) -> list[int]:
        return [p.id for p in self.configuration.item_type_set.scoped_projects()]


def impacted_kinds(change: StructureChange) -> list[PermissionKind]:
    """Kinds whose anchors a swap can move, in report order.

    Field owners follow the field set, status owners and executors the
    workflow, field status rows either side. Workers and creators hang off
    the configuration itself and are never impacted.
    """
    kinds = set()
    if change.field_set_changed:
        kinds |= {PermissionKind.FIELD_OWNERS, PermissionKind.FIELD_STATUS}
    if change.workflow_changed:
        kinds |= {PermissionKind.STATUS_OWNERS, PermissionKind.FIELD_STATUS, PermissionKind.EXECUTORS}
    return sorted(kinds, key=lambda k: k.order)


def _target_key(kind: PermissionKind, row, new_workflow: Workflow) -> tuple | None:
    """Row key in the new structure sharing the row's logical anchor, if any."""
    ws_by_status = {ws.status_id: ws.id for ws in new_workflow.statuses}
    if kind is PermissionKind.FIELD_OWNERS:
        return (row.field_id,)
    if kind is PermissionKind.STATUS_OWNERS:
        ws = ws_by_status.get(row.workflow_status.status_id)
        return (ws,) if ws is not None else None
    if kind is PermissionKind.FIELD_STATUS:
        ws = ws_by_status.get(row.workflow_status.status_id)
        return (row.field_id, ws, row.access_type) if ws is not None else None
    # EXECUTORS
    if row.transition_id in {t.id for t in new_workflow.transitions}:
        return (row.transition_id,)
    matches = sorted(t.id for t in new_workflow.transitions if t.status_pair == row.transition.status_pair)
    return (matches[0],) if matches else None


def _plan(
    tenant_id: int,
    configuration_id: int,
    new_field_set_id: int | None,
    new_workflow_id: int | None,
) -> MigrationPlan:
    configuration = get_scoped(ItemTypeConfiguration, configuration_id, tenant_id=tenant_id)
    its = ensure_same_tenant(configuration.item_type_set, tenant_id)
    old_fs = ensure_same_tenant(configuration.field_set, tenant_id)
    old_wf = ensure_same_tenant(configuration.workflow, tenant_id)
    new_fs = get_scoped(FieldSet, new_field_set_id, tenant_id=tenant_id) if new_field_set_id is not None else old_fs
    new_wf = get_scoped(Workflow, new_workflow_id, tenant_id=tenant_id) if new_workflow_id is not None else old_wf

    change = compare_structures(old_fs, old_wf, new_fs, new_wf)
    if not change.field_set_changed and not change.workflow_changed:
        raise ValidationError(
            "No changes detected",
            details={"field_set_id": old_fs.id, "workflow_id": old_wf.id},
        )

    plan = MigrationPlan(
        configuration=configuration,
        old_field_set=old_fs,
        new_field_set=new_fs,
        old_workflow=old_wf,
        new_workflow=new_wf,
        change=change,
    )
    projects = its.scoped_projects()
    kinds = impacted_kinds(change)
    for kind in sorted(PermissionKind, key=lambda k: k.order):
        rows = load_permission_rows(tenant_id, kind, [configuration.id])
        if kind in kinds:
            plan.assessments.extend(assess_rows(tenant_id, kind, rows, change.new, projects))
        else:
            plan.untouched.update(PermissionRef(kind, r.id) for r in rows)

    # Two old rows can share one logical anchor in the new structure; the
    # lowest id keeps it and the others become removable.
    claimed: set[tuple] = set()
    for i, a in enumerate(plan.assessments):
        if not a.can_be_preserved:
            continue
        key = _target_key(a.ref.kind, a.row, new_wf)
        if key is None or (a.ref.kind, key) in claimed:
            plan.assessments[i] = replace(a, can_be_preserved=False)
            continue
        claimed.add((a.ref.kind, key))
        plan.targets[a.ref] = key

    wanted = expected_keys(new_fs.field_ids(), new_wf)
    plan.new_keys = {
        kind: [k for k in keys if (kind, k) not in claimed]
        for kind, keys in wanted.items()
        if kind in kinds
    }
    return plan


def _matching_anchor(kind: PermissionKind, key: tuple | None, plan: MigrationPlan) -> dict | None:
    if key is None:
        return None
    return describe_key(kind, key, plan.new_field_set, plan.new_workflow) or {}


def _fs_info(fs: FieldSet) -> dict:
    return {"id": fs.id, "name": fs.name}


def _wf_info(wf: Workflow) -> dict:
    return {"id": wf.id, "name": wf.name}


def analyze_migration_impact(
    tenant_id: int,
    configuration_id: int,
    new_field_set_id: int | None = None,
    new_workflow_id: int | None = None,
) -> MigrationImpact:
    """Preview a field set / workflow swap on one configuration.

    Every existing row is listed with its verdict; anchors of the new
    structure that no preservable row covers are listed as NEW.

    Raises:
        NotFoundError: configuration, field set or workflow missing / cross-tenant.
        ValidationError: neither the field set nor the workflow changes.
    """
    plan = _plan(tenant_id, configuration_id, new_field_set_id, new_workflow_id)
    cfg = plan.configuration
    its = cfg.item_type_set

    permissions = [
        PermissionImpact.from_assessment(
            a, cfg, matching_anchor=_matching_anchor(a.ref.kind, plan.targets.get(a.ref), plan),
        )
        for a in plan.assessments
    ]
    for kind, keys in plan.new_keys.items():
        for key in keys:
            access = key[2] if kind is PermissionKind.FIELD_STATUS else None
            permissions.append(
                PermissionImpact.new_anchor(
                    kind,
                    report_label(kind, access_type=access),
                    cfg,
                    describe_key(kind, key, plan.new_field_set, plan.new_workflow),
                )
            )
    permissions.sort(key=PermissionImpact.sort_key)

    impact = MigrationImpact(
        item_type_configuration_id=cfg.id,
        item_type_configuration_name=cfg.display_name,
        version=cfg.version,
        item_type_set_id=its.id,
        item_type_set_name=its.name,
        item_type_id=cfg.item_type_id,
        item_type_name=cfg.item_type.name,
        old_field_set=_fs_info(plan.old_field_set),
        new_field_set=_fs_info(plan.new_field_set),
        field_set_changed=plan.change.field_set_changed,
        old_workflow=_wf_info(plan.old_workflow),
        new_workflow=_wf_info(plan.new_workflow),
        workflow_changed=plan.change.workflow_changed,
        permissions=permissions,
    )
    logger.info(
        "Migration impact analysed: configuration=%s preservable=%d removable=%d new=%d",
        cfg.id,
        impact.total_preservable,
        impact.total_removable,
        impact.total_new,
        extra={"tenant_id": tenant_id, "item_type_configuration_id": cfg.id},
    )
    return impact


# ═════════════════════════════════════════════════════════════════════════════
# Apply
# ═════════════════════════════════════════════════════════════════════════════


def validate_flags(preserve_all_preservable: bool, remove_all: bool) -> None:
    if preserve_all_preservable and remove_all:
        raise ValidationError(
            "preserve_all_preservable and remove_all are mutually exclusive",
            details={"preserve_all_preservable": True, "remove_all": True},
        )


def resolve_preserve_set(
    plan: MigrationPlan,
    preserve_permission_ids: Iterable[PermissionRef] | None,
    preserve_all_preservable: bool = False,
    remove_all: bool = False,
) -> set[PermissionRef]:
    """Effective set of rows to keep.

    Raises:
        ValidationError: an explicit ref does not belong to the configuration.
    """
    if remove_all:
        return set()
    if preserve_all_preservable:
        return plan.preservable_refs
    if preserve_permission_ids is None:
        return plan.preservable_refs
    wanted = set(preserve_permission_ids)
    unknown = sorted(wanted - plan.refs - plan.untouched)
    if unknown:
        raise ValidationError(
            "Preserved permissions do not belong to the configuration",
            details={"preserve_permission_ids": [r.to_dict() for r in unknown]},
        )
    return wanted & plan.refs


@dataclass
class MigrationResult:
    item_type_configuration_id: int
    version: int
    deleted: dict[str, int] = field(default_factory=dict)
    preserved: int = 0
    reanchored: int = 0
    kept_orphaned: int = 0
    assignments_deleted: dict[str, int] = field(default_factory=lambda: {"tenant": 0, "project": 0, "residual_project": 0})
    provisioned: ProvisionResult = field(default_factory=ProvisionResult)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    def to_dict(self) -> dict:
        return {
            "item_type_configuration_id": self.item_type_configuration_id,
            "version": self.version,
            "deleted": dict(sorted(self.deleted.items())),
            "total_deleted": self.total_deleted,
            "preserved": self.preserved,
            "reanchored": self.reanchored,
            "kept_orphaned": self.kept_orphaned,
            "assignments_deleted": dict(self.assignments_deleted),
            "provisioned": self.provisioned.to_dict(),
        }


def _delete_rows(tenant_id: int, kind: PermissionKind, rows: list, project_ids: Iterable[int], counts: dict) -> int:
    """Delete rows of one kind with their tenant and project assignments."""
    if not rows:
        return 0
    removed = delete_assignments(tenant_id, kind, [r.id for r in rows], project_ids)
    for k, v in removed.items():
        counts[k] = counts.get(k, 0) + v
    for row in rows:
        db.session.delete(row)
    db.session.flush()
    return len(rows)


def _reanchor(kind: PermissionKind, row, key: tuple) -> bool:
    """Point a preserved row at its new anchor; returns True when anything moved."""
    if row_key(kind, row) == key:
        return False
    if kind is PermissionKind.STATUS_OWNERS:
        row.workflow_status_id = key[0]
    elif kind is PermissionKind.FIELD_STATUS:
        row.workflow_status_id = key[1]
    elif kind is PermissionKind.EXECUTORS:
        row.transition_id = key[0]
    return True


def apply_migration(
    tenant_id: int,
    configuration_id: int,
    new_field_set_id: int | None = None,
    new_workflow_id: int | None = None,
    preserve_permission_ids: Iterable[PermissionRef] | None = None,
    preserve_all_preservable: bool = False,
    remove_all: bool = False,
    expected_version: int | None = None,
) -> MigrationResult:
    """Swap a configuration's field set and/or workflow in one transaction.

    Args:
        tenant_id: Caller's tenant.
        configuration_id: ItemTypeConfiguration being migrated.
        new_field_set_id: Replacement field set (None keeps the current one).
        new_workflow_id: Replacement workflow (None keeps the current one).
        preserve_permission_ids: Rows to keep. None means "every preservable row".
        preserve_all_preservable: Keep every preservable row, ignoring the list.
        remove_all: Delete every existing row, ignoring the list.
        expected_version: Configuration version the preview was built on.

    Returns:
        MigrationResult with deletion / preservation / provisioning counts.

    Raises:
        ValidationError: conflicting flags, unknown preserve refs, no change,
                         or a missing version when versions are required.
        NotFoundError: configuration, field set or workflow missing / cross-tenant.
        ConflictError: the configuration changed since the preview.
    """
    validate_flags(preserve_all_preservable, remove_all)
    if expected_version is None and current_app.config.get("MIGRATION_REQUIRE_VERSION"):
        raise ValidationError(
            "expected_version is required",
            details={"expected_version": "required"},
        )

    try:
        plan = _plan(tenant_id, configuration_id, new_field_set_id, new_workflow_id)
        cfg = plan.configuration
        if expected_version is not None and cfg.version != expected_version:
            raise ConflictError(
                resource="ItemTypeConfiguration",
                field="version",
                value=expected_version,
                message=(
                    f"ItemTypeConfiguration {cfg.id} is at version {cfg.version}, "
                    f"preview was built on version {expected_version}"
                ),
            )
        preserve = resolve_preserve_set(
            plan, preserve_permission_ids, preserve_all_preservable, remove_all,
        )

        result = MigrationResult(item_type_configuration_id=cfg.id, version=cfg.version)
        doomed: dict[PermissionKind, list] = {}
        kept: list[Assessment] = []
        for a in plan.assessments:
            if a.ref not in preserve:
                doomed.setdefault(a.ref.kind, []).append(a.row)
            elif a.can_be_preserved:
                kept.append(a)
            else:
                result.kept_orphaned += 1
                logger.warning(
                    "Preserving %s id=%s without a matching anchor in the new structure",
                    a.label,
                    a.ref.permission_id,
                    extra={"tenant_id": tenant_id, "item_type_configuration_id": cfg.id},
                )

        project_ids = plan.project_ids
        for kind in sorted(doomed, key=lambda k: k.order):
            n = _delete_rows(tenant_id, kind, doomed[kind], project_ids, result.assignments_deleted)
            result.deleted[kind.value] = n

        for a in kept:
            result.preserved += 1
            if _reanchor(a.ref.kind, a.row, plan.targets[a.ref]):
                result.reanchored += 1
        db.session.flush()

        cfg.field_set = plan.new_field_set
        cfg.workflow = plan.new_workflow
        db.session.flush()
        result.version = cfg.version

        result.provisioned = provision_missing_rows(tenant_id, cfg)
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise ConflictError(
            resource="ItemTypeConfiguration",
            field="version",
            value=expected_version,
            message=f"ItemTypeConfiguration {configuration_id} was modified concurrently",
        ) from exc
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Migration applied: configuration=%s deleted=%d preserved=%d reanchored=%d created=%d version=%d",
        configuration_id,
        result.total_deleted,
        result.preserved,
        result.reanchored,
        result.provisioned.total_created,
        result.version,
        extra={
            "tenant_id": tenant_id,
            "item_type_configuration_id": configuration_id,
        },
    )
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Field set / workflow edit confirmation
# ═════════════════════════════════════════════════════════════════════════════


def _remove_affected(
    tenant_id: int,
    groups: list[AffectedGroup],
    preserve: set[PermissionRef],
    scope: str,
    source_id: int,
    warn_kept: bool = True,
) -> dict:
    """Delete every affected row not in ``preserve``, with its assignments.

    Raises:
        ValidationError: a preserved ref is not among the affected rows.
    """
    affected = {
        PermissionRef(kind, row.id)
        for group in groups
        for kind, rows in group.rows.items()
        for row in rows
    }
    unknown = sorted(preserve - affected)
    if unknown:
        raise ValidationError(
            "Preserved permissions are not affected by the change",
            details={"preserve_permission_ids": [r.to_dict() for r in unknown]},
        )

    deleted: dict[str, int] = {}
    assignments: dict[str, int] = {"tenant": 0, "project": 0, "residual_project": 0}
    kept = 0
    for group in groups:
        for kind in sorted(group.rows, key=lambda k: k.order):
            doomed = []
            for row in group.rows[kind]:
                if PermissionRef(kind, row.id) in preserve:
                    kept += 1
                    continue
                doomed.append(row)
            n = _delete_rows(tenant_id, kind, doomed, group.project_ids, assignments)
            if n:
                deleted[kind.value] = deleted.get(kind.value, 0) + n
    if kept and warn_kept:
        logger.warning(
            "Kept %d orphaned permission rows on request (%s %s)",
            kept, scope, source_id,
            extra={"tenant_id": tenant_id},
        )
    return {
        "deleted": dict(sorted(deleted.items())),
        "total_deleted": sum(deleted.values()),
        "kept": kept,
        "assignments_deleted": assignments,
    }


def remove_orphaned_field_set_permissions(
    tenant_id: int,
    field_set_id: int,
    removed_config_ids: Iterable[int] = (),
    added_config_ids: Iterable[int] = (),
    preserve_permission_ids: Iterable[PermissionRef] = (),
) -> dict:
    """Delete the rows a field set edit orphans, with their assignments.

    Acts on every affected row, including rows without assignments that the
    impact report leaves out. Rows in ``preserve_permission_ids`` are kept.
    """
    removed_config_ids = list(removed_config_ids)
    added_config_ids = list(added_config_ids)
    try:
        _, _, groups = collect_field_set_impact(tenant_id, field_set_id, removed_config_ids, added_config_ids)
        summary = _remove_affected(tenant_id, groups, set(preserve_permission_ids), "field_set", field_set_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Orphaned field set permissions removed: field_set=%s deleted=%d assignments=%s",
        field_set_id,
        summary["total_deleted"],
        summary["assignments_deleted"],
        extra={"tenant_id": tenant_id},
    )
    return summary


def remove_orphaned_workflow_permissions(
    tenant_id: int,
    workflow_id: int,
    removed_workflow_status_ids: Iterable[int] = (),
    removed_transition_ids: Iterable[int] = (),
    preserve_permission_ids: Iterable[PermissionRef] = (),
) -> dict:
    """Delete the rows removing workflow statuses/transitions orphans, with their assignments."""
    try:
        _, _, groups = collect_workflow_impact(
            tenant_id, workflow_id, removed_workflow_status_ids, removed_transition_ids,
        )
        summary = _remove_affected(tenant_id, groups, set(preserve_permission_ids), "workflow", workflow_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Orphaned workflow permissions removed: workflow=%s deleted=%d assignments=%s",
        workflow_id,
        summary["total_deleted"],
        summary["assignments_deleted"],
        extra={"tenant_id": tenant_id},
    )
    return summary


def remove_configuration_permissions(
    tenant_id: int,
    item_type_set_id: int,
    configuration_ids: Iterable[int],
    preserve_permission_ids: Iterable[PermissionRef] = (),
    delete_configurations: bool = False,
) -> dict:
    """Delete the rows of configurations leaving an item-type-set, with their assignments.

    Assignment tables are keyed by (permission_type, permission_id) without a
    foreign key, so a configuration must go through here before it is
    deleted. With ``delete_configurations`` the configurations themselves are
    deleted in the same transaction; nothing can be preserved then.

    Raises:
        NotFoundError: item-type-set missing / cross-tenant.
        ValidationError: a configuration is not part of the set, a preserved
                         ref is not one of its rows, or rows are preserved
                         on configurations being deleted.
    """
    preserve = set(preserve_permission_ids)
    if delete_configurations and preserve:
        raise ValidationError(
            "Permissions cannot be preserved on deleted configurations",
            details={"preserve_permission_ids": [r.to_dict() for r in sorted(preserve)]},
        )
    try:
        _, removed, groups = collect_configuration_removal_impact(tenant_id, item_type_set_id, configuration_ids)
        summary = _remove_affected(tenant_id, groups, preserve, "item_type_set", item_type_set_id)
        summary["configurations_deleted"] = 0
        if delete_configurations:
            for cfg in removed:
                db.session.delete(cfg)
            db.session.flush()
            summary["configurations_deleted"] = len(removed)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Configuration permissions removed: item_type_set=%s configurations=%d deleted=%d assignments=%s",
        item_type_set_id,
        len(removed),
        summary["total_deleted"],
        summary["assignments_deleted"],
        extra={"tenant_id": tenant_id, "item_type_set_id": item_type_set_id},
    )
    return summary


def remove_permissions_without_assignments(
    tenant_id: int,
    field_set_id: int,
    removed_config_ids: Iterable[int] = (),
    added_config_ids: Iterable[int] = (),
) -> dict:
    """Delete orphaned rows of a field set edit that carry no assignment at all."""
    try:
        _, _, groups = collect_field_set_impact(tenant_id, field_set_id, removed_config_ids, added_config_ids)
        keep = {
            a.ref
            for _, assessments, _ in assess_groups(tenant_id, groups)
            for a in assessments
            if a.has_assignments
        }
        summary = _remove_affected(tenant_id, groups, keep, "field_set", field_set_id, warn_kept=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Unassigned orphaned permissions removed: field_set=%s deleted=%d",
        field_set_id,
        summary["total_deleted"],
        extra={"tenant_id": tenant_id},
    )
    return summary
