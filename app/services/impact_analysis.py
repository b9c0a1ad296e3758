"""
Impact analysis for field set, workflow and item-type-set edits (read-only).

    analyze_field_set_impact  → FIELD_OWNERS, FIELD_STATUS rows whose field
                                leaves the set
    analyze_workflow_impact   → STATUS_OWNERS, FIELD_STATUS rows on removed
                                workflow statuses, EXECUTORS rows on removed
                                (or cascaded) transitions
    analyze_configuration_removal_impact
                              → every row of configurations leaving an
                                item-type-set

Each walks the ItemTypeConfigurations the edit touches, groups the
affected rows by owning item-type-set, assesses them with one batched
assignment lookup per (item-type-set, kind), and aggregates them into an
ImpactReport. Anchors leave the structure for good in these flows, so no
affected row is preservable.

The confirmation/cleanup operations in migration_service reuse the
``collect_*_impact`` helpers so they act on exactly the rows an analysis
reports (plus rows without assignments).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.structure import FieldSet, ItemTypeConfiguration, ItemTypeSet, Workflow
from app.services.helpers.scoped_queries import ensure_same_tenant, get_scoped
from app.services.impact_report import ImpactReport, build_report
from app.services.permission_catalog import PermissionKind
from app.services.preservability import Assessment, assess_rows
from app.services.structural_diff import (
    FieldSetDiff,
    WorkflowDiff,
    compute_field_set_diff,
    compute_workflow_diff,
)

logger = logging.getLogger(__name__)

RowPredicate = Callable[[object], bool]


# ═════════════════════════════════════════════════════════════════════════════
# Loading
# ═════════════════════════════════════════════════════════════════════════════


def configurations_using_field_set(tenant_id: int, field_set_id: int) -> list[ItemTypeConfiguration]:
    return list(
        db.session.execute(
            select(ItemTypeConfiguration)
            .where(
                ItemTypeConfiguration.tenant_id == tenant_id,
                ItemTypeConfiguration.field_set_id == field_set_id,
            )
            .order_by(ItemTypeConfiguration.id)
        ).scalars().all()
    )


def configurations_using_workflow(tenant_id: int, workflow_id: int) -> list[ItemTypeConfiguration]:
    return list(
        db.session.execute(
            select(ItemTypeConfiguration)
            .where(
                ItemTypeConfiguration.tenant_id == tenant_id,
                ItemTypeConfiguration.workflow_id == workflow_id,
            )
            .order_by(ItemTypeConfiguration.id)
        ).scalars().all()
    )


def load_permission_rows(tenant_id: int, kind: PermissionKind, configuration_ids: Iterable[int]) -> list:
    """All rows of one kind owned by the given configurations, ordered by id."""
    ids = sorted(set(configuration_ids))
    if not ids:
        return []
    model = kind.model
    return list(
        db.session.execute(
            select(model)
            .where(model.tenant_id == tenant_id, model.item_type_configuration_id.in_(ids))
            .order_by(model.id)
        ).scalars().all()
    )


# ═════════════════════════════════════════════════════════════════════════════
# Grouping
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class AffectedGroup:
    """Affected rows of one item-type-set, per kind."""

    item_type_set: ItemTypeSet
    configurations: dict[int, ItemTypeConfiguration] = field(default_factory=dict)
    rows: dict[PermissionKind, list] = field(default_factory=dict)

    @property
    def projects(self) -> list:
        return self.item_type_set.scoped_projects()

    @property
    def project_ids(self) -> list[int]:
        return [p.id for p in self.projects]

    def row_count(self) -> int:
        return sum(len(rows) for rows in self.rows.values())


def collect_affected(
    tenant_id: int,
    configurations: Iterable[ItemTypeConfiguration],
    predicates: dict[PermissionKind, RowPredicate],
) -> list[AffectedGroup]:
    """Select rows matching ``predicates`` and group them by item-type-set.

    Raises:
        TenantIsolationError: a configuration or item-type-set reached through
                              the structure belongs to another tenant.
    """
    groups: dict[int, AffectedGroup] = {}
    by_id: dict[int, ItemTypeConfiguration] = {}
    for cfg in configurations:
        ensure_same_tenant(cfg, tenant_id)
        its = ensure_same_tenant(cfg.item_type_set, tenant_id)
        group = groups.setdefault(its.id, AffectedGroup(item_type_set=its))
        group.configurations[cfg.id] = cfg
        by_id[cfg.id] = cfg

    for kind, predicate in predicates.items():
        for row in load_permission_rows(tenant_id, kind, by_id):
            if not predicate(row):
                continue
            its_id = by_id[row.item_type_configuration_id].item_type_set_id
            groups[its_id].rows.setdefault(kind, []).append(row)

    return [groups[k] for k in sorted(groups) if groups[k].rows]


def assess_groups(tenant_id: int, groups: Iterable[AffectedGroup], target=None) -> list[tuple]:
    """Assess every affected row; returns (item_type_set, assessments, configurations) triples."""
    out = []
    for group in groups:
        assessments: list[Assessment] = []
        projects = group.projects
        for kind in sorted(group.rows, key=lambda k: k.order):
            assessments.extend(assess_rows(tenant_id, kind, group.rows[kind], target, projects))
        out.append((group.item_type_set, assessments, group.configurations))
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Field sets
# ═════════════════════════════════════════════════════════════════════════════


def field_set_predicates(diff: FieldSetDiff) -> dict[PermissionKind, RowPredicate]:
    remaining = diff.remaining_field_ids

    def orphaned(row) -> bool:
        return row.field_id not in remaining

    return {
        PermissionKind.FIELD_OWNERS: orphaned,
        PermissionKind.FIELD_STATUS: orphaned,
    }


def collect_field_set_impact(
    tenant_id: int,
    field_set_id: int,
    removed_config_ids: Iterable[int] = (),
    added_config_ids: Iterable[int] = (),
) -> tuple[FieldSet, FieldSetDiff, list[AffectedGroup]]:
    field_set = get_scoped(FieldSet, field_set_id, tenant_id=tenant_id)
    diff = compute_field_set_diff(tenant_id, field_set_id, removed_config_ids, added_config_ids)
    groups = collect_affected(
        tenant_id,
        configurations_using_field_set(tenant_id, field_set_id),
        field_set_predicates(diff),
    )
    return field_set, diff, groups


def analyze_field_set_impact(
    tenant_id: int,
    field_set_id: int,
    removed_config_ids: Iterable[int] = (),
    added_config_ids: Iterable[int] = (),
) -> ImpactReport:
    """Preview which permission rows a field set edit would orphan.

    Args:
        tenant_id: Caller's tenant.
        field_set_id: Field set being edited.
        removed_config_ids: FieldConfiguration ids taken out of the set.
        added_config_ids: FieldConfiguration ids put into the set.

    Returns:
        ImpactReport listing only rows that carry assignments.

    Raises:
        NotFoundError: field set or an added configuration missing / cross-tenant.
        ValidationError: removed ids not in the set, or removed and added overlap.
    """
    field_set, diff, groups = collect_field_set_impact(
        tenant_id, field_set_id, removed_config_ids, added_config_ids,
    )
    report = build_report("field_set", field_set, diff.to_dict(), assess_groups(tenant_id, groups))
    logger.info(
        "Field set impact analysed: field_set=%s removed_fields=%d affected_rows=%d reported=%d",
        field_set_id,
        len(diff.removed_field_ids),
        sum(g.row_count() for g in groups),
        report.totals.total_permissions,
        extra={"tenant_id": tenant_id},
    )
    return report


# ═════════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════════


def workflow_predicates(diff: WorkflowDiff) -> dict[PermissionKind, RowPredicate]:
    remaining_ws = diff.remaining_workflow_status_ids
    remaining_t = diff.remaining_transition_ids

    def status_gone(row) -> bool:
        return row.workflow_status_id not in remaining_ws

    def transition_gone(row) -> bool:
        return row.transition_id not in remaining_t

    return {
        PermissionKind.STATUS_OWNERS: status_gone,
        PermissionKind.FIELD_STATUS: status_gone,
        PermissionKind.EXECUTORS: transition_gone,
    }


def collect_workflow_impact(
    tenant_id: int,
    workflow_id: int,
    removed_workflow_status_ids: Iterable[int] = (),
    removed_transition_ids: Iterable[int] = (),
) -> tuple[Workflow, WorkflowDiff, list[AffectedGroup]]:
    workflow = get_scoped(Workflow, workflow_id, tenant_id=tenant_id)
    diff = compute_workflow_diff(tenant_id, workflow_id, removed_workflow_status_ids, removed_transition_ids)
    groups = collect_affected(
        tenant_id,
        configurations_using_workflow(tenant_id, workflow_id),
        workflow_predicates(diff),
    )
    return workflow, diff, groups


def analyze_workflow_impact(
    tenant_id: int,
    workflow_id: int,
    removed_workflow_status_ids: Iterable[int] = (),
    removed_transition_ids: Iterable[int] = (),
) -> ImpactReport:
    """Preview which permission rows removing workflow statuses/transitions would orphan.

    Transitions entering or leaving a removed status are removed with it and
    their EXECUTORS rows are reported too.

    Raises:
        NotFoundError: workflow missing / cross-tenant.
        ValidationError: an id does not belong to the workflow.
    """
    workflow, diff, groups = collect_workflow_impact(
        tenant_id, workflow_id, removed_workflow_status_ids, removed_transition_ids,
    )
    report = build_report("workflow", workflow, diff.to_dict(), assess_groups(tenant_id, groups))
    logger.info(
        "Workflow impact analysed: workflow=%s removed_statuses=%d removed_transitions=%d reported=%d",
        workflow_id,
        len(diff.removed_workflow_status_ids),
        len(diff.removed_transition_ids),
        report.totals.total_permissions,
        extra={"tenant_id": tenant_id},
    )
    return report


# ═════════════════════════════════════════════════════════════════════════════
# Item-type-set configurations
# ═════════════════════════════════════════════════════════════════════════════


def _every_row(row) -> bool:
    return True


def collect_configuration_removal_impact(
    tenant_id: int,
    item_type_set_id: int,
    configuration_ids: Iterable[int],
) -> tuple[ItemTypeSet, list[ItemTypeConfiguration], list[AffectedGroup]]:
    """Every row of the configurations about to leave an item-type-set.

    Raises:
        NotFoundError: item-type-set missing / cross-tenant.
        ValidationError: a configuration id is not part of the set.
    """
    its = get_scoped(ItemTypeSet, item_type_set_id, tenant_id=tenant_id)
    by_id = {cfg.id: cfg for cfg in its.configurations}
    ids = sorted(set(configuration_ids))
    missing = [i for i in ids if i not in by_id]
    if missing:
        raise ValidationError(
            "Item type configurations do not belong to the item-type-set",
            details={"removed_item_type_configuration_ids": missing},
        )
    removed = [by_id[i] for i in ids]
    groups = collect_affected(tenant_id, removed, {kind: _every_row for kind in PermissionKind})
    return its, removed, groups


def analyze_configuration_removal_impact(
    tenant_id: int,
    item_type_set_id: int,
    configuration_ids: Iterable[int],
) -> ImpactReport:
    """Preview the assigned rows lost when configurations leave an item-type-set.

    All six kinds are reported since the rows go with their configuration.
    """
    its, removed, groups = collect_configuration_removal_impact(tenant_id, item_type_set_id, configuration_ids)
    diff = {
        "removed_item_type_configuration_ids": [cfg.id for cfg in removed],
        "removed_item_type_configuration_names": [cfg.display_name for cfg in removed],
    }
    report = build_report("item_type_set", its, diff, assess_groups(tenant_id, groups))
    logger.info(
        "Configuration removal impact analysed: item_type_set=%s configurations=%d reported=%d",
        item_type_set_id,
        len(removed),
        report.totals.total_permissions,
        extra={"tenant_id": tenant_id, "item_type_set_id": item_type_set_id},
    )
    return report
