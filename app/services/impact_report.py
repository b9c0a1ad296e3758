"""
Impact Aggregator / Reporter: hierarchical impact reports and their exports.

Report shape:

    ImpactReport
      ├─ totals                         (across every item-type-set)
      └─ item_type_sets[]
           ├─ totals
           └─ permissions[]             (PermissionImpact, ordered by kind then id)
                └─ project_assignments[]

Counting rules:
  - total_role_assignments  = tenant roles + roles of every project override
  - total_grant_assignments = tenant grant (0/1) + every project override grant
  - rows without any assignment never enter an ImpactReport
    (MigrationImpact lists every row: the admin picks from all of them)

Exports follow the same ordering, so a CSV diff of two runs on unchanged data
is empty.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from app.services.permission_catalog import PermissionKind, PermissionRef, describe_anchor, sort_key
from app.services.preservability import Assessment, SuggestedAction

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Rows
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class ProjectAssignmentDetail:
    project_id: int
    project_name: str
    roles: list[str]
    grant_id: int | None = None
    grant_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "roles": list(self.roles),
            "grant_id": self.grant_id,
            "grant_name": self.grant_name,
        }


@dataclass
class PermissionImpact:
    """One permission row (existing or to be provisioned) in a report."""

    permission_id: int | None
    permission_type: str
    kind: PermissionKind
    item_type_configuration_id: int
    item_type_name: str | None
    anchor: dict
    assigned_roles: list[str] = field(default_factory=list)
    grant_id: int | None = None
    grant_name: str | None = None
    project_assignments: list[ProjectAssignmentDetail] = field(default_factory=list)
    has_assignments: bool = False
    can_be_preserved: bool = False
    default_preserve: bool = False
    suggested_action: SuggestedAction = SuggestedAction.REMOVE
    matching_anchor: dict | None = None

    @classmethod
    def from_assessment(cls, assessment: Assessment, configuration, matching_anchor=None) -> "PermissionImpact":
        resolved = assessment.resolved
        tenant_grant = resolved.tenant.grant
        return cls(
            permission_id=assessment.ref.permission_id,
            permission_type=assessment.label,
            kind=assessment.ref.kind,
            item_type_configuration_id=assessment.item_type_configuration_id,
            item_type_name=configuration.item_type.name if configuration is not None else None,
            anchor=describe_anchor(assessment.ref.kind, assessment.row),
            assigned_roles=[r.name for r in resolved.tenant.roles],
            grant_id=tenant_grant.id if tenant_grant else None,
            grant_name=tenant_grant.name if tenant_grant else None,
            project_assignments=[
                ProjectAssignmentDetail(
                    project_id=p.project_id,
                    project_name=p.project_name,
                    roles=[r.name for r in p.payload.roles],
                    grant_id=p.payload.grant.id if p.payload.grant else None,
                    grant_name=p.payload.grant.name if p.payload.grant else None,
                )
                for p in resolved.projects
            ],
            has_assignments=assessment.has_assignments,
            can_be_preserved=assessment.can_be_preserved,
            default_preserve=assessment.default_preserve,
            suggested_action=assessment.suggested_action,
            matching_anchor=matching_anchor,
        )

    @classmethod
    def new_anchor(cls, kind: PermissionKind, label: str, configuration, anchor: dict) -> "PermissionImpact":
        """Placeholder for a row provisioning will create (no id, no assignments)."""
        return cls(
            permission_id=None,
            permission_type=label,
            kind=kind,
            item_type_configuration_id=configuration.id,
            item_type_name=configuration.item_type.name if configuration.item_type else None,
            anchor=anchor,
            suggested_action=SuggestedAction.NEW,
        )

    @property
    def ref(self) -> PermissionRef | None:
        if self.permission_id is None:
            return None
        return PermissionRef(self.kind, self.permission_id)

    @property
    def role_assignment_count(self) -> int:
        return len(self.assigned_roles) + sum(len(p.roles) for p in self.project_assignments)

    @property
    def project_grant_count(self) -> int:
        return sum(1 for p in self.project_assignments if p.grant_id is not None)

    @property
    def grant_assignment_count(self) -> int:
        return (1 if self.grant_id is not None else 0) + self.project_grant_count

    def sort_key(self) -> tuple:
        anchor_ids = tuple(sorted((k, v) for k, v in self.anchor.items() if k.endswith("_id") and v is not None))
        return sort_key(self.kind, self.permission_id, self.permission_type) + (anchor_ids,)

    def to_dict(self) -> dict:
        return {
            "permission_id": self.permission_id,
            "permission_type": self.permission_type,
            "item_type_configuration_id": self.item_type_configuration_id,
            "item_type_name": self.item_type_name,
            **self.anchor,
            "matching_anchor": self.matching_anchor,
            "assigned_roles": list(self.assigned_roles),
            "grant_id": self.grant_id,
            "grant_name": self.grant_name,
            "project_assignments": [p.to_dict() for p in self.project_assignments],
            "has_assignments": self.has_assignments,
            "can_be_preserved": self.can_be_preserved,
            "default_preserve": self.default_preserve,
            "suggested_action": self.suggested_action.value,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Aggregates
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class ImpactTotals:
    total_permissions: int = 0
    total_role_assignments: int = 0
    total_grant_assignments: int = 0
    total_global_grants: int = 0
    total_project_grants: int = 0
    project_grants: dict[int, dict] = field(default_factory=dict)

    def add(self, impact: PermissionImpact) -> None:
        self.total_permissions += 1
        self.total_role_assignments += impact.role_assignment_count
        self.total_grant_assignments += impact.grant_assignment_count
        if impact.grant_id is not None:
            self.total_global_grants += 1
        for p in impact.project_assignments:
            if p.grant_id is None:
                continue
            self.total_project_grants += 1
            entry = self.project_grants.setdefault(
                p.project_id, {"project_id": p.project_id, "project_name": p.project_name, "grant_count": 0},
            )
            entry["grant_count"] += 1

    def merge(self, other: "ImpactTotals") -> None:
        self.total_permissions += other.total_permissions
        self.total_role_assignments += other.total_role_assignments
        self.total_grant_assignments += other.total_grant_assignments
        self.total_global_grants += other.total_global_grants
        self.total_project_grants += other.total_project_grants
        for pid, entry in other.project_grants.items():
            mine = self.project_grants.setdefault(pid, {**entry, "grant_count": 0})
            mine["grant_count"] += entry["grant_count"]

    @classmethod
    def of(cls, impacts: Iterable[PermissionImpact]) -> "ImpactTotals":
        totals = cls()
        for impact in impacts:
            totals.add(impact)
        return totals

    def to_dict(self) -> dict:
        return {
            "total_permissions": self.total_permissions,
            "total_role_assignments": self.total_role_assignments,
            "total_grant_assignments": self.total_grant_assignments,
            "total_global_grants": self.total_global_grants,
            "total_project_grants": self.total_project_grants,
            "project_grants": [self.project_grants[pid] for pid in sorted(self.project_grants)],
        }


def _group_by_label(permissions: Sequence[PermissionImpact]) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    for impact in permissions:
        grouped.setdefault(impact.permission_type, []).append(impact.to_dict())
    return grouped


@dataclass
class ItemTypeSetImpact:
    item_type_set_id: int
    item_type_set_name: str
    project_id: int | None
    project_name: str | None
    permissions: list[PermissionImpact] = field(default_factory=list)
    totals: ImpactTotals = field(default_factory=ImpactTotals)

    def to_dict(self) -> dict:
        return {
            "item_type_set_id": self.item_type_set_id,
            "item_type_set_name": self.item_type_set_name,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "permissions": _group_by_label(self.permissions),
            "totals": self.totals.to_dict(),
        }


@dataclass
class ImpactReport:
    scope: str
    source_id: int
    source_name: str
    diff: dict
    item_type_sets: list[ItemTypeSetImpact] = field(default_factory=list)
    totals: ImpactTotals = field(default_factory=ImpactTotals)

    def rows(self) -> list[tuple[ItemTypeSetImpact, PermissionImpact]]:
        return [(group, impact) for group in self.item_type_sets for impact in group.permissions]

    def permission_refs(self) -> set[PermissionRef]:
        return {impact.ref for _, impact in self.rows() if impact.ref is not None}

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "source_id": self.source_id,
            "source_name": self.source_name,
            "diff": self.diff,
            "item_type_sets": [g.to_dict() for g in self.item_type_sets],
            "totals": self.totals.to_dict(),
        }


def build_report(
    scope: str,
    source,
    diff: dict,
    groups: Iterable[tuple],
) -> ImpactReport:
    """Aggregate assessments into an ImpactReport.

    Args:
        scope: "field_set", "workflow" or "item_type_set".
        source: The FieldSet, Workflow or ItemTypeSet being edited.
        diff: Serialised diff carried verbatim into the report.
        groups: (item_type_set, assessments, {configuration_id: configuration})
                triples; item-type-sets without any reportable row are dropped.
    """
    report = ImpactReport(scope=scope, source_id=source.id, source_name=source.name, diff=diff)
    for item_type_set, assessments, configurations in sorted(groups, key=lambda g: g[0].id):
        impacts = [
            PermissionImpact.from_assessment(a, configurations.get(a.item_type_configuration_id))
            for a in assessments
            if a.has_assignments
        ]
        if not impacts:
            continue
        impacts.sort(key=PermissionImpact.sort_key)
        group = ItemTypeSetImpact(
            item_type_set_id=item_type_set.id,
            item_type_set_name=item_type_set.name,
            project_id=item_type_set.project_id,
            project_name=item_type_set.project.name if item_type_set.project else None,
            permissions=impacts,
            totals=ImpactTotals.of(impacts),
        )
        report.item_type_sets.append(group)
        report.totals.merge(group.totals)
    return report


@dataclass
class MigrationImpact:
    """Per-configuration preview of a field set and/or workflow swap."""

    item_type_configuration_id: int
    item_type_configuration_name: str
    version: int
    item_type_set_id: int
    item_type_set_name: str
    item_type_id: int
    item_type_name: str
    old_field_set: dict
    new_field_set: dict
    field_set_changed: bool
    old_workflow: dict
    new_workflow: dict
    workflow_changed: bool
    permissions: list[PermissionImpact] = field(default_factory=list)

    @property
    def existing(self) -> list[PermissionImpact]:
        return [p for p in self.permissions if p.permission_id is not None]

    @property
    def total_preservable(self) -> int:
        return sum(1 for p in self.existing if p.can_be_preserved)

    @property
    def total_removable(self) -> int:
        return sum(1 for p in self.existing if not p.can_be_preserved)

    @property
    def total_new(self) -> int:
        return sum(1 for p in self.permissions if p.permission_id is None)

    @property
    def total_with_assignments(self) -> int:
        return sum(1 for p in self.existing if p.has_assignments)

    def to_dict(self) -> dict:
        return {
            "item_type_configuration_id": self.item_type_configuration_id,
            "item_type_configuration_name": self.item_type_configuration_name,
            "version": self.version,
            "item_type_set_id": self.item_type_set_id,
            "item_type_set_name": self.item_type_set_name,
            "item_type_id": self.item_type_id,
            "item_type_name": self.item_type_name,
            "old_field_set": self.old_field_set,
            "new_field_set": self.new_field_set,
            "field_set_changed": self.field_set_changed,
            "old_workflow": self.old_workflow,
            "new_workflow": self.new_workflow,
            "workflow_changed": self.workflow_changed,
            "permissions": _group_by_label(self.permissions),
            "total_preservable_permissions": self.total_preservable,
            "total_removable_permissions": self.total_removable,
            "total_new_permissions": self.total_new,
            "total_permissions_with_assignments": self.total_with_assignments,
            "totals": ImpactTotals.of(self.existing).to_dict(),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Exports
# ═════════════════════════════════════════════════════════════════════════════

_CSV_HEADER = [
    "Permission Type", "Permission ID", "ItemTypeSet ID", "ItemTypeSet Name",
    "Configuration ID", "Item Type", "Field ID", "Field Name",
    "Workflow Status ID", "Status Name", "Transition ID", "Transition Name",
    "Assigned Roles", "Grant", "Project Assignments",
    "Has Assignments", "Can Be Preserved", "Suggested Action",
]


def _project_cell(impact: PermissionImpact) -> str:
    parts = []
    for p in impact.project_assignments:
        detail = "/".join(p.roles)
        if p.grant_name:
            detail = f"{detail}+{p.grant_name}" if detail else p.grant_name
        parts.append(f"{p.project_name}: {detail}")
    return "; ".join(parts)


def _csv_row(impact: PermissionImpact, its_id, its_name) -> list:
    a = impact.anchor
    return [
        impact.permission_type,
        impact.permission_id if impact.permission_id is not None else "",
        its_id,
        its_name,
        impact.item_type_configuration_id,
        impact.item_type_name or "",
        a.get("field_id", ""),
        a.get("field_name", "") or "",
        a.get("workflow_status_id", ""),
        a.get("status_name", "") or "",
        a.get("transition_id", ""),
        a.get("transition_name", "") or "",
        ";".join(impact.assigned_roles),
        impact.grant_name or "",
        _project_cell(impact),
        str(impact.has_assignments).lower(),
        str(impact.can_be_preserved).lower(),
        impact.suggested_action.value,
    ]


def impact_report_to_csv(report: ImpactReport) -> str:
    """Render an ImpactReport as CSV (one line per permission row)."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(_CSV_HEADER)
    for group, impact in report.rows():
        writer.writerow(_csv_row(impact, group.item_type_set_id, group.item_type_set_name))
    return buf.getvalue()


def impact_report_to_json(report: ImpactReport) -> str:
    return json.dumps(report.to_dict(), indent=2, ensure_ascii=False)


def migration_impact_to_csv(impact: MigrationImpact) -> str:
    """Render a MigrationImpact as CSV, including NEW placeholder rows."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(_CSV_HEADER)
    for row in impact.permissions:
        writer.writerow(_csv_row(row, impact.item_type_set_id, impact.item_type_set_name))
    return buf.getvalue()
