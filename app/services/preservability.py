"""
Preservability Matcher: decides, per affected permission row, whether it can
survive a structural change and whether it carries anything worth keeping.

One generic strategy, parameterised per kind by an anchor-matching function
that asks "does this row's logical anchor exist in the target structure?":

    FIELD_OWNERS    field id in target fields
    STATUS_OWNERS   status id in target statuses
    FIELD_STATUS    field id AND status id both present
    EXECUTORS       (from status id, to status id) pair in target transitions
    WORKERS         always (no secondary anchor)
    CREATORS        always (no secondary anchor)

A ``None`` target means the anchor entity itself is being removed (hard
removal) and nothing is preservable.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.services.assignment_resolution import ResolvedAssignment, resolve_assignments
from app.services.permission_catalog import PermissionKind, PermissionRef, report_label
from app.services.structural_diff import StructureSnapshot

logger = logging.getLogger(__name__)


class SuggestedAction(str, Enum):
    PRESERVE = "PRESERVE"
    REMOVE = "REMOVE"
    NEW = "NEW"


AnchorMatcher = Callable[[Any, StructureSnapshot], bool]


def _match_field(row, target: StructureSnapshot) -> bool:
    return row.field_id in target.field_ids


def _match_status(row, target: StructureSnapshot) -> bool:
    return row.workflow_status.status_id in target.status_ids


def _match_field_status(row, target: StructureSnapshot) -> bool:
    return _match_field(row, target) and _match_status(row, target)


def _match_transition(row, target: StructureSnapshot) -> bool:
    return row.transition.status_pair in target.transition_keys


def _match_always(row, target: StructureSnapshot) -> bool:
    return True


@dataclass(frozen=True)
class PreservabilityStrategy:
    kind: PermissionKind
    matcher: AnchorMatcher

    def can_preserve(self, row, target: StructureSnapshot | None) -> bool:
        if target is None:
            return False
        return self.matcher(row, target)


_STRATEGIES: dict[PermissionKind, PreservabilityStrategy] = {
    kind: PreservabilityStrategy(kind, matcher)
    for kind, matcher in (
        (PermissionKind.FIELD_OWNERS, _match_field),
        (PermissionKind.STATUS_OWNERS, _match_status),
        (PermissionKind.FIELD_STATUS, _match_field_status),
        (PermissionKind.EXECUTORS, _match_transition),
        (PermissionKind.WORKERS, _match_always),
        (PermissionKind.CREATORS, _match_always),
    )
}


def strategy_for(kind: PermissionKind) -> PreservabilityStrategy:
    return _STRATEGIES[kind]


def suggest_action(can_be_preserved: bool, *, is_new: bool = False) -> SuggestedAction:
    if is_new:
        return SuggestedAction.NEW
    return SuggestedAction.PRESERVE if can_be_preserved else SuggestedAction.REMOVE


@dataclass(frozen=True)
class Assessment:
    """Verdict for one existing permission row."""

    ref: PermissionRef
    label: str
    item_type_configuration_id: int
    can_be_preserved: bool
    resolved: ResolvedAssignment
    row: Any = field(compare=False, repr=False)

    @property
    def has_assignments(self) -> bool:
        return self.resolved.has_assignments

    @property
    def default_preserve(self) -> bool:
        # Rows without assignments default to removal even when preservable.
        return self.can_be_preserved and self.has_assignments

    @property
    def suggested_action(self) -> SuggestedAction:
        return suggest_action(self.can_be_preserved)


def assess_rows(
    tenant_id: int,
    kind: PermissionKind,
    rows: Sequence,
    target: StructureSnapshot | None,
    projects: Sequence = (),
) -> list[Assessment]:
    """Assess rows of one kind belonging to one item-type-set.

    Assignments are batch-resolved once for all rows.

    Args:
        tenant_id: Caller's tenant.
        kind: Kind shared by every row.
        rows: Permission row instances.
        target: Structure the rows must fit into, or None for hard removal.
        projects: The item-type-set's scoped projects (for overrides).
    """
    if not rows:
        return []
    strategy = strategy_for(kind)
    resolved = resolve_assignments(tenant_id, kind, [r.id for r in rows], projects)
    return [
        Assessment(
            ref=PermissionRef(kind, row.id),
            label=report_label(kind, row),
            item_type_configuration_id=row.item_type_configuration_id,
            can_be_preserved=strategy.can_preserve(row, target),
            resolved=resolved[row.id],
            row=row,
        )
        for row in sorted(rows, key=lambda r: r.id)
    ]
