"""
Structural Diff Engine: old vs new membership of a field set or workflow.

Field sets list FieldConfigurations, permissions are anchored on Fields. The
diff therefore works at configuration granularity and reports at field
granularity: removing configuration A and adding configuration B that both
wrap field X leaves field X untouched.

Workflows list WorkflowStatuses; permissions are matched on the logical
status id, and transitions on their (from status id, to status id) pair.
Removing a workflow status removes every transition entering or leaving it.

The ``diff_*`` functions are pure; the ``compute_*`` functions load the
current structure tenant-scoped and delegate.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from app.core.exceptions import ValidationError
from app.models.structure import FieldConfiguration, FieldSet, Workflow
from app.services.helpers.scoped_queries import ensure_same_tenant, get_scoped, get_scoped_many

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Field sets
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class FieldSetDiff:
    field_set_id: int | None
    removed_config_ids: frozenset[int]
    added_config_ids: frozenset[int]
    remaining_config_ids: frozenset[int]
    remaining_field_ids: frozenset[int]
    removed_field_ids: frozenset[int]
    added_field_ids: frozenset[int]

    @property
    def is_noop(self) -> bool:
        return not self.removed_field_ids and not self.added_field_ids

    def to_dict(self) -> dict:
        return {
            "field_set_id": self.field_set_id,
            "removed_field_configuration_ids": sorted(self.removed_config_ids),
            "added_field_configuration_ids": sorted(self.added_config_ids),
            "removed_field_ids": sorted(self.removed_field_ids),
            "added_field_ids": sorted(self.added_field_ids),
            "remaining_field_ids": sorted(self.remaining_field_ids),
        }


def diff_field_set_membership(
    current: Mapping[int, int],
    removed_config_ids: Iterable[int],
    added: Mapping[int, int],
    field_set_id: int | None = None,
) -> FieldSetDiff:
    """Diff a field set given {config_id: field_id} maps.

    Args:
        current: Configurations currently in the set.
        removed_config_ids: Configurations being taken out.
        added: Configurations being put in.
        field_set_id: Carried into the result for reporting only.

    Raises:
        ValidationError: a removed id is not in the set, or an id is both
                         removed and added.
    """
    removed = frozenset(removed_config_ids)
    added_ids = frozenset(added)

    unknown = sorted(removed - set(current))
    if unknown:
        raise ValidationError(
            "Removed field configurations are not part of the field set",
            details={"removed_config_ids": unknown},
        )
    overlap = sorted(removed & added_ids)
    if overlap:
        raise ValidationError(
            "A field configuration cannot be both removed and added",
            details={"config_ids": overlap},
        )

    remaining_configs = {cid: fid for cid, fid in current.items() if cid not in removed}
    remaining_configs.update(added)
    remaining_field_ids = frozenset(remaining_configs.values())

    removed_field_ids = frozenset(current[cid] for cid in removed) - remaining_field_ids
    added_field_ids = frozenset(added.values()) - frozenset(current.values())

    return FieldSetDiff(
        field_set_id=field_set_id,
        removed_config_ids=removed,
        added_config_ids=added_ids,
        remaining_config_ids=frozenset(remaining_configs),
        remaining_field_ids=remaining_field_ids,
        removed_field_ids=removed_field_ids,
        added_field_ids=added_field_ids,
    )


def compute_field_set_diff(
    tenant_id: int,
    field_set_id: int,
    removed_config_ids: Iterable[int] = (),
    added_config_ids: Iterable[int] = (),
) -> FieldSetDiff:
    """Load a field set and the added configurations, then diff them.

    Raises:
        NotFoundError: field set or an added configuration is missing / cross-tenant.
        ValidationError: malformed id sets (see diff_field_set_membership).
    """
    field_set = get_scoped(FieldSet, field_set_id, tenant_id=tenant_id)
    for entry in field_set.entries:
        ensure_same_tenant(entry.field_configuration, tenant_id)
    added = {
        cfg.id: cfg.field_id
        for cfg in get_scoped_many(FieldConfiguration, added_config_ids, tenant_id=tenant_id)
    }
    diff = diff_field_set_membership(
        field_set.configuration_field_map(),
        removed_config_ids,
        added,
        field_set_id=field_set.id,
    )
    logger.debug(
        "Field set %s diff: removed fields=%s added fields=%s",
        field_set_id,
        sorted(diff.removed_field_ids),
        sorted(diff.added_field_ids),
        extra={"tenant_id": tenant_id},
    )
    return diff


# ═════════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class WorkflowDiff:
    workflow_id: int | None
    removed_workflow_status_ids: frozenset[int]
    removed_status_ids: frozenset[int]
    removed_transition_ids: frozenset[int]
    cascaded_transition_ids: frozenset[int]
    remaining_workflow_status_ids: frozenset[int]
    remaining_status_ids: frozenset[int]
    remaining_transition_ids: frozenset[int]

    @property
    def is_noop(self) -> bool:
        return not self.removed_workflow_status_ids and not self.removed_transition_ids

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "removed_workflow_status_ids": sorted(self.removed_workflow_status_ids),
            "removed_status_ids": sorted(self.removed_status_ids),
            "removed_transition_ids": sorted(self.removed_transition_ids),
            "cascaded_transition_ids": sorted(self.cascaded_transition_ids),
        }


def diff_workflow_membership(
    statuses: Mapping[int, int],
    transitions: Mapping[int, tuple[int, int]],
    removed_workflow_status_ids: Iterable[int] = (),
    removed_transition_ids: Iterable[int] = (),
    workflow_id: int | None = None,
) -> WorkflowDiff:
    """Diff a workflow given {workflow_status_id: status_id} and
    {transition_id: (from workflow_status_id, to workflow_status_id)}.

    Raises:
        ValidationError: an id does not belong to the workflow.
    """
    removed_ws = frozenset(removed_workflow_status_ids)
    removed_t = frozenset(removed_transition_ids)

    unknown_ws = sorted(removed_ws - set(statuses))
    unknown_t = sorted(removed_t - set(transitions))
    if unknown_ws or unknown_t:
        details = {}
        if unknown_ws:
            details["removed_workflow_status_ids"] = unknown_ws
        if unknown_t:
            details["removed_transition_ids"] = unknown_t
        raise ValidationError("Ids do not belong to the workflow", details=details)

    cascaded = frozenset(
        tid for tid, (src, dst) in transitions.items()
        if tid not in removed_t and (src in removed_ws or dst in removed_ws)
    )
    all_removed_t = removed_t | cascaded
    remaining_ws = frozenset(ws for ws in statuses if ws not in removed_ws)
    remaining_status_ids = frozenset(statuses[ws] for ws in remaining_ws)

    return WorkflowDiff(
        workflow_id=workflow_id,
        removed_workflow_status_ids=removed_ws,
        removed_status_ids=frozenset(statuses[ws] for ws in removed_ws) - remaining_status_ids,
        removed_transition_ids=all_removed_t,
        cascaded_transition_ids=cascaded,
        remaining_workflow_status_ids=remaining_ws,
        remaining_status_ids=remaining_status_ids,
        remaining_transition_ids=frozenset(transitions) - all_removed_t,
    )


def compute_workflow_diff(
    tenant_id: int,
    workflow_id: int,
    removed_workflow_status_ids: Iterable[int] = (),
    removed_transition_ids: Iterable[int] = (),
) -> WorkflowDiff:
    """Load a workflow tenant-scoped and diff the proposed removals against it."""
    workflow = get_scoped(Workflow, workflow_id, tenant_id=tenant_id)
    for ws in workflow.statuses:
        ensure_same_tenant(ws, tenant_id)
    return diff_workflow_membership(
        {ws.id: ws.status_id for ws in workflow.statuses},
        {t.id: (t.from_status_id, t.to_status_id) for t in workflow.transitions},
        removed_workflow_status_ids,
        removed_transition_ids,
        workflow_id=workflow.id,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Whole-structure snapshots (field set / workflow swaps)
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StructureSnapshot:
    """Logical anchor ids a configuration would expose with a field set + workflow."""

    field_ids: frozenset[int]
    status_ids: frozenset[int]
    transition_keys: frozenset[tuple[int, int]]

    @classmethod
    def of(cls, field_set: FieldSet, workflow: Workflow) -> "StructureSnapshot":
        return cls(
            field_ids=frozenset(field_set.field_ids()),
            status_ids=frozenset(workflow.status_ids()),
            transition_keys=frozenset(workflow.transition_keys()),
        )


@dataclass(frozen=True)
class StructureChange:
    old: StructureSnapshot
    new: StructureSnapshot
    field_set_changed: bool
    workflow_changed: bool

    @property
    def added_field_ids(self) -> frozenset[int]:
        return self.new.field_ids - self.old.field_ids

    @property
    def removed_field_ids(self) -> frozenset[int]:
        return self.old.field_ids - self.new.field_ids

    @property
    def added_status_ids(self) -> frozenset[int]:
        return self.new.status_ids - self.old.status_ids

    @property
    def removed_status_ids(self) -> frozenset[int]:
        return self.old.status_ids - self.new.status_ids

    @property
    def added_transition_keys(self) -> frozenset[tuple[int, int]]:
        return self.new.transition_keys - self.old.transition_keys

    @property
    def removed_transition_keys(self) -> frozenset[tuple[int, int]]:
        return self.old.transition_keys - self.new.transition_keys


def compare_structures(old_field_set, old_workflow, new_field_set, new_workflow) -> StructureChange:
    """Snapshot both structures and flag which side of the configuration changes."""
    return StructureChange(
        old=StructureSnapshot.of(old_field_set, old_workflow),
        new=StructureSnapshot.of(new_field_set, new_workflow),
        field_set_changed=old_field_set.id != new_field_set.id,
        workflow_changed=old_workflow.id != new_workflow.id,
    )
