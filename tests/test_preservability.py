"""
Tests: preservability verdicts per permission kind.

Rows come from the seeded graph (conftest.build_graph); targets are
snapshots of the field set / workflow a configuration would switch to.
"""

import pytest

from app.services.permission_catalog import PermissionKind
from app.services.preservability import SuggestedAction, assess_rows, strategy_for, suggest_action
from app.services.structural_diff import StructureSnapshot

from conftest import give, row, rows


def _assess(g, kind, target):
    cfg = g["cfg_bug"]
    return assess_rows(g["tenant_id"], kind, rows(kind, cfg), target, [g["alpha"]])


def _verdicts(assessments):
    return {a.ref.permission_id: a.can_be_preserved for a in assessments}


@pytest.mark.unit
def test_field_owners_follow_target_fields(graph):
    g = graph
    target = StructureSnapshot.of(g["dates"], g["basic"])
    verdicts = _verdicts(_assess(g, PermissionKind.FIELD_OWNERS, target))

    summary_row = row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["summary"].id)
    priority_row = row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id)
    assert verdicts == {summary_row.id: True, priority_row.id: False}


@pytest.mark.unit
def test_status_owners_match_on_logical_status(graph):
    """Open and In Progress exist in the Review workflow under new workflow-status ids."""
    g = graph
    target = StructureSnapshot.of(g["core"], g["review_wf"])
    assessments = _assess(g, PermissionKind.STATUS_OWNERS, target)

    by_status = {a.row.workflow_status.status_id: a.can_be_preserved for a in assessments}
    assert by_status == {g["open"].id: True, g["progress"].id: True, g["done"].id: False}


@pytest.mark.unit
def test_field_status_needs_both_field_and_status(graph):
    g = graph
    target = StructureSnapshot.of(g["dates"], g["review_wf"])
    assessments = _assess(g, PermissionKind.FIELD_STATUS, target)

    preservable = {
        (a.row.field_id, a.row.workflow_status.status_id, a.row.access_type)
        for a in assessments
        if a.can_be_preserved
    }
    expected = {
        (g["summary"].id, status.id, access)
        for status in (g["open"], g["progress"])
        for access in ("EDITOR", "VIEWER")
    }
    assert preservable == expected


@pytest.mark.unit
def test_executors_match_on_status_pair(graph):
    g = graph
    target = StructureSnapshot.of(g["core"], g["review_wf"])
    verdicts = _verdicts(_assess(g, PermissionKind.EXECUTORS, target))

    start = row(PermissionKind.EXECUTORS, g["cfg_bug"], transition_id=g["basic_t"]["Start"].id)
    finish = row(PermissionKind.EXECUTORS, g["cfg_bug"], transition_id=g["basic_t"]["Finish"].id)
    assert verdicts == {start.id: True, finish.id: False}


@pytest.mark.unit
@pytest.mark.parametrize("kind", [PermissionKind.WORKERS, PermissionKind.CREATORS])
def test_configuration_level_rows_are_always_preservable(graph, kind):
    g = graph
    target = StructureSnapshot.of(g["dates"], g["review_wf"])
    assessments = _assess(g, kind, target)

    assert len(assessments) == 1
    assert assessments[0].can_be_preserved
    assert assessments[0].suggested_action is SuggestedAction.PRESERVE


@pytest.mark.unit
def test_hard_removal_preserves_nothing(graph):
    g = graph
    for kind in PermissionKind:
        assert not any(a.can_be_preserved for a in _assess(g, kind, None))
    assert strategy_for(PermissionKind.WORKERS).can_preserve(object(), None) is False


@pytest.mark.unit
def test_assignments_drive_default_preserve(graph):
    g = graph
    summary_row = row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["summary"].id)
    give(g["tenant_id"], summary_row, roles=[g["approver"]])

    target = StructureSnapshot.of(g["core"], g["basic"])
    by_id = {a.ref.permission_id: a for a in _assess(g, PermissionKind.FIELD_OWNERS, target)}

    assigned = by_id.pop(summary_row.id)
    assert assigned.has_assignments and assigned.default_preserve
    assert [r.name for r in assigned.resolved.tenant.roles] == ["Approver"]
    (unassigned,) = by_id.values()
    assert unassigned.can_be_preserved and not unassigned.default_preserve


@pytest.mark.unit
def test_project_override_counts_as_assignment(graph):
    g = graph
    r = row(PermissionKind.WORKERS, g["cfg_bug"])
    give(g["tenant_id"], r, grant=g["grant"], project=g["alpha"], item_type_set=g["alpha_bugs"])

    (assessment,) = _assess(g, PermissionKind.WORKERS, None)
    assert assessment.has_assignments
    (override,) = assessment.resolved.projects
    assert override.project_id == g["alpha"].id
    assert override.payload.grant.name == "Project grant"


@pytest.mark.unit
def test_suggest_action():
    assert suggest_action(True) is SuggestedAction.PRESERVE
    assert suggest_action(False) is SuggestedAction.REMOVE
    assert suggest_action(False, is_new=True) is SuggestedAction.NEW
