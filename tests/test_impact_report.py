"""
Tests: field set / workflow impact analysis and the report exports.

Covers:
    1. Rows without assignments are left out of reports
    2. Ordering and grouping by item-type-set
    3. Totals (roles, global grants, project grants)
    4. Workflow status removal cascades to executor rows
    5. CSV / JSON exports are deterministic
"""

import csv
import io
import json

import pytest

from app.core.exceptions import ValidationError
from app.services.impact_analysis import analyze_field_set_impact, analyze_workflow_impact
from app.services.impact_report import impact_report_to_csv, impact_report_to_json
from app.services.permission_catalog import PermissionKind
from app.services.preservability import SuggestedAction

from conftest import give, row


def _remove_priority(g):
    return analyze_field_set_impact(g["tenant_id"], g["core"].id, [g["c_priority"].id])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Filtering
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_unassigned_rows_are_not_reported(graph):
    report = _remove_priority(graph)

    assert report.item_type_sets == []
    assert report.totals.total_permissions == 0
    assert report.diff["removed_field_ids"] == [graph["priority"].id]


@pytest.mark.unit
def test_same_field_swap_reports_nothing(graph):
    g = graph
    give(g["tenant_id"], row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id),
         roles=[g["approver"]])

    report = analyze_field_set_impact(
        g["tenant_id"], g["core"].id, [g["c_priority"].id], [g["c_priority_alt"].id],
    )

    assert report.totals.total_permissions == 0


# ═════════════════════════════════════════════════════════════════════════════
# 2-3. Grouping, ordering, totals
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_field_set_report_groups_and_orders_rows(graph):
    g = graph
    tid = g["tenant_id"]
    editor = row(
        PermissionKind.FIELD_STATUS, g["cfg_bug"],
        field_id=g["priority"].id, workflow_status_id=g["basic_ws"]["Open"].id, access_type="EDITOR",
    )
    owner = row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id)
    give(tid, editor, grant=g["grant"])
    give(tid, owner, roles=[g["reviewer"], g["approver"]])

    report = _remove_priority(g)

    (group,) = report.item_type_sets
    assert group.item_type_set_name == "Alpha Bugs"
    assert group.project_name == "Alpha"
    assert [(p.permission_type, p.permission_id) for p in group.permissions] == [
        ("FIELD_OWNERS", owner.id),
        ("FIELD_EDITORS", editor.id),
    ]
    owner_impact = group.permissions[0]
    assert owner_impact.assigned_roles == ["Approver", "Reviewer"]
    assert owner_impact.can_be_preserved is False
    assert owner_impact.suggested_action is SuggestedAction.REMOVE
    assert owner_impact.anchor["field_name"] == "Priority"

    totals = report.totals.to_dict()
    assert totals["total_permissions"] == 2
    assert totals["total_role_assignments"] == 2
    assert totals["total_grant_assignments"] == 1
    assert totals["total_global_grants"] == 1
    assert totals["total_project_grants"] == 0


@pytest.mark.unit
def test_project_overrides_feed_project_grant_totals(graph):
    g = graph
    tid = g["tenant_id"]
    task_owner = row(PermissionKind.FIELD_OWNERS, g["cfg_task"], field_id=g["priority"].id)
    give(tid, task_owner, grant=g["grant"], project=g["beta"], item_type_set=g["shared"])
    give(tid, task_owner, roles=[g["approver"]], project=g["alpha"], item_type_set=g["shared"])
    bug_owner = row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id)
    give(tid, bug_owner, roles=[g["approver"]])

    report = _remove_priority(g)

    assert [s.item_type_set_name for s in report.item_type_sets] == ["Alpha Bugs", "Shared Tasks"]
    shared = report.item_type_sets[1]
    (impact,) = shared.permissions
    assert [(p.project_name, p.roles, p.grant_name) for p in impact.project_assignments] == [
        ("Alpha", ["Approver"], None),
        ("Beta", [], "Project grant"),
    ]
    assert impact.assigned_roles == []
    assert impact.has_assignments

    totals = report.totals.to_dict()
    assert totals["total_permissions"] == 2
    assert totals["total_role_assignments"] == 2
    assert totals["total_grant_assignments"] == 1
    assert totals["total_project_grants"] == 1
    assert totals["project_grants"] == [
        {"project_id": g["beta"].id, "project_name": "Beta", "grant_count": 1},
    ]


@pytest.mark.unit
def test_report_dict_groups_rows_by_label(graph):
    g = graph
    give(g["tenant_id"], row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id),
         roles=[g["approver"]])

    data = _remove_priority(g).to_dict()

    assert data["scope"] == "field_set"
    assert data["source_name"] == "Core"
    (group,) = data["item_type_sets"]
    assert list(group["permissions"]) == ["FIELD_OWNERS"]
    assert group["permissions"]["FIELD_OWNERS"][0]["item_type_name"] == "Bug"


@pytest.mark.unit
def test_field_set_analysis_rejects_foreign_removed_ids(graph):
    with pytest.raises(ValidationError):
        analyze_field_set_impact(graph["tenant_id"], graph["core"].id, [graph["c_due"].id])


# ═════════════════════════════════════════════════════════════════════════════
# 4. Workflow removal
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_status_removal_reports_cascaded_executors(graph):
    g = graph
    tid = g["tenant_id"]
    finish = row(PermissionKind.EXECUTORS, g["cfg_bug"], transition_id=g["basic_t"]["Finish"].id)
    done_owner = row(PermissionKind.STATUS_OWNERS, g["cfg_task"], workflow_status_id=g["basic_ws"]["Done"].id)
    viewer = row(
        PermissionKind.FIELD_STATUS, g["cfg_bug"],
        field_id=g["summary"].id, workflow_status_id=g["basic_ws"]["Done"].id, access_type="VIEWER",
    )
    give(tid, finish, roles=[g["approver"]])
    give(tid, done_owner, grant=g["role_grant"])
    give(tid, viewer, roles=[g["reviewer"]])

    report = analyze_workflow_impact(tid, g["basic"].id, [g["basic_ws"]["Done"].id])

    assert report.scope == "workflow"
    assert report.diff["cascaded_transition_ids"] == [g["basic_t"]["Finish"].id]
    bugs, tasks = report.item_type_sets
    assert [p.permission_type for p in bugs.permissions] == ["FIELD_VIEWERS", "EXECUTORS"]
    assert bugs.permissions[1].anchor["transition_name"] == "Finish"
    assert tasks.permissions[0].permission_type == "STATUS_OWNERS"
    assert tasks.permissions[0].grant_name == "Reviewer"
    assert report.totals.total_permissions == 3


@pytest.mark.unit
def test_transition_removal_only_touches_executors(graph):
    g = graph
    tid = g["tenant_id"]
    start = row(PermissionKind.EXECUTORS, g["cfg_bug"], transition_id=g["basic_t"]["Start"].id)
    give(tid, start, grant=g["grant"])
    give(tid, row(PermissionKind.STATUS_OWNERS, g["cfg_bug"], workflow_status_id=g["basic_ws"]["Open"].id),
         roles=[g["approver"]])

    report = analyze_workflow_impact(tid, g["basic"].id, [], [g["basic_t"]["Start"].id])

    assert [impact.permission_id for _, impact in report.rows()] == [start.id]


# ═════════════════════════════════════════════════════════════════════════════
# 5. Exports
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_csv_export_lists_one_line_per_row(graph):
    g = graph
    tid = g["tenant_id"]
    owner = row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id)
    give(tid, owner, roles=[g["approver"], g["reviewer"]], grant=g["grant"])

    report = _remove_priority(g)
    text = impact_report_to_csv(report)
    lines = list(csv.reader(io.StringIO(text)))

    assert lines[0][:3] == ["Permission Type", "Permission ID", "ItemTypeSet ID"]
    assert len(lines) == 2
    record = dict(zip(lines[0], lines[1]))
    assert record["Permission ID"] == str(owner.id)
    assert record["ItemTypeSet Name"] == "Alpha Bugs"
    assert record["Field Name"] == "Priority"
    assert record["Assigned Roles"] == "Approver;Reviewer"
    assert record["Grant"] == "Global grant"
    assert record["Suggested Action"] == "REMOVE"
    assert text == impact_report_to_csv(_remove_priority(g))


@pytest.mark.unit
def test_json_export_matches_report_dict(graph):
    g = graph
    give(g["tenant_id"], row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id),
         roles=[g["approver"]])

    report = _remove_priority(g)
    data = json.loads(impact_report_to_json(report))

    assert data == json.loads(json.dumps(report.to_dict()))
    assert data["totals"]["total_permissions"] == 1
