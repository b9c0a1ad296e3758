"""
Tests: permission impact REST API (/api/v1).

Thin checks over the blueprint: request parsing, status codes, error
payloads and attachment headers. Business rules are covered by the
service-level test modules.
"""

import re

import pytest

from app.models import db
from app.models.structure import FieldSetEntry, ItemTypeConfiguration
from app.services.permission_catalog import PermissionKind

from conftest import give, row


def _h(g):
    return {"X-Tenant-Id": str(g["tenant_id"])}


def _cfg_url(g, suffix):
    return f"/api/v1/item-type-configurations/{g['cfg_bug'].id}/{suffix}"


@pytest.fixture()
def priority_owner(graph):
    g = graph
    owner = row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id)
    give(g["tenant_id"], owner, roles=[g["approver"]])
    return owner.id


# ═════════════════════════════════════════════════════════════════════════════
# Field sets
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_analyze_field_set_removal(client, graph, priority_owner):
    g = graph
    res = client.post(
        f"/api/v1/field-sets/{g['core'].id}/analyze-removal-impact",
        json={"removed_field_configuration_ids": [g["c_priority"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    assert data["scope"] == "field_set"
    assert data["totals"]["total_permissions"] == 1
    (group,) = data["item_type_sets"]
    assert group["permissions"]["FIELD_OWNERS"][0]["permission_id"] == priority_owner


@pytest.mark.integration
def test_tenant_from_body_without_header(client, graph):
    g = graph
    res = client.post(
        f"/api/v1/field-sets/{g['core'].id}/analyze-removal-impact",
        json={"tenant_id": g["tenant_id"], "removed_field_configuration_ids": [g["c_priority"].id]},
    )
    assert res.status_code == 200


@pytest.mark.integration
def test_missing_tenant_is_400(client, graph):
    res = client.post(
        f"/api/v1/field-sets/{graph['core'].id}/analyze-removal-impact",
        json={"removed_field_configuration_ids": []},
    )
    assert res.status_code == 400
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_REQUIRED"
    assert body["error"] == "tenant_id is required"


@pytest.mark.integration
def test_bad_id_list_is_422(client, graph):
    res = client.post(
        f"/api/v1/field-sets/{graph['core'].id}/analyze-removal-impact",
        json={"removed_field_configuration_ids": "12"},
        headers=_h(graph),
    )
    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_CONSTRAINT"
    assert body["details"] == {"removed_field_configuration_ids": "invalid"}


@pytest.mark.integration
def test_unknown_field_set_is_404(client, graph):
    res = client.post(
        "/api/v1/field-sets/999999/analyze-removal-impact",
        json={"removed_field_configuration_ids": []},
        headers=_h(graph),
    )
    assert res.status_code == 404
    assert res.get_json()["error"] == "FieldSet not found"


@pytest.mark.integration
def test_field_set_csv_export(client, graph, priority_owner):
    g = graph
    res = client.post(
        f"/api/v1/field-sets/{g['core'].id}/export-removal-impact-csv",
        json={"removed_field_configuration_ids": [g["c_priority"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    assert res.mimetype == "text/csv"
    disposition = res.headers["Content-Disposition"]
    assert re.search(rf"permission-impact-field-set-{g['core'].id}-\d{{8}}\.csv$", disposition)
    lines = res.get_data(as_text=True).strip().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("Permission Type,Permission ID")


@pytest.mark.integration
def test_field_set_json_export(client, graph, priority_owner):
    g = graph
    res = client.post(
        f"/api/v1/field-sets/{g['core'].id}/export-removal-impact",
        json={"removed_field_configuration_ids": [g["c_priority"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    assert res.mimetype == "application/json"
    assert res.headers["Content-Disposition"].endswith(".json")
    assert res.get_json()["totals"]["total_permissions"] == 1


@pytest.mark.integration
def test_remove_orphaned_field_set_permissions(client, graph, priority_owner):
    g = graph
    res = client.post(
        f"/api/v1/field-sets/{g['core'].id}/remove-orphaned-permissions",
        json={
            "removed_field_configuration_ids": [g["c_priority"].id],
            "only_without_assignments": True,
        },
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    # 2 configurations * (1 owner + 6 field status) minus the assigned owner
    assert data["total_deleted"] == 13
    assert data["kept"] == 1
    assert row(PermissionKind.FIELD_OWNERS, g["cfg_bug"], field_id=g["priority"].id).id == priority_owner


@pytest.mark.integration
def test_provision_field_set(client, graph):
    g = graph
    db.session.add(FieldSetEntry(
        tenant_id=g["tenant_id"], field_set_id=g["core"].id, field_configuration_id=g["c_due"].id, order_index=2,
    ))
    db.session.commit()

    res = client.post(
        f"/api/v1/field-sets/{g['core'].id}/provision-permissions",
        json={"added_field_ids": [g["due"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    assert res.get_json()["created"] == {"FIELD_OWNERS": 2, "FIELD_STATUS": 12}


# ═════════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_analyze_status_removal(client, graph):
    g = graph
    finish = row(PermissionKind.EXECUTORS, g["cfg_bug"], transition_id=g["basic_t"]["Finish"].id)
    give(g["tenant_id"], finish, roles=[g["approver"]])

    res = client.post(
        f"/api/v1/workflows/{g['basic'].id}/analyze-status-removal-impact",
        json={"removed_workflow_status_ids": [g["basic_ws"]["Done"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    assert data["diff"]["cascaded_transition_ids"] == [g["basic_t"]["Finish"].id]
    assert data["totals"]["total_permissions"] == 1


@pytest.mark.integration
def test_analyze_transition_removal(client, graph):
    g = graph
    res = client.post(
        f"/api/v1/workflows/{g['basic'].id}/analyze-transition-removal-impact",
        json={"removed_transition_ids": [g["basic_t"]["Start"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    assert res.get_json()["scope"] == "workflow"


@pytest.mark.integration
def test_workflow_csv_export(client, graph):
    g = graph
    res = client.post(
        f"/api/v1/workflows/{g['basic'].id}/export-removal-impact-csv",
        json={"removed_transition_ids": [g["basic_t"]["Start"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    assert f"permission-impact-workflow-{g['basic'].id}-" in res.headers["Content-Disposition"]


@pytest.mark.integration
def test_confirm_workflow_removal(client, graph):
    g = graph
    res = client.post(
        f"/api/v1/workflows/{g['basic'].id}/confirm-removal",
        json={"removed_transition_ids": [g["basic_t"]["Start"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    assert res.get_json()["deleted"] == {"EXECUTORS": 2}


@pytest.mark.integration
def test_confirm_workflow_removal_rejects_unaffected_preserve_ref(client, graph):
    g = graph
    worker = row(PermissionKind.WORKERS, g["cfg_bug"])
    worker_id = worker.id
    res = client.post(
        f"/api/v1/workflows/{g['basic'].id}/confirm-removal",
        json={
            "removed_transition_ids": [g["basic_t"]["Start"].id],
            "preserve_permission_ids": [{"permission_type": "WORKERS", "permission_id": worker_id}],
        },
        headers=_h(g),
    )
    assert res.status_code == 422
    assert res.get_json()["details"] == {
        "preserve_permission_ids": [{"permission_type": "WORKERS", "permission_id": worker_id}],
    }
    assert row(PermissionKind.EXECUTORS, g["cfg_bug"], transition_id=g["basic_t"]["Start"].id)


@pytest.mark.integration
def test_provision_workflow_rejects_foreign_status(client, graph):
    g = graph
    res = client.post(
        f"/api/v1/workflows/{g['basic'].id}/provision-permissions",
        json={"new_workflow_status_ids": [g["review_ws"]["Review"].id]},
        headers=_h(g),
    )
    assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════════
# Item-type-sets
# ═════════════════════════════════════════════════════════════════════════════


def _its_url(g, suffix):
    return f"/api/v1/item-type-sets/{g['shared'].id}/{suffix}"


@pytest.fixture()
def task_worker(graph):
    g = graph
    worker = row(PermissionKind.WORKERS, g["cfg_task"])
    give(g["tenant_id"], worker, roles=[g["reviewer"]], project=g["beta"], item_type_set=g["shared"])
    return worker.id


@pytest.mark.integration
def test_analyze_configuration_removal(client, graph, task_worker):
    g = graph
    res = client.post(
        _its_url(g, "analyze-configuration-removal-impact"),
        json={"removed_item_type_configuration_ids": [g["cfg_task"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    assert data["scope"] == "item_type_set"
    assert data["diff"]["removed_item_type_configuration_ids"] == [g["cfg_task"].id]
    (group,) = data["item_type_sets"]
    assert group["permissions"]["WORKERS"][0]["permission_id"] == task_worker


@pytest.mark.integration
def test_configuration_removal_of_foreign_configuration_is_422(client, graph):
    g = graph
    res = client.post(
        _its_url(g, "analyze-configuration-removal-impact"),
        json={"removed_item_type_configuration_ids": [g["cfg_bug"].id]},
        headers=_h(g),
    )
    assert res.status_code == 422
    assert res.get_json()["details"] == {"removed_item_type_configuration_ids": [g["cfg_bug"].id]}


@pytest.mark.integration
def test_configuration_removal_csv_export(client, graph, task_worker):
    g = graph
    res = client.post(
        _its_url(g, "export-configuration-removal-impact-csv"),
        json={"removed_item_type_configuration_ids": [g["cfg_task"].id]},
        headers=_h(g),
    )
    assert res.status_code == 200
    assert res.mimetype == "text/csv"
    assert f"permission-impact-item-type-set-{g['shared'].id}-" in res.headers["Content-Disposition"]
    assert len(res.get_data(as_text=True).strip().splitlines()) == 2


@pytest.mark.integration
def test_remove_configuration_permissions(client, graph, task_worker):
    g = graph
    cfg_id = g["cfg_task"].id
    res = client.post(
        _its_url(g, "remove-configuration-permissions"),
        json={"removed_item_type_configuration_ids": [cfg_id], "delete_configurations": True},
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    assert data["total_deleted"] == 21
    assert data["configurations_deleted"] == 1
    assert data["assignments_deleted"] == {"tenant": 0, "project": 1, "residual_project": 0}
    assert db.session.get(ItemTypeConfiguration, cfg_id) is None


@pytest.mark.integration
def test_remove_configuration_permissions_preserve_with_delete_is_422(client, graph, task_worker):
    g = graph
    cfg_id = g["cfg_task"].id
    res = client.post(
        _its_url(g, "remove-configuration-permissions"),
        json={
            "removed_item_type_configuration_ids": [cfg_id],
            "preserve_permission_ids": [{"permission_type": "WORKERS", "permission_id": task_worker}],
            "delete_configurations": True,
        },
        headers=_h(g),
    )
    assert res.status_code == 422
    assert res.get_json()["error_code"] == "ERR_VALIDATION_CONSTRAINT"
    assert db.session.get(ItemTypeConfiguration, cfg_id) is not None


# ═════════════════════════════════════════════════════════════════════════════
# Item type configurations
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_migration_impact_preview(client, graph):
    g = graph
    res = client.get(
        _cfg_url(g, "migration-impact") + f"?new_workflow_id={g['review_wf'].id}",
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    assert data["version"] == 1
    assert data["workflow_changed"] is True
    assert data["total_preservable_permissions"] == 11
    assert data["total_removable_permissions"] == 6
    assert data["total_new_permissions"] == 6


@pytest.mark.integration
def test_migration_impact_bad_query_param(client, graph):
    res = client.get(_cfg_url(graph, "migration-impact") + "?new_workflow_id=abc", headers=_h(graph))
    assert res.status_code == 422
    assert res.get_json()["details"] == {"new_workflow_id": "invalid"}


@pytest.mark.integration
def test_migration_impact_without_change_is_422(client, graph):
    res = client.get(_cfg_url(graph, "migration-impact"), headers=_h(graph))
    assert res.status_code == 422


@pytest.mark.integration
def test_migration_impact_csv(client, graph):
    g = graph
    res = client.get(
        _cfg_url(g, "export-migration-impact-csv") + f"?new_workflow_id={g['review_wf'].id}",
        headers=_h(g),
    )
    assert res.status_code == 200
    assert res.mimetype == "text/csv"
    assert f"configuration-{g['cfg_bug'].id}-migration" in res.headers["Content-Disposition"]
    assert len(res.get_data(as_text=True).strip().splitlines()) == 1 + 17 + 6


@pytest.mark.integration
def test_migrate_permissions(client, graph):
    g = graph
    res = client.post(
        _cfg_url(g, "migrate-permissions"),
        json={"new_workflow_id": g["review_wf"].id, "expected_version": 1},
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    assert data["version"] == 2
    assert data["total_deleted"] == 6
    assert data["preserved"] == 11
    assert data["provisioned"]["total_created"] == 6
    assert db.session.get(ItemTypeConfiguration, g["cfg_bug"].id).workflow_id == g["review_wf"].id


@pytest.mark.integration
def test_migrate_permissions_with_explicit_refs(client, graph, priority_owner):
    g = graph
    res = client.post(
        _cfg_url(g, "migrate-permissions"),
        json={
            "new_field_set_id": g["dates"].id,
            "preserve_permission_ids": [{"permission_type": "FIELD_OWNERS", "permission_id": priority_owner}],
        },
        headers=_h(g),
    )
    assert res.status_code == 200
    data = res.get_json()
    assert data["kept_orphaned"] == 1
    assert data["preserved"] == 0


@pytest.mark.integration
def test_migrate_permissions_flag_conflict(client, graph):
    g = graph
    res = client.post(
        _cfg_url(g, "migrate-permissions"),
        json={"new_workflow_id": g["review_wf"].id, "remove_all": True, "preserve_all_preservable": True},
        headers=_h(g),
    )
    assert res.status_code == 422
    assert db.session.get(ItemTypeConfiguration, g["cfg_bug"].id).version == 1


@pytest.mark.integration
def test_migrate_permissions_stale_version(client, graph):
    g = graph
    res = client.post(
        _cfg_url(g, "migrate-permissions"),
        json={"new_workflow_id": g["review_wf"].id, "expected_version": 7},
        headers=_h(g),
    )
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_CONFLICT_STATE"
    assert body["details"]["field"] == "version"


@pytest.mark.integration
@pytest.mark.parametrize("payload", [
    {"preserve_permission_ids": [{"permission_type": "OWNERS", "permission_id": 1}]},
    {"preserve_permission_ids": [{"permission_type": "WORKERS"}]},
    {"preserve_permission_ids": "all"},
    {"remove_all": "yes"},
])
def test_migrate_permissions_rejects_malformed_body(client, graph, payload):
    g = graph
    res = client.post(
        _cfg_url(g, "migrate-permissions"),
        json={"new_workflow_id": g["review_wf"].id, **payload},
        headers=_h(g),
    )
    assert res.status_code == 422


@pytest.mark.integration
def test_provision_configuration(client, graph):
    res = client.post(_cfg_url(graph, "provision-permissions"), json={}, headers=_h(graph))
    assert res.status_code == 200
    assert res.get_json()["total_created"] == 0


@pytest.mark.integration
def test_non_json_body_is_415(client, graph):
    res = client.post(
        _cfg_url(graph, "migrate-permissions"),
        data="new_workflow_id=1",
        content_type="text/plain",
        headers=_h(graph),
    )
    assert res.status_code == 415
