"""
Tests for app/services/helpers/scoped_queries.py

These tests are security-critical: they verify the tenant isolation
helpers behave correctly under adversarial conditions.

Scenarios covered:
  1. ValueError when called with no scope parameter at all
  2. ValueError when the provided scope field does not exist on the model
  3. NotFoundError when PK is correct but scope (tenant) does not match
  4. Correct entity returned when PK + scope both match
  5. get_scoped_many: ordered results, first miss reported
  6. ensure_same_tenant: foreign rows reached through relationships

Test isolation strategy:
  Relies on the autouse `session` fixture from conftest.py which rolls back
  and recreates tables after every test. Each test creates its own data.
"""

import pytest

from app.core.exceptions import NotFoundError, TenantIsolationError
from app.models import db
from app.models.structure import Status, Workflow, WorkflowStatus
from app.services.helpers.scoped_queries import ensure_same_tenant, get_scoped, get_scoped_many

from conftest import make_tenant


# ── Test helpers ─────────────────────────────────────────────────────────────


def _make_workflow(*, tenant_id: int, name: str = "Test Workflow") -> Workflow:
    wf = Workflow(tenant_id=tenant_id, name=name)
    db.session.add(wf)
    db.session.flush()
    return wf


def _make_workflow_status(wf: Workflow, name: str = "Open") -> WorkflowStatus:
    status = Status(tenant_id=wf.tenant_id, name=name)
    db.session.add(status)
    db.session.flush()
    ws = WorkflowStatus(tenant_id=wf.tenant_id, workflow_id=wf.id, status_id=status.id)
    db.session.add(ws)
    db.session.flush()
    return ws


# ── 1. ValueError: no scope provided ────────────────────────────────────────


class TestGetScopedRequiresAtLeastOneScope:
    """get_scoped must refuse to execute when no scope argument is given."""

    def test_get_scoped_without_scope_raises_value_error(self):
        """No scope → ValueError. Fail-loud prevents accidental unscoped lookups."""
        with pytest.raises(ValueError, match="requires at least one scope filter"):
            get_scoped(Workflow, 999)

    def test_error_message_includes_model_name(self):
        with pytest.raises(ValueError, match="Workflow"):
            get_scoped(Workflow, 1)

    def test_all_scope_kwargs_none_is_equivalent_to_no_scope(self):
        with pytest.raises(ValueError):
            get_scoped(Workflow, 1, tenant_id=None, workflow_id=None, field_set_id=None)


# ── 2. ValueError: scope field absent from model ────────────────────────────


class TestGetScopedRejectsInvalidScopeField:
    """If the model has no matching column, the scope cannot be applied.

    Silently ignoring a scope kwarg that targets a non-existent column would
    produce an unscoped query. get_scoped raises ValueError instead.
    """

    def test_scope_field_not_on_model_raises_value_error(self):
        """field_set_id passed but Workflow has no field_set_id column → ValueError."""
        with pytest.raises(ValueError, match="no applicable scope"):
            get_scoped(Workflow, 1, field_set_id=99)

    def test_error_message_lists_missing_fields(self):
        with pytest.raises(ValueError, match="field_set_id"):
            get_scoped(Workflow, 1, field_set_id=99)


# ── 3. NotFoundError: wrong scope (cross-tenant access) ─────────────────────


class TestGetScopedWrongScopeRaisesNotFound:
    """Accessing an entity with a mismatched scope MUST raise NotFoundError.

    Callers cannot distinguish 'does not exist' from 'exists but belongs to
    another tenant'. Both produce NotFoundError → 404.
    """

    def test_wrong_tenant_id_raises_not_found(self):
        tenant_a = make_tenant("Company A", "company-a")
        tenant_b = make_tenant("Company B", "company-b")
        wf = _make_workflow(tenant_id=tenant_a.id, name="A's Workflow")

        with pytest.raises(NotFoundError):
            get_scoped(Workflow, wf.id, tenant_id=tenant_b.id)

    def test_nonexistent_pk_raises_not_found(self, default_tenant):
        with pytest.raises(NotFoundError) as exc_info:
            get_scoped(Workflow, 999_999, tenant_id=default_tenant.id)

        assert exc_info.value.resource == "Workflow"
        assert exc_info.value.resource_id == 999_999

    def test_parent_scope_is_applied(self, default_tenant):
        """A workflow status looked up under the wrong workflow is not found."""
        wf_1 = _make_workflow(tenant_id=default_tenant.id, name="One")
        wf_2 = _make_workflow(tenant_id=default_tenant.id, name="Two")
        ws = _make_workflow_status(wf_1)

        with pytest.raises(NotFoundError):
            get_scoped(WorkflowStatus, ws.id, tenant_id=default_tenant.id, workflow_id=wf_2.id)


# ── 4. Happy path: correct scope returns entity ─────────────────────────────


class TestGetScopedCorrectScopeReturnsEntity:
    def test_correct_tenant_id_returns_workflow(self, default_tenant):
        wf = _make_workflow(tenant_id=default_tenant.id, name="My Workflow")

        result = get_scoped(Workflow, wf.id, tenant_id=default_tenant.id)

        assert result.id == wf.id
        assert result.tenant_id == default_tenant.id
        assert result.name == "My Workflow"

    def test_returns_correct_entity_among_multiple(self, default_tenant):
        _make_workflow(tenant_id=default_tenant.id, name="Workflow 1")
        wf_2 = _make_workflow(tenant_id=default_tenant.id, name="Workflow 2")

        result = get_scoped(Workflow, wf_2.id, tenant_id=default_tenant.id)

        assert result.name == "Workflow 2"

    def test_tenant_and_parent_scope_together(self, default_tenant):
        wf = _make_workflow(tenant_id=default_tenant.id)
        ws = _make_workflow_status(wf)

        assert get_scoped(WorkflowStatus, ws.id, tenant_id=default_tenant.id, workflow_id=wf.id) is ws


# ── 5. get_scoped_many ───────────────────────────────────────────────────────


class TestGetScopedMany:
    def test_returns_rows_ordered_by_id(self, default_tenant):
        first = _make_workflow(tenant_id=default_tenant.id, name="First")
        second = _make_workflow(tenant_id=default_tenant.id, name="Second")

        result = get_scoped_many(Workflow, [second.id, first.id, second.id], tenant_id=default_tenant.id)

        assert [wf.id for wf in result] == [first.id, second.id]

    def test_empty_input_skips_the_query(self, default_tenant):
        assert get_scoped_many(Workflow, [], tenant_id=default_tenant.id) == []

    def test_first_missing_id_is_reported(self, default_tenant):
        other = make_tenant("Other", "other")
        mine = _make_workflow(tenant_id=default_tenant.id)
        theirs = _make_workflow(tenant_id=other.id)

        with pytest.raises(NotFoundError) as exc_info:
            get_scoped_many(Workflow, [999_999, theirs.id, mine.id], tenant_id=default_tenant.id)

        assert exc_info.value.resource_id == theirs.id


# ── 6. ensure_same_tenant ────────────────────────────────────────────────────


class TestEnsureSameTenant:
    def test_own_row_is_returned(self, default_tenant):
        wf = _make_workflow(tenant_id=default_tenant.id)

        assert ensure_same_tenant(wf, default_tenant.id) is wf

    def test_foreign_row_raises_isolation_error(self, default_tenant):
        other = make_tenant("Other", "other")
        wf = _make_workflow(tenant_id=other.id)

        with pytest.raises(TenantIsolationError) as exc_info:
            ensure_same_tenant(wf, default_tenant.id)

        assert exc_info.value.owner_tenant_id == other.id
        assert exc_info.value.tenant_id == default_tenant.id

    def test_isolation_error_is_a_not_found(self, default_tenant):
        """Handlers registered for NotFoundError cover isolation failures too."""
        other = make_tenant("Other", "other")
        wf = _make_workflow(tenant_id=other.id)

        with pytest.raises(NotFoundError):
            ensure_same_tenant(wf, default_tenant.id)
