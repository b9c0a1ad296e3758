"""
Shared pytest fixtures for the Permission Impact Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - graph: A seeded permission graph for the default tenant
    - other_graph: The same graph built for a second tenant

Graph layout (``build_graph``):

    fields        Summary, Priority, Due Date
    field sets    Core  = [Summary, Priority]
                  Dates = [Summary, Due Date]
                  (plus a second configuration of Priority, unused)
    statuses      Open, In Progress, Done, Review
    workflows     Basic  = Open, In Progress, Done
                           Start  (Open -> In Progress)
                           Finish (In Progress -> Done)
                  Review = Open, In Progress, Review
                           Begin  (Open -> In Progress)
                           Submit (In Progress -> Review)
    item types    Bug, Task
    item-type-sets
        Alpha Bugs   bound to project ALPHA   → cfg_bug  (Bug,  Basic, Core)
        Shared Tasks shared with ALPHA, BETA  → cfg_task (Task, Basic, Core)

Both configurations get their full row set via
create_permissions_for_configuration (21 rows each, no assignments).
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import Role, Tenant
from app.models.permissions import Grant
from app.models.project import Project
from app.models.structure import (
    Field,
    FieldConfiguration,
    FieldSet,
    FieldSetEntry,
    ItemType,
    ItemTypeConfiguration,
    ItemTypeSet,
    Status,
    Transition,
    Workflow,
    WorkflowStatus,
)
from app.services.assignment_resolution import assign
from app.services.permission_catalog import PermissionRef, kind_of
from app.services.provisioning import create_permissions_for_configuration

# Rows a configuration with 2 fields, 3 workflow statuses and 2 transitions owns:
# 2 field owners + 3 status owners + 2*3*2 field status + 2 executors + worker + creator
ROWS_PER_CONFIGURATION = 21


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist.

    Returns the tenant ID.
    """
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _ensure_default_tenant()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    return Tenant.query.filter_by(slug="test-default").first()


# ── ORM builders ─────────────────────────────────────────────────────────


def make_tenant(name: str, slug: str) -> Tenant:
    """Create and flush a Tenant."""
    t = Tenant(name=name, slug=slug)
    _db.session.add(t)
    _db.session.flush()
    return t


def _add(entity):
    _db.session.add(entity)
    _db.session.flush()
    return entity


def make_field(tenant_id: int, name: str) -> tuple[Field, FieldConfiguration]:
    """Create a Field plus one FieldConfiguration wrapping it."""
    f = _add(Field(tenant_id=tenant_id, name=name))
    cfg = _add(FieldConfiguration(tenant_id=tenant_id, field_id=f.id, name=f"{name} (default)"))
    return f, cfg


def make_field_set(tenant_id: int, name: str, configurations) -> FieldSet:
    fs = _add(FieldSet(tenant_id=tenant_id, name=name))
    for i, cfg in enumerate(configurations):
        _add(FieldSetEntry(tenant_id=tenant_id, field_set_id=fs.id, field_configuration_id=cfg.id, order_index=i))
    _db.session.refresh(fs)
    return fs


def make_workflow(tenant_id: int, name: str, statuses, transitions) -> tuple[Workflow, dict, dict]:
    """Create a workflow.

    Args:
        statuses: Status rows to bind, first one is initial.
        transitions: (name, from Status, to Status) triples.

    Returns:
        (workflow, {status name: WorkflowStatus}, {transition name: Transition})
    """
    wf = _add(Workflow(tenant_id=tenant_id, name=name))
    ws_by_name = {}
    for i, status in enumerate(statuses):
        ws_by_name[status.name] = _add(
            WorkflowStatus(tenant_id=tenant_id, workflow_id=wf.id, status_id=status.id, is_initial=(i == 0))
        )
    t_by_name = {}
    for t_name, src, dst in transitions:
        t_by_name[t_name] = _add(
            Transition(
                tenant_id=tenant_id,
                workflow_id=wf.id,
                name=t_name,
                from_status_id=ws_by_name[src.name].id,
                to_status_id=ws_by_name[dst.name].id,
            )
        )
    _db.session.refresh(wf)
    return wf, ws_by_name, t_by_name


def make_configuration(tenant_id: int, item_type_set, item_type, workflow, field_set) -> ItemTypeConfiguration:
    return _add(
        ItemTypeConfiguration(
            tenant_id=tenant_id,
            item_type_set_id=item_type_set.id,
            item_type_id=item_type.id,
            workflow_id=workflow.id,
            field_set_id=field_set.id,
        )
    )


def build_graph(tenant_id: int) -> dict:
    """Build and commit the graph described in the module docstring."""
    alpha = _add(Project(tenant_id=tenant_id, project_key="ALPHA", name="Alpha"))
    beta = _add(Project(tenant_id=tenant_id, project_key="BETA", name="Beta"))
    approver = _add(Role(tenant_id=tenant_id, name="Approver"))
    reviewer = _add(Role(tenant_id=tenant_id, name="Reviewer"))
    grant = _add(Grant(tenant_id=tenant_id))
    role_grant = _add(Grant(tenant_id=tenant_id, role_id=reviewer.id))

    summary, c_summary = make_field(tenant_id, "Summary")
    priority, c_priority = make_field(tenant_id, "Priority")
    due, c_due = make_field(tenant_id, "Due Date")
    c_priority_alt = _add(
        FieldConfiguration(tenant_id=tenant_id, field_id=priority.id, name="Priority (compact)")
    )
    core = make_field_set(tenant_id, "Core", [c_summary, c_priority])
    dates = make_field_set(tenant_id, "Dates", [c_summary, c_due])

    open_ = _add(Status(tenant_id=tenant_id, name="Open", category="TODO"))
    progress = _add(Status(tenant_id=tenant_id, name="In Progress", category="PROGRESS"))
    done = _add(Status(tenant_id=tenant_id, name="Done", category="COMPLETED"))
    review = _add(Status(tenant_id=tenant_id, name="Review", category="PROGRESS"))

    basic, basic_ws, basic_t = make_workflow(
        tenant_id, "Basic", [open_, progress, done],
        [("Start", open_, progress), ("Finish", progress, done)],
    )
    review_wf, review_ws, review_t = make_workflow(
        tenant_id, "Review", [open_, progress, review],
        [("Begin", open_, progress), ("Submit", progress, review)],
    )

    bug = _add(ItemType(tenant_id=tenant_id, name="Bug"))
    task = _add(ItemType(tenant_id=tenant_id, name="Task"))
    alpha_bugs = _add(ItemTypeSet(tenant_id=tenant_id, name="Alpha Bugs", project_id=alpha.id))
    shared = _add(ItemTypeSet(tenant_id=tenant_id, name="Shared Tasks"))
    shared.projects = [alpha, beta]
    _db.session.flush()

    cfg_bug = make_configuration(tenant_id, alpha_bugs, bug, basic, core)
    cfg_task = make_configuration(tenant_id, shared, task, basic, core)
    _db.session.commit()

    create_permissions_for_configuration(tenant_id, cfg_bug)
    create_permissions_for_configuration(tenant_id, cfg_task)

    return {
        "tenant_id": tenant_id,
        "alpha": alpha, "beta": beta,
        "approver": approver, "reviewer": reviewer,
        "grant": grant, "role_grant": role_grant,
        "summary": summary, "priority": priority, "due": due,
        "c_summary": c_summary, "c_priority": c_priority, "c_due": c_due,
        "c_priority_alt": c_priority_alt,
        "core": core, "dates": dates,
        "open": open_, "progress": progress, "done": done, "review": review,
        "basic": basic, "basic_ws": basic_ws, "basic_t": basic_t,
        "review_wf": review_wf, "review_ws": review_ws, "review_t": review_t,
        "bug": bug, "task": task,
        "alpha_bugs": alpha_bugs, "shared": shared,
        "cfg_bug": cfg_bug, "cfg_task": cfg_task,
    }


def row(kind, configuration, **anchors):
    """Fetch the single permission row of ``kind`` on a configuration matching ``anchors``."""
    return kind.model.query.filter_by(item_type_configuration_id=configuration.id, **anchors).one()


def rows(kind, configuration):
    return kind.model.query.filter_by(item_type_configuration_id=configuration.id).order_by(kind.model.id).all()


def give(tenant_id: int, permission_row, *, roles=(), grant=None, project=None, item_type_set=None):
    """Assign roles / a grant to a row (tenant scope, or a project override) and commit."""
    assignment = assign(
        tenant_id,
        PermissionRef(kind_of(permission_row), permission_row.id),
        role_ids=[r.id for r in roles] if roles else None,
        grant_id=grant.id if grant is not None else None,
        project_id=project.id if project is not None else None,
        item_type_set_id=item_type_set.id if item_type_set is not None else None,
    )
    _db.session.commit()
    return assignment


# ── Graph fixtures ───────────────────────────────────────────────────────


@pytest.fixture()
def graph(default_tenant):
    """Seeded permission graph for the default tenant."""
    return build_graph(default_tenant.id)


@pytest.fixture()
def other_graph():
    """Identical graph owned by a second tenant."""
    tenant = make_tenant("Other Tenant", "other-tenant")
    _db.session.commit()
    return build_graph(tenant.id)
