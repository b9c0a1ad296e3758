"""permission_impact_core

Creates the permission graph schema:
  - identity       tenants, users, groups, group_members, roles, projects
  - structure      fields, field_configurations, field_sets, field_set_entries,
                   statuses, workflows, workflow_statuses, transitions,
                   item_types, item_type_sets, item_type_set_projects,
                   item_type_configurations (with optimistic ``version``)
  - grants         grants + allow / negated user and group association tables
  - permissions    the six permission row tables
  - assignments    permission_assignments, permission_assignment_roles,
                   project_permission_assignments

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5e1c0a9d7b21
Revises:
Create Date: 2026-10-19 09:12:44.518203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1c0a9d7b21'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", sa.Integer(), primary_key=True)


def _tenant():
    return sa.Column(
        "tenant_id", sa.Integer(),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True,
    )


def _fk(name, target, nullable=False, ondelete="CASCADE", index=False):
    return sa.Column(
        name, sa.Integer(),
        sa.ForeignKey(f"{target}.id", ondelete=ondelete), nullable=nullable, index=index,
    )


def _created():
    return sa.Column("created_at", sa.DateTime(), nullable=True)


def _link_table(name, left, left_target, right, right_target):
    op.create_table(
        name,
        sa.Column(left, sa.Integer(), sa.ForeignKey(f"{left_target}.id", ondelete="CASCADE"), primary_key=True),
        sa.Column(right, sa.Integer(), sa.ForeignKey(f"{right_target}.id", ondelete="CASCADE"), primary_key=True),
    )


def _permission_table(name, *columns, unique=()):
    op.create_table(
        name,
        _id(),
        _tenant(),
        _fk("item_type_configuration_id", "item_type_configurations", index=True),
        _created(),
        *columns,
        sa.UniqueConstraint("item_type_configuration_id", *unique, name=f"uq_{name[:-len('_permissions')]}_perm"),
    )


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Identity ──────────────────────────────────────────────────────────
    if "tenants" not in existing:
        op.create_table(
            "tenants",
            _id(),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False, unique=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            _created(),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
    if "users" not in existing:
        op.create_table(
            "users",
            _id(),
            _tenant(),
            sa.Column("username", sa.String(length=150), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            _created(),
            sa.UniqueConstraint("tenant_id", "username", name="uq_user_tenant_username"),
        )
    if "groups" not in existing:
        op.create_table(
            "groups",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.UniqueConstraint("tenant_id", "name", name="uq_group_tenant_name"),
        )
    if "group_members" not in existing:
        _link_table("group_members", "group_id", "groups", "user_id", "users")
    if "roles" not in existing:
        op.create_table(
            "roles",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            _created(),
            sa.UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),
        )
    if "projects" not in existing:
        op.create_table(
            "projects",
            _id(),
            _tenant(),
            sa.Column("project_key", sa.String(length=20), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("tenant_id", "project_key", name="uq_project_tenant_key"),
        )

    # ── Fields & field sets ───────────────────────────────────────────────
    if "fields" not in existing:
        op.create_table(
            "fields",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("field_type", sa.String(length=30), nullable=False, server_default="text"),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.UniqueConstraint("tenant_id", "name", name="uq_field_tenant_name"),
        )
    if "field_configurations" not in existing:
        op.create_table(
            "field_configurations",
            _id(),
            _tenant(),
            _fk("field_id", "fields", index=True),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        )
    if "field_sets" not in existing:
        op.create_table(
            "field_sets",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
        )
    if "field_set_entries" not in existing:
        op.create_table(
            "field_set_entries",
            _id(),
            _tenant(),
            _fk("field_set_id", "field_sets", index=True),
            _fk("field_configuration_id", "field_configurations"),
            sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
            sa.UniqueConstraint("field_set_id", "field_configuration_id", name="uq_field_set_entry_config"),
        )

    # ── Workflows ─────────────────────────────────────────────────────────
    if "statuses" not in existing:
        op.create_table(
            "statuses",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column(
                "category", sa.String(length=20), nullable=False, server_default="TODO",
                comment="TODO | PROGRESS | COMPLETED",
            ),
            sa.UniqueConstraint("tenant_id", "name", name="uq_status_tenant_name"),
        )
    if "workflows" not in existing:
        op.create_table(
            "workflows",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
        )
    if "workflow_statuses" not in existing:
        op.create_table(
            "workflow_statuses",
            _id(),
            _tenant(),
            _fk("workflow_id", "workflows", index=True),
            _fk("status_id", "statuses", index=True),
            sa.Column("is_initial", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.UniqueConstraint("workflow_id", "status_id", name="uq_workflow_status"),
        )
    if "transitions" not in existing:
        op.create_table(
            "transitions",
            _id(),
            _tenant(),
            _fk("workflow_id", "workflows", index=True),
            sa.Column("name", sa.String(length=150), nullable=True),
            _fk("from_status_id", "workflow_statuses"),
            _fk("to_status_id", "workflow_statuses"),
        )

    # ── Item types ────────────────────────────────────────────────────────
    if "item_types" not in existing:
        op.create_table(
            "item_types",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
        )
    if "item_type_sets" not in existing:
        op.create_table(
            "item_type_sets",
            _id(),
            _tenant(),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            _fk("project_id", "projects", nullable=True, index=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
    if "item_type_set_projects" not in existing:
        _link_table("item_type_set_projects", "item_type_set_id", "item_type_sets", "project_id", "projects")
    if "item_type_configurations" not in existing:
        op.create_table(
            "item_type_configurations",
            _id(),
            _tenant(),
            _fk("item_type_set_id", "item_type_sets", index=True),
            _fk("item_type_id", "item_types"),
            _fk("workflow_id", "workflows", ondelete=None, index=True),
            _fk("field_set_id", "field_sets", ondelete=None, index=True),
            sa.Column(
                "version", sa.Integer(), nullable=False, server_default="1",
                comment="Optimistic concurrency counter, bumped on every UPDATE.",
            ),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )

    # ── Grants ────────────────────────────────────────────────────────────
    if "grants" not in existing:
        op.create_table(
            "grants",
            _id(),
            _tenant(),
            _fk("role_id", "roles", nullable=True, ondelete="SET NULL"),
            _created(),
        )
    for name, target, column in (
        ("grant_users", "users", "user_id"),
        ("grant_groups", "groups", "group_id"),
        ("grant_negated_users", "users", "user_id"),
        ("grant_negated_groups", "groups", "group_id"),
    ):
        if name not in existing:
            _link_table(name, "grant_id", "grants", column, target)

    # ── Permission rows ───────────────────────────────────────────────────
    if "field_owner_permissions" not in existing:
        _permission_table(
            "field_owner_permissions",
            _fk("field_id", "fields", index=True),
            unique=("field_id",),
        )
    if "status_owner_permissions" not in existing:
        _permission_table(
            "status_owner_permissions",
            _fk("workflow_status_id", "workflow_statuses", index=True),
            unique=("workflow_status_id",),
        )
    if "field_status_permissions" not in existing:
        _permission_table(
            "field_status_permissions",
            _fk("field_id", "fields", index=True),
            _fk("workflow_status_id", "workflow_statuses", index=True),
            sa.Column("access_type", sa.String(length=10), nullable=False, comment="EDITOR | VIEWER"),
            unique=("field_id", "workflow_status_id", "access_type"),
        )
    if "executor_permissions" not in existing:
        _permission_table(
            "executor_permissions",
            _fk("transition_id", "transitions", index=True),
            unique=("transition_id",),
        )
    if "worker_permissions" not in existing:
        _permission_table("worker_permissions")
    if "creator_permissions" not in existing:
        _permission_table("creator_permissions")

    # ── Assignments ───────────────────────────────────────────────────────
    if "permission_assignments" not in existing:
        op.create_table(
            "permission_assignments",
            _id(),
            _tenant(),
            sa.Column("permission_type", sa.String(length=100), nullable=False),
            sa.Column("permission_id", sa.Integer(), nullable=False),
            _fk("project_id", "projects", nullable=True),
            _fk("item_type_set_id", "item_type_sets", nullable=True, ondelete="SET NULL"),
            _fk("grant_id", "grants", nullable=True, ondelete="SET NULL"),
            _created(),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint(
                "permission_type", "permission_id", "tenant_id", "project_id",
                name="uq_permission_assignment_key",
            ),
        )
        op.create_index(
            "ix_permission_assignments_lookup",
            "permission_assignments",
            ["tenant_id", "permission_type", "permission_id"],
        )
    if "permission_assignment_roles" not in existing:
        _link_table(
            "permission_assignment_roles",
            "permission_assignment_id", "permission_assignments",
            "role_id", "roles",
        )
    if "project_permission_assignments" not in existing:
        op.create_table(
            "project_permission_assignments",
            _id(),
            _tenant(),
            sa.Column("permission_type", sa.String(length=100), nullable=False),
            sa.Column("permission_id", sa.Integer(), nullable=False),
            _fk("project_id", "projects"),
            _fk("item_type_set_id", "item_type_sets"),
            _fk("assignment_id", "permission_assignments"),
            sa.UniqueConstraint(
                "permission_type", "permission_id", "project_id", "tenant_id",
                name="uq_project_permission_assignment_key",
            ),
        )
        op.create_index(
            "ix_project_permission_assignments_lookup",
            "project_permission_assignments",
            ["tenant_id", "permission_type", "permission_id"],
        )


def downgrade():
    for name in (
        "project_permission_assignments",
        "permission_assignment_roles",
        "permission_assignments",
        "creator_permissions",
        "worker_permissions",
        "executor_permissions",
        "field_status_permissions",
        "status_owner_permissions",
        "field_owner_permissions",
        "grant_negated_groups",
        "grant_negated_users",
        "grant_groups",
        "grant_users",
        "grants",
        "item_type_configurations",
        "item_type_set_projects",
        "item_type_sets",
        "item_types",
        "transitions",
        "workflow_statuses",
        "workflows",
        "statuses",
        "field_set_entries",
        "field_sets",
        "field_configurations",
        "fields",
        "projects",
        "roles",
        "group_members",
        "groups",
        "users",
        "tenants",
    ):
        op.drop_table(name)
