"""
Permission graph models.

Six permission row tables, all owned by an ItemTypeConfiguration and keyed by
an anchor (field, workflow status, transition, or nothing):

    field_owner_permissions    configuration + field
    status_owner_permissions   configuration + workflow status
    field_status_permissions   configuration + field + workflow status + EDITOR|VIEWER
    executor_permissions       configuration + transition
    worker_permissions         configuration
    creator_permissions        configuration

Assignments are stored polymorphically by ``(permission_type, permission_id)``
so a single assignment table serves all six row tables:

    permission_assignments          tenant scope when project_id IS NULL
    project_permission_assignments  per-project override -> own payload row

Assignment rows are created lazily; absence means "nothing assigned".
"""

from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from app.models import db
from app.models.base import TenantModel


# ═════════════════════════════════════════════════════════════════════════════
# Grants
# ═════════════════════════════════════════════════════════════════════════════


def _grant_member_table(name, target_table, target_column):
    return db.Table(
        name,
        db.Column("grant_id", db.Integer, db.ForeignKey("grants.id", ondelete="CASCADE"), primary_key=True),
        db.Column(
            target_column, db.Integer,
            db.ForeignKey(f"{target_table}.id", ondelete="CASCADE"), primary_key=True,
        ),
    )


grant_users = _grant_member_table("grant_users", "users", "user_id")
grant_groups = _grant_member_table("grant_groups", "groups", "group_id")
grant_negated_users = _grant_member_table("grant_negated_users", "users", "user_id")
grant_negated_groups = _grant_member_table("grant_negated_groups", "groups", "group_id")


class Grant(TenantModel):
    """Allow-list of users and groups minus a negation list, optionally backed by a role."""

    __tablename__ = "grants"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer,
        db.ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    role = db.relationship("Role", lazy="joined")
    users = db.relationship("User", secondary=grant_users, lazy="selectin")
    groups = db.relationship("Group", secondary=grant_groups, lazy="selectin")
    negated_users = db.relationship("User", secondary=grant_negated_users, lazy="selectin")
    negated_groups = db.relationship("Group", secondary=grant_negated_groups, lazy="selectin")

    def display_name(self, fallback="Global grant"):
        return self.role.name if self.role is not None else fallback

    def to_dict(self):
        return {
            "id": self.id,
            "role_id": self.role_id,
            "role_name": self.role.name if self.role else None,
            "user_ids": sorted(u.id for u in self.users),
            "group_ids": sorted(g.id for g in self.groups),
            "negated_user_ids": sorted(u.id for u in self.negated_users),
            "negated_group_ids": sorted(g.id for g in self.negated_groups),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Permission rows
# ═════════════════════════════════════════════════════════════════════════════


class PermissionModel(TenantModel):
    """Abstract base for the six permission row tables."""

    __abstract__ = True

    # Value stored in the assignment tables' permission_type column.
    TYPE_NAME = None

    id = db.Column(db.Integer, primary_key=True)
    item_type_configuration_id = db.Column(
        db.Integer,
        db.ForeignKey("item_type_configurations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    @declared_attr
    def item_type_configuration(cls):
        return db.relationship("ItemTypeConfiguration")


class FieldOwnerPermission(PermissionModel):
    __tablename__ = "field_owner_permissions"
    __table_args__ = (
        db.UniqueConstraint("item_type_configuration_id", "field_id", name="uq_field_owner_perm"),
    )
    TYPE_NAME = "FieldOwnerPermission"

    field_id = db.Column(
        db.Integer,
        db.ForeignKey("fields.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    field = db.relationship("Field", lazy="joined")


class StatusOwnerPermission(PermissionModel):
    __tablename__ = "status_owner_permissions"
    __table_args__ = (
        db.UniqueConstraint(
            "item_type_configuration_id", "workflow_status_id", name="uq_status_owner_perm",
        ),
    )
    TYPE_NAME = "StatusOwnerPermission"

    workflow_status_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_statuses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_status = db.relationship("WorkflowStatus", lazy="joined")


class FieldStatusPermission(PermissionModel):
    """EDITOR/VIEWER permission for one field at one workflow status.

    Rows are always created in EDITOR+VIEWER pairs.
    """

    __tablename__ = "field_status_permissions"
    __table_args__ = (
        db.UniqueConstraint(
            "item_type_configuration_id", "field_id", "workflow_status_id", "access_type",
            name="uq_field_status_perm",
        ),
    )
    TYPE_NAME = "FieldStatusPermission"

    field_id = db.Column(
        db.Integer,
        db.ForeignKey("fields.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_status_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_statuses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    access_type = db.Column(db.String(10), nullable=False, comment="EDITOR | VIEWER")

    field = db.relationship("Field", lazy="joined")
    workflow_status = db.relationship("WorkflowStatus", lazy="joined")


class ExecutorPermission(PermissionModel):
    __tablename__ = "executor_permissions"
    __table_args__ = (
        db.UniqueConstraint("item_type_configuration_id", "transition_id", name="uq_executor_perm"),
    )
    TYPE_NAME = "ExecutorPermission"

    transition_id = db.Column(
        db.Integer,
        db.ForeignKey("transitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transition = db.relationship("Transition", lazy="joined")


class WorkerPermission(PermissionModel):
    __tablename__ = "worker_permissions"
    __table_args__ = (
        db.UniqueConstraint("item_type_configuration_id", name="uq_worker_perm"),
    )
    TYPE_NAME = "WorkerPermission"


class CreatorPermission(PermissionModel):
    __tablename__ = "creator_permissions"
    __table_args__ = (
        db.UniqueConstraint("item_type_configuration_id", name="uq_creator_perm"),
    )
    TYPE_NAME = "CreatorPermission"


# ═════════════════════════════════════════════════════════════════════════════
# Assignments
# ═════════════════════════════════════════════════════════════════════════════


permission_assignment_roles = db.Table(
    "permission_assignment_roles",
    db.Column(
        "permission_assignment_id", db.Integer,
        db.ForeignKey("permission_assignments.id", ondelete="CASCADE"), primary_key=True,
    ),
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


class PermissionAssignment(TenantModel):
    """Role set plus at most one direct grant for a permission row.

    ``project_id IS NULL`` is the tenant-wide assignment. Rows with a
    project_id are payloads owned by a ProjectPermissionAssignment.
    """

    __tablename__ = "permission_assignments"
    __table_args__ = (
        db.UniqueConstraint(
            "permission_type", "permission_id", "tenant_id", "project_id",
            name="uq_permission_assignment_key",
        ),
        db.Index("ix_permission_assignments_lookup", "tenant_id", "permission_type", "permission_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    permission_type = db.Column(db.String(100), nullable=False)
    permission_id = db.Column(db.Integer, nullable=False)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
    )
    item_type_set_id = db.Column(
        db.Integer,
        db.ForeignKey("item_type_sets.id", ondelete="SET NULL"),
        nullable=True,
    )
    grant_id = db.Column(
        db.Integer,
        db.ForeignKey("grants.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    roles = db.relationship(
        "Role", secondary=permission_assignment_roles, order_by="Role.name", lazy="selectin",
    )
    grant = db.relationship("Grant", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "permission_type": self.permission_type,
            "permission_id": self.permission_id,
            "project_id": self.project_id,
            "role_ids": [r.id for r in self.roles],
            "role_names": [r.name for r in self.roles],
            "grant_id": self.grant_id,
        }


class ProjectPermissionAssignment(TenantModel):
    """Per-project override of a permission row, wrapping its own assignment payload."""

    __tablename__ = "project_permission_assignments"
    __table_args__ = (
        db.UniqueConstraint(
            "permission_type", "permission_id", "project_id", "tenant_id",
            name="uq_project_permission_assignment_key",
        ),
        db.Index(
            "ix_project_permission_assignments_lookup",
            "tenant_id", "permission_type", "permission_id",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    permission_type = db.Column(db.String(100), nullable=False)
    permission_id = db.Column(db.Integer, nullable=False)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_type_set_id = db.Column(
        db.Integer,
        db.ForeignKey("item_type_sets.id", ondelete="CASCADE"),
        nullable=False,
    )
    assignment_id = db.Column(
        db.Integer,
        db.ForeignKey("permission_assignments.id", ondelete="CASCADE"),
        nullable=False,
    )

    project = db.relationship("Project", lazy="joined")
    assignment = db.relationship("PermissionAssignment", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "permission_type": self.permission_type,
            "permission_id": self.permission_id,
            "project_id": self.project_id,
            "item_type_set_id": self.item_type_set_id,
            "assignment": self.assignment.to_dict() if self.assignment else None,
        }
