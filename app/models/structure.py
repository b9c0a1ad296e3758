"""
Structural building blocks: the anchors permission rows are keyed against.

    Field ─< FieldConfiguration ─< FieldSetEntry >─ FieldSet
    Status ─< WorkflowStatus >─ Workflow ─< Transition (from/to WorkflowStatus)
    ItemTypeSet ─< ItemTypeConfiguration >─ ItemType, Workflow, FieldSet

A Field can be wrapped by several FieldConfigurations, so field-set membership
is tracked at configuration granularity while permissions are anchored on the
logical field id. A WorkflowStatus is a Status bound to one workflow; two
workflows sharing a Status have distinct WorkflowStatus rows with the same
``status_id``.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


# ═════════════════════════════════════════════════════════════════════════════
# Fields
# ═════════════════════════════════════════════════════════════════════════════


class Field(TenantModel):
    __tablename__ = "fields"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_field_tenant_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    field_type = db.Column(db.String(30), nullable=False, default="text")
    is_system = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "field_type": self.field_type,
            "is_system": self.is_system,
        }


class FieldConfiguration(TenantModel):
    """A field bound to presentation options; what a field set actually lists."""

    __tablename__ = "field_configurations"

    id = db.Column(db.Integer, primary_key=True)
    field_id = db.Column(
        db.Integer,
        db.ForeignKey("fields.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_required = db.Column(db.Boolean, nullable=False, default=False)

    field = db.relationship("Field", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "field_id": self.field_id,
            "field_name": self.field.name if self.field else None,
            "name": self.name,
            "is_required": self.is_required,
        }


class FieldSet(TenantModel):
    __tablename__ = "field_sets"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)

    entries = db.relationship(
        "FieldSetEntry",
        back_populates="field_set",
        order_by="FieldSetEntry.order_index",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def configuration_field_map(self) -> dict[int, int]:
        """Return {field_configuration_id: field_id} for the current entries."""
        return {
            e.field_configuration_id: e.field_configuration.field_id
            for e in self.entries
        }

    def field_ids(self) -> set[int]:
        return set(self.configuration_field_map().values())

    def fields_by_id(self) -> dict[int, "Field"]:
        return {e.field_configuration.field_id: e.field_configuration.field for e in self.entries}

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "entries": [e.to_dict() for e in self.entries],
        }


class FieldSetEntry(TenantModel):
    __tablename__ = "field_set_entries"
    __table_args__ = (
        db.UniqueConstraint(
            "field_set_id", "field_configuration_id", name="uq_field_set_entry_config",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    field_set_id = db.Column(
        db.Integer,
        db.ForeignKey("field_sets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    field_configuration_id = db.Column(
        db.Integer,
        db.ForeignKey("field_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_index = db.Column(db.Integer, nullable=False, default=0)

    field_set = db.relationship("FieldSet", back_populates="entries")
    field_configuration = db.relationship("FieldConfiguration", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "field_configuration_id": self.field_configuration_id,
            "field_id": self.field_configuration.field_id if self.field_configuration else None,
            "order_index": self.order_index,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════════


class Status(TenantModel):
    __tablename__ = "statuses"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_status_tenant_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    category = db.Column(
        db.String(20), nullable=False, default="TODO",
        comment="TODO | PROGRESS | COMPLETED",
    )

    def to_dict(self):
        return {"id": self.id, "name": self.name, "category": self.category}


class Workflow(TenantModel):
    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)

    statuses = db.relationship(
        "WorkflowStatus",
        back_populates="workflow",
        order_by="WorkflowStatus.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    transitions = db.relationship(
        "Transition",
        back_populates="workflow",
        order_by="Transition.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def status_ids(self) -> set[int]:
        """Logical status ids (not workflow-status ids) present in this workflow."""
        return {ws.status_id for ws in self.statuses}

    def transition_keys(self) -> set[tuple[int, int]]:
        """(from status id, to status id) pairs of every transition."""
        return {t.status_pair for t in self.transitions}

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "statuses": [ws.to_dict() for ws in self.statuses],
            "transitions": [t.to_dict() for t in self.transitions],
        }


class WorkflowStatus(TenantModel):
    """A Status instance bound to one workflow."""

    __tablename__ = "workflow_statuses"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "status_id", name="uq_workflow_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status_id = db.Column(
        db.Integer,
        db.ForeignKey("statuses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_initial = db.Column(db.Boolean, nullable=False, default=False)

    workflow = db.relationship("Workflow", back_populates="statuses")
    status = db.relationship("Status", lazy="joined")

    @property
    def name(self):
        return self.status.name if self.status else None

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status_id": self.status_id,
            "status_name": self.name,
            "status_category": self.status.category if self.status else None,
            "is_initial": self.is_initial,
        }


class Transition(TenantModel):
    """Directed edge between two workflow statuses of the same workflow."""

    __tablename__ = "transitions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(150), nullable=True)
    from_status_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_statuses.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_status_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_statuses.id", ondelete="CASCADE"),
        nullable=False,
    )

    workflow = db.relationship("Workflow", back_populates="transitions")
    from_status = db.relationship("WorkflowStatus", foreign_keys=[from_status_id], lazy="joined")
    to_status = db.relationship("WorkflowStatus", foreign_keys=[to_status_id], lazy="joined")

    @property
    def status_pair(self) -> tuple[int, int]:
        return (self.from_status.status_id, self.to_status.status_id)

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return f"{self.from_status.name} -> {self.to_status.name}"

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "from_workflow_status_id": self.from_status_id,
            "to_workflow_status_id": self.to_status_id,
            "from_status_id": self.from_status.status_id if self.from_status else None,
            "to_status_id": self.to_status.status_id if self.to_status else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Item types
# ═════════════════════════════════════════════════════════════════════════════


class ItemType(TenantModel):
    __tablename__ = "item_types"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "description": self.description}


item_type_set_projects = db.Table(
    "item_type_set_projects",
    db.Column(
        "item_type_set_id", db.Integer,
        db.ForeignKey("item_type_sets.id", ondelete="CASCADE"), primary_key=True,
    ),
    db.Column(
        "project_id", db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True,
    ),
)


class ItemTypeSet(TenantModel):
    """Named bundle of item type configurations.

    Either bound to a single project (``project_id``) or tenant-wide and
    shared with the projects listed in ``projects``.
    """

    __tablename__ = "item_type_sets"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project", foreign_keys=[project_id])
    projects = db.relationship(
        "Project",
        secondary=item_type_set_projects,
        order_by="Project.id",
        lazy="selectin",
    )
    configurations = db.relationship(
        "ItemTypeConfiguration",
        back_populates="item_type_set",
        order_by="ItemTypeConfiguration.id",
        cascade="all, delete-orphan",
    )

    def scoped_projects(self):
        """Projects whose overrides belong to this set: the bound one, else all associated."""
        if self.project is not None:
            return [self.project]
        return list(self.projects)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "project_id": self.project_id,
            "project_ids": [p.id for p in self.projects],
        }


class ItemTypeConfiguration(TenantModel):
    """Binds one item type to one workflow and one field set inside an item-type-set.

    ``version`` is bumped on every UPDATE of the row (optimistic concurrency);
    migration previews hand it out and apply requests may echo it back.
    """

    __tablename__ = "item_type_configurations"

    id = db.Column(db.Integer, primary_key=True)
    item_type_set_id = db.Column(
        db.Integer,
        db.ForeignKey("item_type_sets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_type_id = db.Column(
        db.Integer,
        db.ForeignKey("item_types.id", ondelete="CASCADE"),
        nullable=False,
    )
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("workflows.id"),
        nullable=False,
        index=True,
    )
    field_set_id = db.Column(
        db.Integer,
        db.ForeignKey("field_sets.id"),
        nullable=False,
        index=True,
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    item_type_set = db.relationship("ItemTypeSet", back_populates="configurations")
    item_type = db.relationship("ItemType", lazy="joined")
    workflow = db.relationship("Workflow")
    field_set = db.relationship("FieldSet")

    __mapper_args__ = {"version_id_col": version}

    @property
    def display_name(self) -> str:
        return f"{self.item_type.name} Configuration" if self.item_type else f"Configuration {self.id}"

    def to_dict(self):
        return {
            "id": self.id,
            "item_type_set_id": self.item_type_set_id,
            "item_type_id": self.item_type_id,
            "item_type_name": self.item_type.name if self.item_type else None,
            "workflow_id": self.workflow_id,
            "field_set_id": self.field_set_id,
            "version": self.version,
        }
