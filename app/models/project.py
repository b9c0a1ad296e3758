"""Project domain model: the unit a project-scope permission override targets."""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


class Project(TenantModel):
    """Tenant project; item-type-sets are bound to one or shared across many."""

    __tablename__ = "projects"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "project_key", name="uq_project_tenant_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_key = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_key": self.project_key,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
