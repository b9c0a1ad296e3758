"""
TenantModel: Abstract base class for tenant-scoped models.

Every table of the permission graph (structure, permission rows and
assignments) inherits from TenantModel instead of db.Model directly. This adds
a tenant_id FK column with index; lookups go through
app.services.helpers.scoped_queries.
"""

from app.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
