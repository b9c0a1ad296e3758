"""
Tenant-scoped query helpers.

Every get-by-id in the engine MUST use these helpers instead of
Model.query.get(pk) or db.session.get(Model, pk). Direct .get() calls
bypass tenant isolation.

Usage:
    # Scope by tenant_id (most common: TenantModel subclasses)
    field_set = get_scoped(FieldSet, field_set_id, tenant_id=tenant_id)

    # Scope by a parent column in addition to the tenant
    ws = get_scoped(WorkflowStatus, ws_id, tenant_id=tenant_id, workflow_id=wf_id)

    # Several ids at once; any miss raises NotFoundError
    configs = get_scoped_many(FieldConfiguration, ids, tenant_id=tenant_id)

    # Rows reached through relationships, not through a filtered query
    ensure_same_tenant(project, tenant_id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    If the model does not have that column, a ValueError is raised at
    call time so the bug surfaces immediately during development/testing.
"""

import logging
from collections.abc import Iterable

from sqlalchemy import select

from app.core.exceptions import NotFoundError, TenantIsolationError
from app.models import db

logger = logging.getLogger(__name__)

# Supported scope keyword → expected model column name mapping.
_SCOPE_KWARGS = ("tenant_id", "project_id", "workflow_id", "field_set_id", "item_type_set_id")


def _applicable_scopes(model, pk, scopes: dict) -> dict:
    provided_scopes = {k: v for k, v in scopes.items() if v is not None}

    if not provided_scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            f"({', '.join(_SCOPE_KWARGS)}). "
            "Unscoped lookups are forbidden: they bypass tenant isolation."
        )

    applicable_scopes = {
        field: value
        for field, value in provided_scopes.items()
        if hasattr(model, field)
    }

    missing_fields = set(provided_scopes) - set(applicable_scopes)
    if missing_fields:
        logger.warning(
            "get_scoped(%s, %s): scope field(s) %s not found on model: "
            "those filters were NOT applied.",
            model.__name__,
            pk,
            sorted(missing_fields),
        )

    if not applicable_scopes:
        raise ValueError(
            f"{model.__name__} id={pk}: no applicable scope: "
            f"none of the provided scope fields {sorted(provided_scopes)} "
            f"exist as columns on {model.__name__}. "
            "Refusing to perform an unscoped lookup."
        )
    return applicable_scopes


def get_scoped(
    model,
    pk: int,
    *,
    tenant_id: int | None = None,
    project_id: int | None = None,
    workflow_id: int | None = None,
    field_set_id: int | None = None,
    item_type_set_id: int | None = None,
):
    """Fetch a single entity by PK with mandatory scope filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Args:
        model: SQLAlchemy model class with an ``id`` PK and the scope columns.
        pk: Primary key value to look up.
        tenant_id: Scope by tenant_id column.
        project_id: Scope by project_id column.
        workflow_id: Scope by workflow_id column.
        field_set_id: Scope by field_set_id column.
        item_type_set_id: Scope by item_type_set_id column.

    Returns:
        The model instance if found within the given scope.

    Raises:
        ValueError: If no scope parameter is provided, or none of them is a
                    column of the model.
        NotFoundError: If the entity does not exist OR belongs to a different
                       scope. The two cases are intentionally indistinguishable.
    """
    applicable_scopes = _applicable_scopes(
        model,
        pk,
        {
            "tenant_id": tenant_id,
            "project_id": project_id,
            "workflow_id": workflow_id,
            "field_set_id": field_set_id,
            "item_type_set_id": item_type_set_id,
        },
    )

    stmt = select(model).where(model.id == pk)
    for field, value in applicable_scopes.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug(
            "get_scoped: %s id=%s not found in scope %s",
            model.__name__,
            pk,
            applicable_scopes,
        )
        raise NotFoundError(resource=model.__name__, resource_id=pk)

    return result


def get_scoped_many(model, pks: Iterable[int], *, tenant_id: int) -> list:
    """Fetch several rows of one model in a single IN query, ordered by id.

    Raises:
        NotFoundError: naming the first id (ascending) that is missing or
                       belongs to another tenant.
    """
    wanted = sorted(set(pks))
    if not wanted:
        return []
    rows = db.session.execute(
        select(model)
        .where(model.id.in_(wanted), model.tenant_id == tenant_id)
        .order_by(model.id)
    ).scalars().all()
    found = {r.id for r in rows}
    for pk in wanted:
        if pk not in found:
            raise NotFoundError(resource=model.__name__, resource_id=pk)
    return list(rows)


def ensure_same_tenant(entity, tenant_id: int):
    """Verify a row reached through a relationship belongs to the caller's tenant.

    Returns the entity unchanged so it can be used inline.

    Raises:
        TenantIsolationError: the row is owned by another tenant. Callers
                              must let it propagate so the transaction aborts.
    """
    owner = getattr(entity, "tenant_id", None)
    if owner != tenant_id:
        logger.error(
            "Tenant isolation violation: %s id=%s owned by tenant %s, caller tenant %s",
            type(entity).__name__,
            getattr(entity, "id", None),
            owner,
            tenant_id,
            extra={"tenant_id": tenant_id, "event_type": "tenant_isolation_violation"},
        )
        raise TenantIsolationError(
            resource=type(entity).__name__,
            resource_id=getattr(entity, "id", None),
            tenant_id=tenant_id,
            owner_tenant_id=owner,
        )
    return entity
