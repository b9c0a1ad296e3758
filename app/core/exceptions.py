"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere:

    NotFoundError         404  missing or cross-tenant lookup
    TenantIsolationError  404  a traversed row belongs to another tenant (fatal)
    ValidationError       422  well-formed input that violates a business rule
    ConflictError         409  duplicate key, or state changed since a preview

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Workflow", resource_id=42)
    raise ValidationError("removeAll and preserveAllPreservable are exclusive",
                          details={"remove_all": "conflicts with preserve_all_preservable"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "FieldSet", "Workflow").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional: the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class TenantIsolationError(NotFoundError):
    """Raised when a row reached through a relationship belongs to another tenant.

    Unlike a plain lookup miss this signals corrupted or foreign data inside
    the caller's graph. The running operation must abort and roll back.
    Surfaces as 404 through the NotFoundError handlers.

    Args:
        resource: Model name of the offending row.
        resource_id: Its PK.
        tenant_id: The caller's tenant.
        owner_tenant_id: The tenant the row actually belongs to (logs only).
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
        owner_tenant_id: int | None = None,
    ) -> None:
        self.owner_tenant_id = owner_tenant_id
        super().__init__(resource, resource_id=resource_id, tenant_id=tenant_id)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed JSON, caught in blueprint): this
    exception signals that the data was well-formed but violated a rule
    (conflicting flags, unknown ids in a diff, a migration with no change).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with the current stored state.

    Two uses: a duplicate unique key, or a stale version (the row changed
    between the impact preview and the apply call). Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field in conflict (unique key or ``version``).
        value: The conflicting value (truncated in HTTP response; full in logs).
        message: Optional explicit message; defaults to the duplicate-key wording.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | int | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)
