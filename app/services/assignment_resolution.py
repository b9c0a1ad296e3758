"""
Assignment Resolution Service: tenant and project scope assignments per permission row.

Scopes are never merged here: the tenant payload and each project override are
returned side by side, and reporting surfaces them independently.

Stored shape (see app.models.permissions):
    PermissionAssignment(project_id=None)            tenant scope
    ProjectPermissionAssignment -> PermissionAssignment(project_id=P)

In memory every payload is one of four variants:

    NoAssignment   nothing assigned
    DirectGrant    a grant, no roles
    RoleSet        roles, no grant
    GrantList      roles and a direct grant together

Usage:
    resolved = resolve_assignments(tenant_id, PermissionKind.FIELD_OWNERS, [1, 2], projects)
    resolved[1].has_assignments
    resolved[1].tenant.roles       # tuple[RoleRef, ...]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Union

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.auth import Role
from app.models.permissions import Grant, PermissionAssignment, ProjectPermissionAssignment
from app.models.project import Project
from app.services.helpers.scoped_queries import ensure_same_tenant, get_scoped, get_scoped_many
from app.services.permission_catalog import PermissionKind, PermissionRef

logger = logging.getLogger(__name__)

GLOBAL_GRANT_NAME = "Global grant"
PROJECT_GRANT_NAME = "Project grant"


# ═════════════════════════════════════════════════════════════════════════════
# Payload variants
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RoleRef:
    id: int
    name: str


@dataclass(frozen=True)
class GrantRef:
    id: int
    name: str


@dataclass(frozen=True)
class NoAssignment:
    @property
    def roles(self) -> tuple[RoleRef, ...]:
        return ()

    @property
    def grant(self) -> GrantRef | None:
        return None


@dataclass(frozen=True)
class DirectGrant:
    grant: GrantRef

    @property
    def roles(self) -> tuple[RoleRef, ...]:
        return ()


@dataclass(frozen=True)
class RoleSet:
    roles: tuple[RoleRef, ...]

    @property
    def grant(self) -> GrantRef | None:
        return None


@dataclass(frozen=True)
class GrantList:
    roles: tuple[RoleRef, ...]
    grant: GrantRef


AssignmentPayload = Union[NoAssignment, DirectGrant, RoleSet, GrantList]

NO_ASSIGNMENT = NoAssignment()


def payload_of(assignment: PermissionAssignment | None, grant_fallback: str = GLOBAL_GRANT_NAME) -> AssignmentPayload:
    """Map a stored assignment (or its absence) onto the payload variant."""
    if assignment is None:
        return NO_ASSIGNMENT
    roles = tuple(RoleRef(r.id, r.name) for r in sorted(assignment.roles, key=lambda r: (r.name, r.id)))
    grant = None
    if assignment.grant is not None:
        grant = GrantRef(assignment.grant.id, assignment.grant.display_name(grant_fallback))
    if roles and grant:
        return GrantList(roles=roles, grant=grant)
    if grant:
        return DirectGrant(grant=grant)
    if roles:
        return RoleSet(roles=roles)
    return NO_ASSIGNMENT


def is_empty(payload: AssignmentPayload) -> bool:
    return isinstance(payload, NoAssignment)


@dataclass(frozen=True)
class ProjectOverride:
    project_id: int
    project_name: str
    payload: AssignmentPayload


@dataclass(frozen=True)
class ResolvedAssignment:
    """Tenant payload plus every project override for one permission row."""

    ref: PermissionRef
    tenant: AssignmentPayload = NO_ASSIGNMENT
    projects: tuple[ProjectOverride, ...] = field(default_factory=tuple)

    @property
    def has_assignments(self) -> bool:
        if self.tenant.roles or self.tenant.grant is not None:
            return True
        return any(p.payload.grant is not None or p.payload.roles for p in self.projects)


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════


def get_tenant_assignment(tenant_id: int, kind: PermissionKind, permission_id: int) -> PermissionAssignment | None:
    """Return the tenant-scope assignment of a permission row, or None."""
    return db.session.execute(
        select(PermissionAssignment).where(
            PermissionAssignment.tenant_id == tenant_id,
            PermissionAssignment.permission_type == kind.type_name,
            PermissionAssignment.permission_id == permission_id,
            PermissionAssignment.project_id.is_(None),
        )
    ).scalar_one_or_none()


def get_project_override(
    tenant_id: int, kind: PermissionKind, permission_id: int, project_id: int,
) -> ProjectPermissionAssignment | None:
    return db.session.execute(
        select(ProjectPermissionAssignment).where(
            ProjectPermissionAssignment.tenant_id == tenant_id,
            ProjectPermissionAssignment.permission_type == kind.type_name,
            ProjectPermissionAssignment.permission_id == permission_id,
            ProjectPermissionAssignment.project_id == project_id,
        )
    ).scalar_one_or_none()


def get_project_assignment(
    tenant_id: int, kind: PermissionKind, permission_id: int, project_id: int,
) -> PermissionAssignment | None:
    """Return the payload of a project override, or None."""
    override = get_project_override(tenant_id, kind, permission_id, project_id)
    return override.assignment if override is not None else None


def resolve_assignments(
    tenant_id: int,
    kind: PermissionKind,
    permission_ids: Iterable[int],
    projects: Sequence[Project] = (),
) -> dict[int, ResolvedAssignment]:
    """Batch-resolve tenant payloads and project overrides for many rows of one kind.

    Two IN queries regardless of how many rows are asked for.

    Args:
        tenant_id: Caller's tenant; every query is filtered by it.
        kind: Permission kind shared by all ids.
        permission_ids: Row ids to resolve.
        projects: Projects whose overrides count (the owning item-type-set's
                  scoped projects). Overrides for other projects are ignored.

    Returns:
        {permission_id: ResolvedAssignment}, one entry per requested id.

    Raises:
        TenantIsolationError: a project belongs to another tenant.
    """
    ids = sorted(set(permission_ids))
    if not ids:
        return {}
    for project in projects:
        ensure_same_tenant(project, tenant_id)
    project_names = {p.id: p.name for p in projects}

    tenant_rows = db.session.execute(
        select(PermissionAssignment).where(
            PermissionAssignment.tenant_id == tenant_id,
            PermissionAssignment.permission_type == kind.type_name,
            PermissionAssignment.permission_id.in_(ids),
            PermissionAssignment.project_id.is_(None),
        )
    ).scalars().all()
    tenant_by_id = {a.permission_id: a for a in tenant_rows}

    overrides_by_id: dict[int, list[ProjectOverride]] = {}
    if project_names:
        override_rows = db.session.execute(
            select(ProjectPermissionAssignment)
            .where(
                ProjectPermissionAssignment.tenant_id == tenant_id,
                ProjectPermissionAssignment.permission_type == kind.type_name,
                ProjectPermissionAssignment.permission_id.in_(ids),
                ProjectPermissionAssignment.project_id.in_(sorted(project_names)),
            )
            .order_by(ProjectPermissionAssignment.project_id)
        ).scalars().all()
        for row in override_rows:
            overrides_by_id.setdefault(row.permission_id, []).append(
                ProjectOverride(
                    project_id=row.project_id,
                    project_name=project_names[row.project_id],
                    payload=payload_of(row.assignment, grant_fallback=PROJECT_GRANT_NAME),
                )
            )

    return {
        pid: ResolvedAssignment(
            ref=PermissionRef(kind, pid),
            tenant=payload_of(tenant_by_id.get(pid)),
            projects=tuple(overrides_by_id.get(pid, ())),
        )
        for pid in ids
    }


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════


def assign(
    tenant_id: int,
    ref: PermissionRef,
    *,
    role_ids: Iterable[int] | None = None,
    grant_id: int | None = None,
    project_id: int | None = None,
    item_type_set_id: int | None = None,
) -> PermissionAssignment:
    """Create or update the assignment of a permission row (lazy creation).

    ``role_ids`` replaces the role set when given; ``grant_id`` replaces the
    direct grant when given. With ``project_id`` the project override (and
    its payload row) is created or updated instead of the tenant assignment.

    Raises:
        NotFoundError: the permission row, a role, the grant, or the project
                       does not exist in the tenant.
        ValidationError: a project override is requested without
                         ``item_type_set_id``.
    """
    get_scoped(ref.kind.model, ref.permission_id, tenant_id=tenant_id)
    roles = get_scoped_many(Role, role_ids, tenant_id=tenant_id) if role_ids is not None else None
    grant = get_scoped(Grant, grant_id, tenant_id=tenant_id) if grant_id is not None else None

    if project_id is None:
        assignment = get_tenant_assignment(tenant_id, ref.kind, ref.permission_id)
        if assignment is None:
            assignment = PermissionAssignment(
                tenant_id=tenant_id,
                permission_type=ref.kind.type_name,
                permission_id=ref.permission_id,
            )
            db.session.add(assignment)
    else:
        if item_type_set_id is None:
            raise ValidationError(
                "item_type_set_id is required for project assignments",
                details={"item_type_set_id": "required"},
            )
        get_scoped(Project, project_id, tenant_id=tenant_id)
        override = get_project_override(tenant_id, ref.kind, ref.permission_id, project_id)
        if override is None:
            assignment = PermissionAssignment(
                tenant_id=tenant_id,
                permission_type=ref.kind.type_name,
                permission_id=ref.permission_id,
                project_id=project_id,
                item_type_set_id=item_type_set_id,
            )
            override = ProjectPermissionAssignment(
                tenant_id=tenant_id,
                permission_type=ref.kind.type_name,
                permission_id=ref.permission_id,
                project_id=project_id,
                item_type_set_id=item_type_set_id,
                assignment=assignment,
            )
            db.session.add(override)
        assignment = override.assignment

    if roles is not None:
        assignment.roles = roles
    if grant is not None:
        assignment.grant = grant
    db.session.flush()

    logger.info(
        "Assignment saved %s id=%s project=%s roles=%d grant=%s",
        ref.kind.value,
        ref.permission_id,
        project_id,
        len(assignment.roles),
        assignment.grant_id,
        extra={"tenant_id": tenant_id, "project_id": project_id, "permission_type": ref.kind.value},
    )
    return assignment


def delete_assignments(
    tenant_id: int,
    kind: PermissionKind,
    permission_ids: Iterable[int],
    project_ids: Iterable[int] = (),
) -> dict[str, int]:
    """Delete tenant assignments and project overrides of the given rows.

    Overrides for ``project_ids`` (the owning item-type-set's projects) are
    removed first; any override left on another project is swept afterwards
    so no assignment row can outlive its permission row.

    Returns:
        {"tenant": n, "project": n, "residual_project": n}
    """
    ids = sorted(set(permission_ids))
    counts = {"tenant": 0, "project": 0, "residual_project": 0}
    if not ids:
        return counts
    scoped_projects = set(project_ids)

    overrides = db.session.execute(
        select(ProjectPermissionAssignment).where(
            ProjectPermissionAssignment.tenant_id == tenant_id,
            ProjectPermissionAssignment.permission_type == kind.type_name,
            ProjectPermissionAssignment.permission_id.in_(ids),
        )
    ).scalars().all()
    for override in overrides:
        if override.project_id in scoped_projects:
            counts["project"] += 1
        else:
            counts["residual_project"] += 1
        if override.assignment is not None:
            db.session.delete(override.assignment)
        db.session.delete(override)

    tenant_rows = db.session.execute(
        select(PermissionAssignment).where(
            PermissionAssignment.tenant_id == tenant_id,
            PermissionAssignment.permission_type == kind.type_name,
            PermissionAssignment.permission_id.in_(ids),
        )
    ).scalars().all()
    for assignment in tenant_rows:
        if assignment in db.session.deleted:
            continue
        if assignment.project_id is None:
            counts["tenant"] += 1
        db.session.delete(assignment)
    db.session.flush()

    if counts["residual_project"]:
        logger.warning(
            "Removed %d project overrides outside the owning item-type-set for %s ids=%s",
            counts["residual_project"],
            kind.value,
            ids,
            extra={"tenant_id": tenant_id, "permission_type": kind.value},
        )
    return counts


def clear_tenant_assignment(tenant_id: int, kind: PermissionKind, permission_id: int) -> bool:
    """Drop a stale tenant-scope assignment; returns True when one existed."""
    assignment = get_tenant_assignment(tenant_id, kind, permission_id)
    if assignment is None:
        return False
    db.session.delete(assignment)
    db.session.flush()
    return True
