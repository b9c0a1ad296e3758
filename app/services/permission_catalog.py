"""
Permission Catalog: static knowledge of the six permission kinds.

Replaces string-tag polymorphism with a closed enum. Every kind knows its row
model, the ``permission_type`` value used in the assignment tables, which
anchor attributes key it, and where it sorts in reports.

Usage:
    from app.services.permission_catalog import PermissionKind, PermissionRef

    kind = PermissionKind.STATUS_OWNERS
    kind.model                       # -> StatusOwnerPermission
    kind.type_name                   # -> "StatusOwnerPermission"
    PermissionKind.from_label("FIELD_EDITORS")  # -> PermissionKind.FIELD_STATUS
    ref = PermissionRef(kind, 42)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.models.permissions import (
    CreatorPermission,
    ExecutorPermission,
    FieldOwnerPermission,
    FieldStatusPermission,
    StatusOwnerPermission,
    WorkerPermission,
)


class FieldStatusType(str, Enum):
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class PermissionKind(str, Enum):
    """The six permission row kinds, in report order."""

    FIELD_OWNERS = "FIELD_OWNERS"
    STATUS_OWNERS = "STATUS_OWNERS"
    FIELD_STATUS = "FIELD_STATUS"
    EXECUTORS = "EXECUTORS"
    WORKERS = "WORKERS"
    CREATORS = "CREATORS"

    @property
    def meta(self) -> "KindMeta":
        return _META[self]

    @property
    def model(self):
        return _META[self].model

    @property
    def type_name(self) -> str:
        return _META[self].model.TYPE_NAME

    @property
    def anchors(self) -> tuple[str, ...]:
        return _META[self].anchors

    @property
    def order(self) -> int:
        return _META[self].order

    @classmethod
    def from_type_name(cls, type_name: str) -> "PermissionKind":
        for kind, meta in _META.items():
            if meta.model.TYPE_NAME == type_name:
                return kind
        raise ValueError(f"Unknown permission type: {type_name!r}")

    @classmethod
    def from_label(cls, label: str) -> "PermissionKind":
        """Parse a report label; FIELD_EDITORS and FIELD_VIEWERS map to FIELD_STATUS."""
        normalized = (label or "").strip().upper()
        if normalized in ("FIELD_EDITORS", "FIELD_VIEWERS"):
            return cls.FIELD_STATUS
        try:
            return cls(normalized)
        except ValueError:
            return cls.from_type_name(label)


@dataclass(frozen=True)
class KindMeta:
    model: type
    anchors: tuple[str, ...]
    order: int


_META: dict[PermissionKind, KindMeta] = {
    PermissionKind.FIELD_OWNERS: KindMeta(FieldOwnerPermission, ("field",), 0),
    PermissionKind.STATUS_OWNERS: KindMeta(StatusOwnerPermission, ("workflow_status",), 1),
    PermissionKind.FIELD_STATUS: KindMeta(FieldStatusPermission, ("field", "workflow_status"), 2),
    PermissionKind.EXECUTORS: KindMeta(ExecutorPermission, ("transition",), 3),
    PermissionKind.WORKERS: KindMeta(WorkerPermission, (), 4),
    PermissionKind.CREATORS: KindMeta(CreatorPermission, (), 5),
}


@dataclass(frozen=True, order=True)
class PermissionRef:
    """Identifies one permission row across all six tables."""

    kind: PermissionKind
    permission_id: int

    @classmethod
    def of(cls, row) -> "PermissionRef":
        return cls(kind_of(row), row.id)

    def to_dict(self) -> dict:
        return {"permission_type": self.kind.value, "permission_id": self.permission_id}


def kind_of(row) -> PermissionKind:
    """Return the kind of a permission row instance."""
    return PermissionKind.from_type_name(type(row).TYPE_NAME)


def report_label(kind: PermissionKind, row=None, access_type: str | None = None) -> str:
    """Label used in reports: FIELD_STATUS splits into FIELD_EDITORS / FIELD_VIEWERS."""
    if kind is not PermissionKind.FIELD_STATUS:
        return kind.value
    access = access_type or (row.access_type if row is not None else None)
    return "FIELD_EDITORS" if access == FieldStatusType.EDITOR.value else "FIELD_VIEWERS"


def describe_anchor(kind: PermissionKind, row) -> dict:
    """Anchor ids and names of a row, flattened for report output."""
    info: dict = {}
    if "field" in kind.anchors:
        info["field_id"] = row.field_id
        info["field_name"] = row.field.name if row.field else None
    if "workflow_status" in kind.anchors:
        ws = row.workflow_status
        info["workflow_status_id"] = row.workflow_status_id
        info["status_id"] = ws.status_id if ws else None
        info["status_name"] = ws.name if ws else None
        info["status_category"] = ws.status.category if ws and ws.status else None
    if "transition" in kind.anchors:
        t = row.transition
        info["transition_id"] = row.transition_id
        info["transition_name"] = t.label if t else None
        info["from_status_id"] = t.from_status.status_id if t else None
        info["to_status_id"] = t.to_status.status_id if t else None
    if kind is PermissionKind.FIELD_STATUS:
        info["access_type"] = row.access_type
    return info


def sort_key(kind: PermissionKind, permission_id: int | None, label: str = "") -> tuple:
    """Stable report ordering: kind order, then permission id (new rows last), then label."""
    return (kind.order, permission_id is None, permission_id or 0, label)
