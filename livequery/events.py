import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from livequery.exceptions import EventParseError

Row = Dict[str, Any]


class ChangeKind(Enum):
    """Kinds of change delivered by a change feed."""
    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"


_POSTGRES_KINDS = {
    "INSERT": ChangeKind.INSERTED,
    "UPDATE": ChangeKind.UPDATED,
    "DELETE": ChangeKind.DELETED,
}

_SHAPE_KINDS = {
    "insert": ChangeKind.INSERTED,
    "update": ChangeKind.UPDATED,
    "delete": ChangeKind.DELETED,
}


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    row: Row
    previous_row: Optional[Row] = None
    resource: Optional[str] = None
    received_at: float = field(default_factory=time.monotonic, compare=False)

    @classmethod
    def inserted(cls, row: Row, resource: str = None) -> "ChangeEvent":
        return cls(ChangeKind.INSERTED, dict(row), resource=resource)

    @classmethod
    def updated(cls, row: Row, previous: Row = None, resource: str = None) -> "ChangeEvent":
        return cls(ChangeKind.UPDATED, dict(row), dict(previous) if previous else None, resource=resource)

    @classmethod
    def deleted(cls, row: Row, resource: str = None) -> "ChangeEvent":
        return cls(ChangeKind.DELETED, dict(row), dict(row), resource=resource)

    def key(self, key_field: str) -> Any:
        """Reads ``key_field`` from the row, falling back to the previous row."""
        if self.row and key_field in self.row:
            return self.row[key_field]
        if self.previous_row and key_field in self.previous_row:
            return self.previous_row[key_field]
        return None

    def with_row(self, row: Row) -> "ChangeEvent":
        return ChangeEvent(self.kind, row, self.previous_row, self.resource, self.received_at)


def from_postgres_changes(payload: Dict[str, Any]) -> ChangeEvent:
    """
    Parses a realtime ``postgres_changes`` payload:
    ``{"eventType": "UPDATE", "table": "settings", "new": {...}, "old": {...}}``
    """
    if not isinstance(payload, dict):
        raise EventParseError(f"Expected an object payload, got {type(payload).__name__}")
    event_type = str(payload.get("eventType") or payload.get("type") or "").upper()
    kind = _POSTGRES_KINDS.get(event_type)
    if kind is None:
        raise EventParseError(f"Unknown event type '{event_type}'")

    new = payload.get("new") or payload.get("record") or {}
    old = payload.get("old") or payload.get("old_record") or None
    table = payload.get("table")

    if kind is ChangeKind.DELETED:
        # Deletes only carry the old row (often just the primary key)
        row = dict(old or new)
        return ChangeEvent(kind, row, dict(old) if old else row, resource=table)
    return ChangeEvent(kind, dict(new), dict(old) if old else None, resource=table)


def clean_shape_key(key: Any) -> Any:
    """Reduces a composite shape key ``"public"."users"/"uuid"`` to its last segment."""
    if isinstance(key, str) and "/" in key:
        return key.split("/")[-1].strip('"')
    return key


def from_shape_message(message: Dict[str, Any], primary_key: str = "id", resource: str = None) -> Optional[ChangeEvent]:
    """
    Parses one shape-log message ``{"key": ..., "value": {...}, "headers": {"operation": "insert"}}``.
    Control messages (``up-to-date``, ``must-refetch``) return None.
    """
    if not isinstance(message, dict):
        raise EventParseError(f"Expected an object message, got {type(message).__name__}")
    headers = message.get("headers") or {}
    if headers.get("control"):
        return None

    operation = str(headers.get("operation") or "").lower()
    if message.get("deleted"):
        operation = "delete"
    kind = _SHAPE_KINDS.get(operation)
    if kind is None:
        raise EventParseError(f"Unknown shape operation '{operation}'")

    row = dict(message.get("value") or {})
    key = clean_shape_key(message.get("key"))
    if primary_key not in row and key is not None:
        row[primary_key] = key
    if kind is ChangeKind.DELETED:
        return ChangeEvent(kind, row, row, resource=resource)
    return ChangeEvent(kind, row, resource=resource)
