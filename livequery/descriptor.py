from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from livequery.schema import Schema

FILTER_OPS = ("eq", "neq", "gt", "gte", "lt", "lte", "in")


@dataclass(frozen=True)
class Filter:
    """A single ``column <op> value`` predicate, evaluated locally and sent to the backend."""
    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op '{self.op}', expected one of {FILTER_OPS}")
        if self.op == "in" and isinstance(self.value, list):
            object.__setattr__(self, "value", tuple(self.value))

    def matches(self, row: Dict[str, Any]) -> bool:
        if self.column not in row:
            return False
        actual = row[self.column]
        if self.op == "in":
            return _loose_in(actual, self.value)
        if self.op == "eq":
            return _loose_eq(actual, self.value)
        if self.op == "neq":
            return not _loose_eq(actual, self.value)
        if actual is None:
            return False
        try:
            if self.op == "gt":
                return actual > self.value
            if self.op == "gte":
                return actual >= self.value
            if self.op == "lt":
                return actual < self.value
            return actual <= self.value
        except TypeError:
            return False

    @property
    def signature(self) -> str:
        if self.op == "in":
            value = "(" + ",".join(str(v) for v in self.value) + ")"
        else:
            value = str(self.value)
        return f"{self.column}={self.op}.{value}"

    @classmethod
    def parse(cls, text: str) -> "Filter":
        """Inverse of ``signature``; values come back as strings."""
        column, _, expr = text.partition("=")
        op, _, value = expr.partition(".")
        if not column or not op:
            raise ValueError(f"Malformed filter signature '{text}'")
        if op == "in":
            return cls(column, op, tuple(v for v in value.strip("()").split(",") if v))
        return cls(column, op, value)


def _loose_eq(actual, expected) -> bool:
    # Keys parsed back from a channel key are strings
    if actual == expected:
        return True
    if isinstance(expected, str) or isinstance(actual, str):
        return str(actual) == str(expected)
    return False


def _loose_in(actual, choices) -> bool:
    return any(_loose_eq(actual, choice) for choice in choices)


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    Identifies what a live query watches: one backend table, an optional filter and a projection.
    Immutable; use ``where``/``with_options`` to derive variants.
    """
    resource: str
    filters: Tuple[Filter, ...] = ()
    columns: Tuple[str, ...] = ("*",)
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None
    single: bool = False
    primary_key: str = "id"
    schema: Optional[Schema] = field(default=None, compare=False, hash=False, repr=False)

    def __post_init__(self):
        if not self.resource or "|" in self.resource:
            raise ValueError(f"Invalid resource name '{self.resource}'")
        object.__setattr__(self, "filters", tuple(sorted(self.filters, key=lambda f: (f.column, f.op, str(f.value)))))
        object.__setattr__(self, "columns", tuple(self.columns) or ("*",))

    @property
    def channel_key(self) -> str:
        """``<resource>|<filter signature>``; equal filter sets give equal keys."""
        if not self.filters:
            return f"{self.resource}|all"
        return f"{self.resource}|" + "&".join(f.signature for f in self.filters)

    @classmethod
    def from_channel_key(cls, key: str) -> "ResourceDescriptor":
        resource, sep, signature = key.partition("|")
        if not sep:
            raise ValueError(f"Malformed channel key '{key}'")
        if signature in ("", "all"):
            return cls(resource)
        return cls(resource, filters=tuple(Filter.parse(part) for part in signature.split("&")))

    def where(self, *filters: Filter) -> "ResourceDescriptor":
        return replace(self, filters=self.filters + tuple(filters))

    def with_options(self, **changes) -> "ResourceDescriptor":
        return replace(self, **changes)

    def matches(self, row: Optional[Dict[str, Any]]) -> bool:
        if not self.filters:
            return True
        if not row:
            return False
        return all(f.matches(row) for f in self.filters)
