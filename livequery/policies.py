"""
Merge policies: pure ``(snapshot, event) -> snapshot`` functions.

Snapshots are never mutated in place; each step returns a new value and the
previous snapshot stays valid for whoever still holds it.
"""
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from livequery.events import ChangeEvent, ChangeKind, Row
from livequery.exceptions import MergeConflict

logger = logging.getLogger(__name__)

INSERT_AT_START = "start"
INSERT_AT_END = "end"


class MergePolicy:
    """Base class. Subclasses implement ``initial`` and ``apply``."""

    #: Ask the core to refetch instead of applying events
    resync_on_event = False

    def initial(self, rows: Iterable[Row]):
        raise NotImplementedError

    def apply(self, snapshot, event: ChangeEvent):
        raise NotImplementedError

    def __call__(self, snapshot, event: ChangeEvent):
        return self.apply(snapshot, event)

    def empty(self):
        return self.initial(())

    def contains(self, snapshot, key: Any) -> bool:
        """Whether ``snapshot`` holds the row keyed ``key``; always False for policies that keep no rows."""
        return False

    def matches(self, pending: ChangeEvent, confirmed: ChangeEvent) -> bool:
        """Whether ``confirmed`` (from the feed) settles the optimistic ``pending`` event."""
        return pending.kind is confirmed.kind and pending.row == confirmed.row

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class Replace(MergePolicy):
    """Single-row resource (settings-like tables)."""

    def __init__(self, refetch: bool = False, key: str = "id"):
        self.key = key
        self.resync_on_event = refetch

    def initial(self, rows: Iterable[Row]) -> Optional[Row]:
        for row in rows:
            return dict(row)
        return None

    def apply(self, snapshot: Optional[Row], event: ChangeEvent) -> Optional[Row]:
        if event.kind is ChangeKind.DELETED:
            return None
        return dict(event.row)

    def contains(self, snapshot: Optional[Row], key: Any) -> bool:
        return snapshot is not None and snapshot.get(self.key) == key

    def matches(self, pending: ChangeEvent, confirmed: ChangeEvent) -> bool:
        return pending.kind is confirmed.kind and pending.key(self.key) == confirmed.key(self.key)

    def __repr__(self):
        return f"Replace(refetch={self.resync_on_event})"


class UpsertById(MergePolicy):
    """Ordered list keyed by primary key. Updates for unknown keys are treated as inserts."""

    def __init__(self, key: str = "id", insert_at: str = INSERT_AT_END):
        if insert_at not in (INSERT_AT_START, INSERT_AT_END):
            raise ValueError(f"insert_at must be '{INSERT_AT_START}' or '{INSERT_AT_END}'")
        self.key = key
        self.insert_at = insert_at

    def initial(self, rows: Iterable[Row]) -> Tuple[Row, ...]:
        seen = set()
        result = []
        for row in rows:
            row_key = row.get(self.key)
            if row_key in seen:
                continue
            seen.add(row_key)
            result.append(dict(row))
        return tuple(result)

    def _index_of(self, snapshot: Tuple[Row, ...], row_key: Any) -> int:
        for index, row in enumerate(snapshot):
            if row.get(self.key) == row_key:
                return index
        return -1

    def apply(self, snapshot: Tuple[Row, ...], event: ChangeEvent) -> Tuple[Row, ...]:
        snapshot = snapshot or ()
        row_key = event.key(self.key)
        index = self._index_of(snapshot, row_key)

        if event.kind is ChangeKind.DELETED:
            if index < 0:
                raise MergeConflict("UpsertById", row_key, event.kind.value)
            return snapshot[:index] + snapshot[index + 1:]

        row = dict(event.row)
        if index >= 0:
            # Replace in place, keep position
            return snapshot[:index] + (row,) + snapshot[index + 1:]
        if self.insert_at == INSERT_AT_START:
            return (row,) + snapshot
        return snapshot + (row,)

    def contains(self, snapshot: Tuple[Row, ...], key: Any) -> bool:
        return self._index_of(snapshot or (), key) >= 0

    def matches(self, pending: ChangeEvent, confirmed: ChangeEvent) -> bool:
        return pending.kind is confirmed.kind and pending.key(self.key) == confirmed.key(self.key)

    def __repr__(self):
        return f"UpsertById(key={self.key!r}, insert_at={self.insert_at!r})"


class AppendOnInsert(MergePolicy):
    """Newest-first list capped at ``max_size``; only inserts apply."""

    def __init__(self, max_size: int, key: str = "id"):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.key = key

    def initial(self, rows: Iterable[Row]) -> Tuple[Row, ...]:
        return tuple(dict(row) for row in rows)[:self.max_size]

    def apply(self, snapshot: Tuple[Row, ...], event: ChangeEvent) -> Tuple[Row, ...]:
        snapshot = snapshot or ()
        if event.kind is not ChangeKind.INSERTED:
            return snapshot
        row_key = event.key(self.key)
        if row_key is not None and any(row.get(self.key) == row_key for row in snapshot):
            # Already delivered by the initial fetch
            return snapshot
        return ((dict(event.row),) + snapshot)[:self.max_size]

    def contains(self, snapshot: Tuple[Row, ...], key: Any) -> bool:
        return any(row.get(self.key) == key for row in snapshot or ())

    def matches(self, pending: ChangeEvent, confirmed: ChangeEvent) -> bool:
        if pending.kind is not confirmed.kind:
            return False
        pending_key = pending.key(self.key)
        if pending_key is not None:
            return pending_key == confirmed.key(self.key)
        # Optimistic rows have no server key yet; compare the columns they do carry
        return all(confirmed.row.get(column) == value for column, value in pending.row.items())

    def __repr__(self):
        return f"AppendOnInsert(max_size={self.max_size}, key={self.key!r})"


class CounterAggregate(MergePolicy):
    """Per-key tally of rows, e.g. likes per gallery item. Never negative."""

    def __init__(self, key_field: str):
        self.key_field = key_field

    def initial(self, rows: Iterable[Row]) -> Dict[Any, int]:
        counts: Dict[Any, int] = {}
        for row in rows:
            group = row.get(self.key_field)
            if group is None:
                continue
            counts[group] = counts.get(group, 0) + 1
        return counts

    def apply(self, snapshot: Mapping[Any, int], event: ChangeEvent) -> Dict[Any, int]:
        counts = dict(snapshot or {})
        group = event.key(self.key_field)
        if group is None:
            logger.warning("CounterAggregate: %s event without '%s', ignored", event.kind.value, self.key_field)
            return counts

        if event.kind is ChangeKind.INSERTED:
            counts[group] = counts.get(group, 0) + 1
        elif event.kind is ChangeKind.DELETED:
            current = counts.get(group, 0)
            if current <= 0:
                logger.warning("CounterAggregate: delete for '%s'=%r at zero, clamped", self.key_field, group)
                counts[group] = 0
            else:
                counts[group] = current - 1
        return counts

    def matches(self, pending: ChangeEvent, confirmed: ChangeEvent) -> bool:
        return pending.kind is confirmed.kind and pending.key(self.key_field) == confirmed.key(self.key_field)

    def __repr__(self):
        return f"CounterAggregate(key_field={self.key_field!r})"
