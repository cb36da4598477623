import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional, Sequence

from livequery.backends.base import ChangeFeed, ErrorHandler, EventHandler, QueryInterface, Row, finish_rows
from livequery.descriptor import Filter, ResourceDescriptor
from livequery.events import ChangeEvent
from livequery.exceptions import ChannelConnectionError

logger = logging.getLogger(__name__)


class _MemorySubscription:
    __slots__ = ("id", "descriptor", "on_event", "on_error", "active")

    def __init__(self, sub_id: int, descriptor: ResourceDescriptor, on_event: EventHandler,
                 on_error: Optional[ErrorHandler]):
        self.id = sub_id
        self.descriptor = descriptor
        self.on_event = on_event
        self.on_error = on_error
        self.active = True


class MemoryBackend(QueryInterface, ChangeFeed):
    """
    In-process tables implementing both the query and the change-feed interface.

    Writes notify every active subscription whose filters match the row, synchronously
    and in write order. Failure knobs make it usable for exercising error paths:

        backend = MemoryBackend()
        backend.fail_subscribe = 2      # the next two subscribe() calls raise
        backend.fail_fetch = True       # every fetch raises until reset
    """

    def __init__(self, tables: Dict[str, List[Row]] = None, primary_key: str = "id"):
        self.primary_key = primary_key
        self.tables: Dict[str, Dict[Any, Row]] = {}
        self._subscriptions: Dict[int, _MemorySubscription] = {}
        self._ids = itertools.count(1)
        self._row_ids = itertools.count(1)

        self.fail_fetch = False
        self.fail_subscribe = 0
        self.fetch_delay = 0.0
        self.fetch_calls = 0
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0

        for name, rows in (tables or {}).items():
            for row in rows:
                self._table(name)[self._key_of(row)] = dict(row)

    def _table(self, name: str) -> Dict[Any, Row]:
        return self.tables.setdefault(name, {})

    def _key_of(self, row: Row) -> Any:
        if self.primary_key not in row:
            row[self.primary_key] = next(self._row_ids)
        return row[self.primary_key]

    # --- QueryInterface ---

    async def fetch(self, resource: str, filters: Sequence[Filter] = (), columns: Sequence[str] = ("*",),
                    order_by: Optional[str] = None, descending: bool = False, limit: Optional[int] = None,
                    single: bool = False):
        self.fetch_calls += 1
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        else:
            await asyncio.sleep(0)
        if self.fail_fetch:
            error = self.fail_fetch if isinstance(self.fail_fetch, Exception) else ConnectionError("fetch failed")
            raise error

        rows = [row for row in self._table(resource).values() if all(f.matches(row) for f in filters)]
        return finish_rows(rows, columns, order_by, descending, limit, single, self.primary_key)

    # --- ChangeFeed ---

    async def subscribe(self, descriptor: ResourceDescriptor, on_event: EventHandler,
                        on_error: Optional[ErrorHandler] = None) -> int:
        self.subscribe_calls += 1
        await asyncio.sleep(0)
        if self.fail_subscribe:
            if not isinstance(self.fail_subscribe, bool):
                self.fail_subscribe -= 1
            raise ChannelConnectionError(descriptor.channel_key, 1, ConnectionError("feed unreachable"))
        sub = _MemorySubscription(next(self._ids), descriptor, on_event, on_error)
        self._subscriptions[sub.id] = sub
        logger.debug("memory feed: subscribed %s as #%d", descriptor.channel_key, sub.id)
        return sub.id

    async def unsubscribe(self, handle: int) -> None:
        self.unsubscribe_calls += 1
        sub = self._subscriptions.pop(handle, None)
        if sub:
            sub.active = False

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    def drop_subscriptions(self, error: Exception = None) -> None:
        """Simulate the server closing every feed."""
        error = error or ConnectionError("feed closed by server")
        for sub in list(self._subscriptions.values()):
            self._subscriptions.pop(sub.id, None)
            sub.active = False
            if sub.on_error:
                sub.on_error(error)

    # --- writes ---

    def emit(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to matching subscriptions without touching the tables."""
        resource = event.resource
        for sub in list(self._subscriptions.values()):
            if not sub.active or (resource and sub.descriptor.resource != resource):
                continue
            if event.row and not sub.descriptor.matches(event.row) and not sub.descriptor.matches(event.previous_row):
                continue
            sub.on_event(event)

    def insert(self, resource: str, row: Row) -> Row:
        row = dict(row)
        self._table(resource)[self._key_of(row)] = row
        self.emit(ChangeEvent.inserted(row, resource=resource))
        return row

    def update(self, resource: str, key: Any, changes: Dict[str, Any]) -> Row:
        table = self._table(resource)
        if key not in table:
            raise KeyError(f"{resource}: no row with {self.primary_key}={key!r}")
        previous = table[key]
        row = {**previous, **changes}
        table[key] = row
        self.emit(ChangeEvent.updated(row, previous, resource=resource))
        return row

    def delete(self, resource: str, key: Any) -> Row:
        row = self._table(resource).pop(key)
        self.emit(ChangeEvent.deleted(row, resource=resource))
        return row
