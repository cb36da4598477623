import asyncio
import logging
import weakref
from inspect import isawaitable
from typing import Any, Callable, List, Optional

from livequery.backends.base import QueryInterface, fetch_descriptor, project
from livequery.channels.registry import ChannelState, SharedChannel, SubscriptionRegistry
from livequery.core import create_signal, report_error
from livequery.descriptor import ResourceDescriptor
from livequery.events import ChangeEvent, ChangeKind
from livequery.exceptions import ChannelError, FetchError, LiveQueryError, MergeConflict, SchemaError
from livequery.policies import MergePolicy

logger = logging.getLogger(__name__)

PENDING = "pending"
READY = "ready"
ERROR = "error"


class _PendingMutation:
    __slots__ = ("event", "written")

    def __init__(self, event: ChangeEvent):
        self.event = event
        self.written = False


class Subscription:
    """
    Live view of one resource: an initial fetch folded with change events through a
    MergePolicy. Owned by the consumer that opened it; ``close()`` releases the shared
    channel exactly once.

    Signals:
        snapshot -- the current view (policy-specific shape)
        status   -- "pending" until the first fetch settles, then "ready" or "error"
        live     -- True while the change feed is open
    """

    def __init__(self, query: QueryInterface, registry: SubscriptionRegistry,
                 descriptor: ResourceDescriptor, policy: MergePolicy):
        self.descriptor = descriptor
        self.policy = policy
        self.fetch_error: Optional[FetchError] = None
        self.channel_error: Optional[ChannelError] = None
        self.conflicts = 0

        self.snapshot, self._set_snapshot = create_signal(policy.empty())
        self.status, self._set_status = create_signal(PENDING)
        self.live, self._set_live = create_signal(False)

        self._query = query
        self._registry = registry
        self._channel: Optional[SharedChannel] = None
        self._detach: List[Callable[[], None]] = []
        self._update_callbacks: List[Callable[[Any], None]] = []
        self._error_callbacks: List[Callable[[LiveQueryError], None]] = []

        self._confirmed = policy.empty()
        self._pending: List[_PendingMutation] = []
        # Events received while a fetch is in flight; None when not buffering
        self._buffer: Optional[List[ChangeEvent]] = []
        self._stale = False
        self._resync_task: Optional[asyncio.Task] = None
        self._resync_again = False

        self._closed = False
        self._close_task: Optional[asyncio.Task] = None
        self._settled = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._start())

    # --- public surface ---

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def channel(self) -> Optional[SharedChannel]:
        return self._channel

    @property
    def pending_mutations(self) -> int:
        return len(self._pending)

    def on_update(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Call ``callback(snapshot)`` on every change; immediately too if already seeded."""
        self._update_callbacks.append(callback)
        if self.status.peek() != PENDING:
            self._call_update_callback(callback, self.snapshot.peek())

        def unsubscribe():
            if callback in self._update_callbacks:
                self._update_callbacks.remove(callback)

        return unsubscribe

    def on_error(self, callback: Callable[[LiveQueryError], None]) -> Callable[[], None]:
        """Call ``callback(error)`` with FetchError or ChannelError; replays errors already raised."""
        self._error_callbacks.append(callback)
        for error in (self.fetch_error, self.channel_error):
            if error is not None:
                self._call_error_callback(callback, error)

        def remove():
            if callback in self._error_callbacks:
                self._error_callbacks.remove(callback)

        return remove

    async def ready(self):
        """Wait for the initial fetch. Returns the snapshot, or raises FetchError."""
        await self._settled.wait()
        if self.status.peek() == ERROR and self.fetch_error is not None:
            raise self.fetch_error
        return self.snapshot.peek()

    async def resync(self):
        """Refetch the resource and rebuild the snapshot; events received meanwhile are replayed."""
        if self._closed:
            raise LiveQueryError(f"Subscription to '{self.descriptor.resource}' is closed")
        self._request_resync()
        while self._resync_task is not None and not self._resync_task.done():
            await asyncio.shield(self._resync_task)
        return self.snapshot.peek()

    async def mutate(self, event: ChangeEvent, write: Callable[[], Any] = None):
        """
        Optimistically apply ``event`` on top of the confirmed snapshot, then run ``write``.

        A failed write reverts the overlay and re-raises. A successful one keeps the overlay
        until the feed delivers a matching event; without a live feed it is folded in directly.
        """
        if self._closed:
            raise LiveQueryError(f"Subscription to '{self.descriptor.resource}' is closed")
        pending = _PendingMutation(event)
        self._pending.append(pending)
        self._publish()

        result = None
        try:
            if write is not None:
                result = write()
                if isawaitable(result):
                    result = await result
        except Exception:
            if pending in self._pending:
                self._pending.remove(pending)
                self._publish()
            raise

        pending.written = True
        if pending in self._pending and not self.live.peek():
            self._pending.remove(pending)
            self._confirmed = self._fold(self._confirmed, event)
            self._publish()
        return result

    def close(self) -> asyncio.Task:
        """Tear down; safe to call repeatedly and during an in-flight fetch. Returns the teardown task."""
        if self._close_task is None:
            self._closed = True
            self._close_task = asyncio.get_running_loop().create_task(self._teardown())
        return self._close_task

    # --- lifecycle ---

    async def _start(self):
        channel = await self._registry.acquire(self.descriptor)
        self._channel = channel
        self._detach.append(channel.add_listener(self._on_event))
        self._detach.append(channel.add_error_listener(self._on_channel_error))
        self._detach.append(channel.add_state_listener(self._on_channel_state))
        self._on_channel_state(channel.state_signal.peek())
        if channel.state_signal.peek() is ChannelState.DEGRADED and channel.error is not None:
            self._on_channel_error(channel.error)

        await self._fetch_and_seed()
        if self._stale:
            self._request_resync()

    async def _teardown(self):
        for task in (self._task, self._resync_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug("Subscription %s: task ended with %s during close", self.descriptor.channel_key, e)
        for detach in self._detach:
            detach()
        self._detach.clear()
        self._buffer = None
        self._pending.clear()
        self._update_callbacks.clear()
        self._error_callbacks.clear()
        self._set_live(False)
        self._settled.set()

        channel, self._channel = self._channel, None
        if channel is None:
            return
        if self._registry.get(channel) is not channel:
            # Already released, e.g. by registry.close_all()
            logger.debug("Subscription %s: channel already released", channel.key)
            return
        await self._registry.release(channel)

    async def _fetch_and_seed(self):
        if self._buffer is None:
            self._buffer = []
        error = None
        rows = None
        try:
            result = await fetch_descriptor(self._query, self.descriptor)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e if isinstance(e, FetchError) else FetchError(self.descriptor.resource, e)
            logger.warning("Fetch of %s failed: %s", self.descriptor.channel_key, e)
        else:
            rows = self._coerce_rows(result)

        if self._closed:
            return

        buffered, self._buffer = self._buffer or [], None
        present = None
        if rows is not None:
            present = {row.get(self.descriptor.primary_key) for row in rows}
            base = self.policy.initial(rows)
            # Rows written optimistically are part of a fresh read
            self._pending = [p for p in self._pending if not p.written]
        elif self.status.peek() == PENDING:
            base = self.policy.empty()
        else:
            # Failed resync: keep last known good
            base = self._confirmed

        for event in buffered:
            if present is not None and not self._replays(event, present):
                logger.debug("Skipping buffered %s on %s: already reflected by the fetch",
                             event.kind.value, self.descriptor.channel_key)
                self._settle_pending(event)
                continue
            base = self._fold(base, event)
            self._settle_pending(event)
        self._confirmed = base

        self.fetch_error = error
        if error is None:
            self._set_status(READY)
        elif self.status.peek() == PENDING:
            self._set_status(ERROR)
        self._publish(force=True)
        self._settled.set()
        if error is not None:
            self._emit_error(error)

    def _replays(self, event: ChangeEvent, present: set) -> bool:
        """Whether a buffered event still has to be applied on top of a fresh fetch.

        ``present`` holds the keys in the fetched rows and is kept current as events replay:
        an insert of a present key and a delete of an absent one are already in the fetch.
        """
        key = event.key(self.descriptor.primary_key)
        if key is None:
            return True
        if event.kind is ChangeKind.DELETED:
            if key not in present:
                return False
            present.discard(key)
        elif event.kind is ChangeKind.INSERTED and key in present:
            return False
        else:
            present.add(key)
        return True

    def _request_resync(self):
        if self._closed:
            return
        if self._resync_task is not None and not self._resync_task.done():
            self._resync_again = True
            return
        self._resync_task = asyncio.get_running_loop().create_task(self._resync_loop())

    async def _resync_loop(self):
        while True:
            self._resync_again = False
            await self._fetch_and_seed()
            if not self._resync_again or self._closed:
                return

    # --- events ---

    def _on_event(self, event: ChangeEvent):
        if self._closed:
            return
        if event.kind is not ChangeKind.DELETED and not self.descriptor.matches(event.row):
            event = self._departure(event)
            if event is None:
                return
        event = self._coerce_event(event)
        if event is None:
            return

        if self.policy.resync_on_event:
            if self.status.peek() == PENDING:
                self._stale = True
            else:
                self._request_resync()
            return

        if self._buffer is not None:
            self._buffer.append(event)
            return

        self._confirmed = self._fold(self._confirmed, event)
        self._settle_pending(event)
        self._publish()

    def _departure(self, event: ChangeEvent) -> Optional[ChangeEvent]:
        """An update that moved a row out of the filtered set, as a delete; None if it was never in it."""
        if event.kind is not ChangeKind.UPDATED:
            return None
        previous = event.previous_row
        if previous and self.descriptor.matches(previous):
            return ChangeEvent.deleted(previous, resource=event.resource)
        key = event.key(self.descriptor.primary_key)
        if key is not None and self.policy.contains(self._confirmed, key):
            return ChangeEvent.deleted(event.row, resource=event.resource)
        return None

    def _on_channel_state(self, state: ChannelState):
        if self._closed:
            return
        self._set_live(state is ChannelState.OPEN)
        if state is ChannelState.OPEN:
            self.channel_error = None

    def _on_channel_error(self, error: ChannelError):
        if self._closed:
            return
        self.channel_error = error
        self._set_live(False)
        self._emit_error(error)

    def _emit_error(self, error: LiveQueryError):
        for callback in list(self._error_callbacks):
            self._call_error_callback(callback, error)

    def _call_error_callback(self, callback, error):
        try:
            callback(error)
        except Exception as e:
            report_error(e, f"Error in on_error callback for '{self.descriptor.resource}'")

    # --- merge ---

    def _fold(self, base, event: ChangeEvent, count_conflicts: bool = True):
        try:
            return self.policy.apply(base, event)
        except MergeConflict as conflict:
            if count_conflicts:
                self.conflicts += 1
                logger.warning("%s on %s; ignored, resync to recover", conflict, self.descriptor.channel_key)
            return base

    def _settle_pending(self, event: ChangeEvent):
        for pending in self._pending:
            if self.policy.matches(pending.event, event):
                self._pending.remove(pending)
                return

    def _publish(self, force: bool = False):
        visible = self._confirmed
        for pending in self._pending:
            visible = self._fold(visible, pending.event, count_conflicts=False)
        changed = visible != self.snapshot.peek()
        self._set_snapshot(visible)
        if (changed or force) and self.status.peek() != PENDING:
            for callback in list(self._update_callbacks):
                self._call_update_callback(callback, visible)

    def _call_update_callback(self, callback, snapshot):
        try:
            callback(snapshot)
        except Exception as e:
            report_error(e, f"Error in on_update callback for '{self.descriptor.resource}'")

    # --- row boundary ---

    def _coerce_row(self, row):
        row = project(row, self.descriptor.columns, self.descriptor.primary_key)
        if self.descriptor.schema is None:
            return row
        return self.descriptor.schema.coerce(row)

    def _coerce_rows(self, result) -> List[dict]:
        if result is None:
            raw = []
        elif isinstance(result, dict):
            raw = [result]
        else:
            raw = list(result)
        rows = []
        for row in raw:
            try:
                rows.append(self._coerce_row(row))
            except SchemaError as e:
                logger.warning("Dropping invalid %s row from fetch: %s", self.descriptor.resource, e)
        return rows

    def _coerce_event(self, event: ChangeEvent) -> Optional[ChangeEvent]:
        if event.kind is ChangeKind.DELETED:
            return event
        try:
            return event.with_row(self._coerce_row(event.row))
        except SchemaError as e:
            logger.warning("Dropping invalid %s %s event: %s", self.descriptor.resource, event.kind.value, e)
            return None

    def __repr__(self):
        state = "closed" if self._closed else self.status.peek()
        return f"Subscription({self.descriptor.channel_key!r}, {self.policy!r}, {state})"


class LiveQuery:
    """
    Entry point for consumers:

        live = LiveQuery(backend, SubscriptionRegistry(backend))
        sub = live.open(ResourceDescriptor("gallery"), UpsertById())
        sub.on_update(render)
        ...
        await sub.close()
    """

    def __init__(self, query: QueryInterface, registry: SubscriptionRegistry):
        self.query = query
        self.registry = registry
        self._subscriptions = weakref.WeakSet()

    def open(self, descriptor: ResourceDescriptor, policy: MergePolicy) -> Subscription:
        """Start fetching and subscribing; must be called with a running event loop."""
        subscription = Subscription(self.query, self.registry, descriptor, policy)
        self._subscriptions.add(subscription)
        logger.debug("Opened %r", subscription)
        return subscription

    @property
    def open_subscriptions(self) -> int:
        return sum(1 for sub in self._subscriptions if not sub.closed)

    async def shutdown(self):
        """Close every subscription this instance opened, then any channel left in the registry."""
        tasks = [sub.close() for sub in list(self._subscriptions)]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.registry.close_all()
