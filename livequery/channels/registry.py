import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from livequery.backends.base import ChangeFeed
from livequery.core import create_signal, report_error
from livequery.descriptor import ResourceDescriptor
from livequery.events import ChangeEvent
from livequery.exceptions import ChannelConnectionError, ChannelError, RegistryError

logger = logging.getLogger(__name__)


class ChannelState(Enum):
    """Change-feed channel states."""
    CONNECTING = "connecting"
    OPEN = "open"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (``attempt`` counts from 0)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


class SharedChannel:
    """
    One underlying change-feed subscription, fanned out to every observer of the same
    (resource, filter) pair. Created and closed only by SubscriptionRegistry.
    """

    def __init__(self, key: str, descriptor: ResourceDescriptor, feed: ChangeFeed, retry: RetryPolicy):
        self.key = key
        self.descriptor = descriptor
        self.observer_count = 0
        self.error: Optional[ChannelError] = None
        self.attempts = 0

        self.state_signal, self.set_state = create_signal(ChannelState.CONNECTING)

        self._feed = feed
        self._retry = retry
        self._handle: Any = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

        self._listeners: List[Callable[[ChangeEvent], None]] = []
        self._error_listeners: List[Callable[[ChannelError], None]] = []

    @property
    def state(self) -> ChannelState:
        return self.state_signal()

    @property
    def is_open(self) -> bool:
        return self.state is ChannelState.OPEN

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._discard(self._listeners, listener)

    def add_error_listener(self, listener: Callable[[ChannelError], None]) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return lambda: self._discard(self._error_listeners, listener)

    def add_state_listener(self, listener: Callable[[ChannelState], None]) -> Callable[[], None]:
        return self.state_signal.watch(listener)

    @staticmethod
    def _discard(listeners: list, listener) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self.set_state(ChannelState.CONNECTING)
            self._task = asyncio.get_running_loop().create_task(self._connect())

    async def wait_ready(self) -> ChannelState:
        """Wait until the current connection attempt settles (OPEN or DEGRADED)."""
        if self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
        return self.state

    async def _connect(self) -> None:
        attempt = 0
        while not self._closed:
            try:
                handle = await self._feed.subscribe(self.descriptor, self._dispatch, self._on_feed_error)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt += 1
                self.attempts += 1
                if attempt >= self._retry.max_attempts:
                    self.error = ChannelConnectionError(self.key, attempt, e)
                    logger.error("Channel %s: giving up after %d attempt(s): %s", self.key, attempt, e)
                    self.set_state(ChannelState.DEGRADED)
                    self._notify_error(self.error)
                    return
                delay = self._retry.delay(attempt - 1)
                logger.info("Channel %s: attempt %d failed (%s), retrying in %.1fs", self.key, attempt, e, delay)
                await asyncio.sleep(delay)
                continue

            self._handle = handle
            self.error = None
            self.set_state(ChannelState.OPEN)
            logger.debug("Channel %s open", self.key)
            return

    def _dispatch(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                report_error(e, f"Error in listener of channel '{self.key}'")

    def _notify_error(self, error: ChannelError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                report_error(e, f"Error in error listener of channel '{self.key}'")

    def _on_feed_error(self, error: Exception) -> None:
        """The feed dropped after being established: reconnect with a fresh backoff budget."""
        if self._closed:
            return
        logger.warning("Channel %s dropped: %s; reconnecting", self.key, error)
        self._handle = None
        self.start()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                await self._feed.unsubscribe(handle)
            except Exception as e:
                logger.warning("Channel %s: unsubscribe failed: %s", self.key, e)
        self._listeners.clear()
        self._error_listeners.clear()
        self.set_state(ChannelState.CLOSED)
        logger.debug("Channel %s closed", self.key)

    def __repr__(self):
        return f"SharedChannel({self.key!r}, observers={self.observer_count}, state={self.state.value})"


KeyLike = Union[str, ResourceDescriptor, SharedChannel]


class SubscriptionRegistry:
    """
    Reference-counted map of channel key -> SharedChannel.

    One instance per application context; construct a fresh one per test. acquire/release
    on the same key are serialised by a per-key asyncio.Lock, so a concurrent pair can
    neither leave an orphaned channel nor close one twice.
    """

    def __init__(self, feed: ChangeFeed, retry: RetryPolicy = None):
        self._feed = feed
        self._retry = retry or RetryPolicy()
        self._channels: Dict[str, SharedChannel] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    @staticmethod
    def _key(key: KeyLike) -> str:
        if isinstance(key, SharedChannel):
            return key.key
        if isinstance(key, ResourceDescriptor):
            return key.channel_key
        return key

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def acquire(self, key: Union[str, ResourceDescriptor]) -> SharedChannel:
        """Return the open channel for ``key``, opening it first if needed; counts one observer."""
        descriptor = key if isinstance(key, ResourceDescriptor) else ResourceDescriptor.from_channel_key(key)
        channel_key = descriptor.channel_key
        async with self._lock(channel_key):
            channel = self._channels.get(channel_key)
            if channel is None:
                channel = SharedChannel(channel_key, descriptor, self._feed, self._retry)
                self._channels[channel_key] = channel
                channel.start()
                logger.debug("Registry: opened channel %s", channel_key)
            channel.observer_count += 1
            return channel

    async def release(self, key: KeyLike) -> None:
        """Drop one observer; the last one closes the channel and evicts it."""
        channel_key = self._key(key)
        async with self._lock(channel_key):
            channel = self._channels.get(channel_key)
            if channel is None or channel.observer_count <= 0:
                raise RegistryError(f"release('{channel_key}') without a matching acquire()")
            channel.observer_count -= 1
            if channel.observer_count == 0:
                del self._channels[channel_key]
                await channel.close()
                logger.debug("Registry: closed channel %s", channel_key)

    def get(self, key: KeyLike) -> Optional[SharedChannel]:
        return self._channels.get(self._key(key))

    def observers(self, key: KeyLike) -> int:
        channel = self.get(key)
        return channel.observer_count if channel else 0

    async def close_all(self) -> None:
        for channel_key in list(self._channels):
            async with self._lock(channel_key):
                channel = self._channels.pop(channel_key, None)
                if channel is not None:
                    channel.observer_count = 0
                    await channel.close()

    def __contains__(self, key: KeyLike) -> bool:
        return self._key(key) in self._channels

    def __len__(self) -> int:
        return len(self._channels)
