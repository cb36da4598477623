import asyncio
import logging
from typing import Any, Callable, List, Optional, Set

from livequery.exceptions import global_error_handler

logger = logging.getLogger(__name__)

# Global state for reactive system
_current_effect = None
_trackable = False
_batch_updates_active = False
_batch_updates_queue = []
_global_error_handler = global_error_handler


def set_global_error_handler(handler: Optional[Callable[..., None]]):
    """Sets a global error handler for uncaught exceptions."""
    global _global_error_handler
    _global_error_handler = handler


def report_error(error: Exception, message: str):
    """Route an error raised by an observer or task to the global error handler."""
    if _global_error_handler:
        _global_error_handler(error, message)
    else:
        logger.error("%s: %s", message, error)


# Scheduler for batching effect re-runs
class Scheduler:
    def __init__(self):
        self.queue = []
        self._flush_task: Optional[asyncio.Task] = None

    def enqueue(self, task):
        if task not in self.queue:
            self.queue.append(task)
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: flush inline so synchronous callers still observe updates
            self._run_queue()
            return
        self._flush_task = loop.create_task(self.flush())

    async def flush(self):
        # Yield so writes made in the same tick collapse into one run
        await asyncio.sleep(0)
        self._run_queue()

    def _run_queue(self):
        while self.queue:
            # Snapshot the queue; tasks may re-enqueue
            tasks = list(self.queue)
            self.queue.clear()
            for task in tasks:
                try:
                    task.run()
                except Exception as e:
                    report_error(e, "Error executing scheduled task")


_scheduler = Scheduler()


def batch_updates(fn):
    global _batch_updates_active
    prev_state = _batch_updates_active
    _batch_updates_active = True
    try:
        return fn()
    finally:
        _batch_updates_active = prev_state
        if not _batch_updates_active:
            queue_to_process = list(_batch_updates_queue)
            _batch_updates_queue.clear()
            for signal, new_value in queue_to_process:
                signal._set_value_internal(new_value)


class Watcher:
    """Plain observer: called synchronously with the new value of a signal."""
    __slots__ = ('callback', '__weakref__')

    def __init__(self, callback: Callable[[Any], None]):
        self.callback = callback

    def notify(self, signal, old_value, new_value):
        self.callback(new_value)


class Signal:
    __slots__ = ('_subscribers', '_disposed', '_value', '__weakref__')

    def __init__(self, initial_value: Any):
        self._subscribers = set()
        self._disposed = False
        self._value = initial_value

    def __call__(self) -> Any:
        if _trackable and _current_effect is not None:
            self._subscribers.add(_current_effect)
            _current_effect.dependencies.add(self)
        return self._value

    get = __call__

    def peek(self):
        return self._value

    def set(self, new_value: Any) -> None:
        queue_update(self, new_value)

    def watch(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Call ``callback(value)`` after every change. Returns an unsubscribe function."""
        watcher = Watcher(callback)
        self._subscribers.add(watcher)

        def unsubscribe():
            self._subscribers.discard(watcher)

        return unsubscribe

    def _set_value_internal(self, new_value):
        if self._disposed or self._value is new_value:
            return
        try:
            if self._value == new_value:
                return
        except Exception:
            # Values without a usable __eq__ always count as a change
            pass

        old_value = self._value
        self._value = new_value

        for subscriber in list(self._subscribers):
            try:
                if isinstance(subscriber, Effect):
                    subscriber.dirty = True
                    _scheduler.enqueue(subscriber)
                else:
                    subscriber.notify(self, old_value, new_value)
            except Exception as e:
                report_error(e, f"Error notifying subscriber: {subscriber}")

    def dispose(self):
        self._disposed = True
        self._subscribers.clear()


def create_signal(initial_value: Any):
    signal = Signal(initial_value)
    return signal, signal.set


def queue_update(signal, new_value):
    if _batch_updates_active:
        _batch_updates_queue.append((signal, new_value))
    else:
        signal._set_value_internal(new_value)


class Effect:
    __slots__ = ('fn', 'dependencies', 'children', 'disposals',
                 'is_running', 'disposed', 'dirty', '_error_count', '_max_errors', '__weakref__')

    def __init__(self, fn: Callable[[], Any]):
        self.fn = fn
        self.dependencies: Set[Signal] = set()
        self.children: Set['Effect'] = set()
        self.disposals: List[Callable[[], None]] = []
        self.is_running = False
        self.disposed = False
        self.dirty = False
        self._error_count = 0
        self._max_errors = 5  # Maximum number of errors before stopping

    def run(self):
        global _current_effect, _trackable
        if self.disposed or self.is_running:
            return
        if self._error_count >= self._max_errors:
            raise RuntimeError(f"Effect has exceeded maximum error count ({self._max_errors}). Stopping execution.")

        self.is_running = True
        self.dirty = False
        prev_effect = _current_effect
        prev_trackable = _trackable
        _current_effect = self

        self._cleanup()

        try:
            _trackable = True
            self.fn()
            self._error_count = 0
        except Exception as e:
            self._error_count += 1
            report_error(e, "Error running effect")
        finally:
            _trackable = prev_trackable
            _current_effect = prev_effect
            self.is_running = False

    def _cleanup(self):
        for signal in list(self.dependencies):
            signal._subscribers.discard(self)
        self.dependencies.clear()

        for child in list(self.children):
            child.dispose()
        self.children.clear()

        for dispose in self.disposals:
            try:
                dispose()
            except Exception as e:
                report_error(e, "Cleanup error")
        self.disposals.clear()

    def dispose(self):
        if self.disposed:
            return
        self.disposed = True
        self._cleanup()


def create_effect(fn: Callable[[], Any]) -> Effect:
    effect = Effect(fn)
    parent_effect = _current_effect

    if parent_effect:
        parent_effect.children.add(effect)

    effect.run()
    return effect


def untrack(fn: Callable[[], Any]) -> Any:
    global _trackable
    if not callable(fn):
        raise TypeError(f"untrack: expected callable, got {type(fn).__name__}")
    prev_tracking = _trackable
    _trackable = False
    try:
        return fn()
    finally:
        _trackable = prev_tracking


def on_dispose(fn: Callable[[], None]) -> bool:
    """Register ``fn`` to run when the current effect re-runs or is disposed."""
    if _current_effect:
        _current_effect.disposals.append(fn)
        return True
    return False

