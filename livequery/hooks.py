from typing import Any, Callable, Tuple

from livequery.core import Signal, on_dispose, untrack
from livequery.descriptor import ResourceDescriptor
from livequery.live_query import ERROR, PENDING, LiveQuery, Subscription
from livequery.policies import MergePolicy


def use_live_query(live: LiveQuery, descriptor: ResourceDescriptor,
                   policy: MergePolicy) -> Tuple[Signal, Signal, Subscription]:
    """
    Open a live query owned by the current effect.

    The subscription is closed when the owning effect re-runs or is disposed, so read
    the returned signals from a child effect rather than the one that opened it.
    Outside an effect the caller owns the subscription and must close it.

    Returns:
        tuple: A tuple containing:
            - snapshot: a signal holding the merged view.
            - status: a signal that returns 'pending', 'ready' or 'error'.
            - subscription: the Subscription, for mutate(), resync() and close().
    """
    subscription = untrack(lambda: live.open(descriptor, policy))
    on_dispose(subscription.close)
    return subscription.snapshot, subscription.status, subscription


def create_live_resource(live: LiveQuery, descriptor: ResourceDescriptor,
                         policy: MergePolicy) -> Tuple[Callable[[], Any], Signal, Subscription]:
    """
    Like ``use_live_query`` but with a ``read()`` accessor that raises while the
    resource is loading and re-raises the FetchError once it has failed.
    """
    snapshot, status, subscription = use_live_query(live, descriptor, policy)

    def read():
        state = status()
        if state == PENDING:
            raise LookupError(f"Resource '{descriptor.resource}' is still loading")
        if state == ERROR and subscription.fetch_error is not None:
            raise subscription.fetch_error
        return snapshot()

    return read, status, subscription
