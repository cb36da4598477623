from .core import batch_updates, create_effect, create_signal, on_dispose, set_global_error_handler
from .descriptor import Filter, ResourceDescriptor, eq
from .events import ChangeEvent, ChangeKind
from .exceptions import (ChannelConnectionError, ChannelError, FetchError, LiveQueryError, MergeConflict,
                         RegistryError, SchemaError)
from .live_query import LiveQuery, Subscription
from .policies import AppendOnInsert, CounterAggregate, MergePolicy, Replace, UpsertById
from .channels.registry import ChannelState, RetryPolicy, SubscriptionRegistry

__version__ = "0.1.0"
