from .registry import ChannelState, RetryPolicy, SharedChannel, SubscriptionRegistry
from .server_push import ServerPush, ServerPushMessage, ServerPushState
from ..exceptions import ChannelError, ChannelConnectionError, ChannelMessageError

__all__ = [
    'ChannelState',
    'RetryPolicy',
    'SharedChannel',
    'SubscriptionRegistry',
    'ServerPush',
    'ServerPushMessage',
    'ServerPushState',
    'ChannelError',
    'ChannelConnectionError',
    'ChannelMessageError',
]
