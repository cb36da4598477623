import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


def global_error_handler(error: Exception, description: str = None):
    """Default sink for errors raised by observers, effects and scheduled tasks."""
    message = description or "Unhandled error"
    logger.error("%s: %s: %s", message, error.__class__.__name__, error, exc_info=error)


class LiveQueryError(Exception):
    """Base exception for livequery errors."""
    pass


class FetchError(LiveQueryError):
    """Raised when the initial read of a resource fails."""

    def __init__(self, resource: str, cause: Optional[BaseException] = None):
        self.resource = resource
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Fetch of '{resource}' failed{detail}")


class ChannelError(LiveQueryError):
    """Base exception for change-feed channel errors."""
    pass


class ChannelConnectionError(ChannelError):
    """Raised when a channel cannot be established."""

    def __init__(self, key: str, attempts: int = 0, cause: Optional[BaseException] = None):
        self.key = key
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Channel '{key}' unavailable after {attempts} attempt(s): {cause}")


class ChannelMessageError(ChannelError):
    """Raised when a channel message cannot be decoded."""
    pass


class EventParseError(ChannelMessageError):
    """Raised when a wire payload does not describe a change event."""
    pass


class MergeConflict(LiveQueryError):
    """An event references a key the snapshot does not hold. Logged and ignored by the core."""

    def __init__(self, policy: str, key, kind: str):
        self.policy = policy
        self.key = key
        self.kind = kind
        super().__init__(f"{policy}: {kind} for absent key {key!r}")


class RegistryError(LiveQueryError):
    """release() without a matching acquire()."""
    pass


class SchemaError(LiveQueryError):
    """Raised when a row does not satisfy its resource schema."""

    def __init__(self, errors: Dict[str, List[str]], resource: str = None):
        self.errors = errors
        self.resource = resource
        fields = ", ".join(f"{name}: {'; '.join(msgs)}" for name, msgs in errors.items())
        prefix = f"{resource}: " if resource else ""
        super().__init__(f"{prefix}{fields}")
