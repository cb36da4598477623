import os
from dataclasses import dataclass
from functools import lru_cache

from livequery.backends.shape import ShapeBackend
from livequery.channels.registry import RetryPolicy, SubscriptionRegistry
from livequery.live_query import LiveQuery


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class Settings:
    """Live query settings loaded from environment variables with safe defaults."""

    url: str = "http://localhost:3000"
    api_key: str = ""
    log_level: str = "INFO"
    channel_max_attempts: int = 5
    channel_base_delay: float = 1.0
    channel_max_delay: float = 30.0
    http_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings from LIVEQUERY_* environment variables."""
        return cls(
            url=os.getenv("LIVEQUERY_URL", cls.url),
            api_key=os.getenv("LIVEQUERY_API_KEY", cls.api_key),
            log_level=os.getenv("LIVEQUERY_LOG_LEVEL", cls.log_level),
            channel_max_attempts=_env_int("LIVEQUERY_CHANNEL_MAX_ATTEMPTS", cls.channel_max_attempts),
            channel_base_delay=_env_float("LIVEQUERY_CHANNEL_BASE_DELAY", cls.channel_base_delay),
            channel_max_delay=_env_float("LIVEQUERY_CHANNEL_MAX_DELAY", cls.channel_max_delay),
            http_timeout=_env_float("LIVEQUERY_HTTP_TIMEOUT", cls.http_timeout),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.channel_max_attempts,
            base_delay=self.channel_base_delay,
            max_delay=self.channel_max_delay,
        )


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings.from_env()


def create_live_query(settings: Settings = None) -> LiveQuery:
    """Wire a ShapeBackend, a fresh SubscriptionRegistry and a LiveQuery from ``settings``."""
    settings = settings or get_settings()
    backend = ShapeBackend(settings.url, api_key=settings.api_key or None, timeout=settings.http_timeout)
    registry = SubscriptionRegistry(backend, retry=settings.retry_policy())
    return LiveQuery(backend, registry)
