import logging
import os
import sys

# Ensure we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from livequery.backends.shape import ShapeBackend
from livequery.config import Settings, create_live_query, get_settings
from livequery.logging import setup_logging


def test_defaults():
    settings = Settings()
    assert settings.url == "http://localhost:3000"
    assert settings.channel_max_attempts == 5
    policy = settings.retry_policy()
    assert (policy.max_attempts, policy.base_delay, policy.max_delay) == (5, 1.0, 30.0)


def test_from_env(monkeypatch):
    monkeypatch.setenv("LIVEQUERY_URL", "https://sync.yayasan.test")
    monkeypatch.setenv("LIVEQUERY_API_KEY", "secret")
    monkeypatch.setenv("LIVEQUERY_LOG_LEVEL", "debug")
    monkeypatch.setenv("LIVEQUERY_CHANNEL_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("LIVEQUERY_CHANNEL_BASE_DELAY", "0.5")
    monkeypatch.setenv("LIVEQUERY_HTTP_TIMEOUT", "2.5")

    settings = Settings.from_env()

    assert settings.url == "https://sync.yayasan.test"
    assert settings.api_key == "secret"
    assert settings.channel_max_attempts == 3
    assert settings.channel_base_delay == 0.5
    assert settings.channel_max_delay == 30.0
    assert settings.http_timeout == 2.5


def test_get_settings_is_cached(monkeypatch):
    get_settings.cache_clear()
    monkeypatch.setenv("LIVEQUERY_URL", "https://first.test")
    first = get_settings()
    monkeypatch.setenv("LIVEQUERY_URL", "https://second.test")
    assert get_settings() is first
    get_settings.cache_clear()


def test_create_live_query_wires_shape_backend():
    settings = Settings(url="https://sync.yayasan.test/", api_key="k", channel_max_attempts=2)
    live = create_live_query(settings)

    assert isinstance(live.query, ShapeBackend)
    assert live.query.shape_url == "https://sync.yayasan.test/v1/shape"
    assert live.registry.retry.max_attempts == 2
    assert len(live.registry) == 0


def test_setup_logging_quiets_httpx():
    setup_logging(Settings(log_level="debug"))
    assert logging.getLogger("httpx").level == logging.WARNING
    setup_logging(Settings(log_level="error"))
    assert logging.getLogger("httpcore").level == logging.ERROR
