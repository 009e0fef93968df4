"""
Pytest fixtures for meeting_stt tests.
"""

import pytest

from meeting_stt.config import TranscriberConfig
from meeting_stt.store import TranscriptStore

from .fakes import FakeConnector, FakeRedis, FakeSpeechController, TransportFactory


@pytest.fixture
def test_config():
    """Configuration with short intervals for fast tests"""
    return TranscriberConfig(
        flush_interval_s=0.05,
        pending_capacity=4,
        max_reconnect_attempts=3,
        reconnect_delay_s=0.0,
        health_poll_interval_s=0.05,
        connect_timeout_s=1.0,
        close_timeout_s=0.5,
        send_timeout_s=0.1,
    )


@pytest.fixture
def fake_redis():
    """In-memory Redis double"""
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return TranscriptStore(fake_redis, ttl_seconds=3600)


@pytest.fixture
def connector():
    """Stand-in for websockets.connect"""
    return FakeConnector()


@pytest.fixture
def speech_controller():
    return FakeSpeechController()


@pytest.fixture
def transport_factory(test_config):
    return TransportFactory(test_config)
