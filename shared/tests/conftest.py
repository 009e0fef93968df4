"""
Pytest fixtures for shared module tests.
"""

import pytest
from unittest.mock import AsyncMock

from shared import redis_client


@pytest.fixture
def mock_redis_client():
    """Create a mock Redis client."""
    client = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={
        "redis_version": "7.2.4",
        "uptime_in_seconds": 120,
        "connected_clients": 3,
        "used_memory_human": "1.2M",
    })
    return client


@pytest.fixture
def clean_redis_env(monkeypatch):
    """Remove Redis settings from the environment and reset the singletons."""
    for name in (
        "MEETING_STT_REDIS_HOST",
        "MEETING_STT_REDIS_PORT",
        "MEETING_STT_REDIS_DB",
        "MEETING_STT_REDIS_PASSWORD",
        "MEETING_STT_REDIS_SSL",
        "MEETING_STT_REDIS_URL",
        "MEETING_STT_REDIS_CONNECT_RETRIES",
        "REDIS_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(redis_client, "_redis_client", None)
    monkeypatch.setattr(redis_client, "_redis_pool", None)
