"""
Shared Utilities Module for the Meeting STT service

This module provides common utilities used across the service:
- Redis client factory and connection pooling
- Prometheus metrics and recording helpers

Usage:
    from shared import get_redis_client, ping_redis

    redis = await get_redis_client()
    await redis.set("key", "value", ex=3600)
"""

from .redis_client import (
    get_redis_client,
    get_redis_pool,
    close_redis_client,
    ping_redis,
    get_redis_info,
    RedisConfig,
)

from .observability import (
    setup_metrics,
    get_metrics_response,
    record_frame_rejected,
    record_segment_flushed,
    record_segment_dropped,
    record_recognition_event,
    record_reconnect_attempt,
    record_state_transition,
    record_store_write,
    set_active_sessions,
    MetricTimer,
    STORE_WRITE_DURATION,
)

__all__ = [
    # Redis client utilities
    "get_redis_client",
    "get_redis_pool",
    "close_redis_client",
    "ping_redis",
    "get_redis_info",
    "RedisConfig",
    # Observability utilities
    "setup_metrics",
    "get_metrics_response",
    "record_frame_rejected",
    "record_segment_flushed",
    "record_segment_dropped",
    "record_recognition_event",
    "record_reconnect_attempt",
    "record_state_transition",
    "record_store_write",
    "set_active_sessions",
    "MetricTimer",
    "STORE_WRITE_DURATION",
]
