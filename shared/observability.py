"""
Observability Module for the Meeting STT pipeline

Provides:
- Prometheus metrics for monitoring
- Metric recording helpers used by the pipeline components
- A timing context manager for latency histograms

Metrics are exported through get_metrics_response() by the service app.
"""

import os
import time
import logging
from typing import Dict, Optional

from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    generate_latest, CONTENT_TYPE_LATEST,
    REGISTRY,
)

logger = logging.getLogger(__name__)

_metrics_initialized = False


# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

# Audio path
AUDIO_FRAMES_REJECTED = Counter(
    'meeting_stt_audio_frames_rejected_total',
    'Audio frames rejected by the voice gate',
    ['reason']
)

SEGMENTS_FLUSHED = Counter(
    'meeting_stt_segments_flushed_total',
    'Voice segments flushed from the voice gate'
)

SEGMENTS_DROPPED = Counter(
    'meeting_stt_segments_dropped_total',
    'Voice segments dropped because a transport queue was full or unusable',
    ['transport']
)

# Recognition path
RECOGNITION_EVENTS = Counter(
    'meeting_stt_recognition_events_total',
    'Recognition events received from backends',
    ['outcome']
)

# Connection supervision
RECONNECT_ATTEMPTS = Counter(
    'meeting_stt_reconnect_attempts_total',
    'Backend connection attempts made by the supervisor',
    ['result']
)

STATE_TRANSITIONS = Counter(
    'meeting_stt_state_transitions_total',
    'Connection state transitions',
    ['from_state', 'to_state']
)

# Persistence
STORE_WRITES = Counter(
    'meeting_stt_store_writes_total',
    'Transcript snapshot writes',
    ['status']
)

STORE_WRITE_DURATION = Histogram(
    'meeting_stt_store_write_duration_seconds',
    'Time spent writing a transcript snapshot',
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
)

# Gauges
ACTIVE_SESSIONS = Gauge(
    'meeting_stt_active_sessions',
    'Number of active transcription sessions'
)

# Service info
SERVICE_INFO = Info(
    'meeting_stt_service',
    'Service information'
)


def setup_metrics(service_name: str, service_version: str = "1.0.0"):
    """
    Setup Prometheus metrics for a service.

    Args:
        service_name: Name of the service
        service_version: Version string
    """
    global _metrics_initialized

    if _metrics_initialized:
        return

    try:
        SERVICE_INFO.info({
            'service': service_name,
            'version': service_version,
            'environment': os.getenv('DEPLOYMENT_ENV', 'development')
        })
        _metrics_initialized = True
        logger.info(f"✅ Prometheus metrics initialized for {service_name}")
    except ValueError as e:
        logger.error(f"Failed to setup metrics: {e}")


def get_metrics_response():
    """
    Get Prometheus metrics as HTTP response content.

    Returns:
        Tuple of (content_bytes, content_type) for HTTP response
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


# =============================================================================
# Metric Recording Utilities
# =============================================================================

def record_frame_rejected(reason: str):
    """Record an audio frame rejected by the gate."""
    AUDIO_FRAMES_REJECTED.labels(reason=reason).inc()


def record_segment_flushed():
    SEGMENTS_FLUSHED.inc()


def record_segment_dropped(transport: str, count: int = 1):
    """Record voice segments discarded by a transport."""
    SEGMENTS_DROPPED.labels(transport=transport).inc(count)


def record_recognition_event(outcome: str):
    """Record a recognition event outcome (folded, redundant, interim, rejected)."""
    RECOGNITION_EVENTS.labels(outcome=outcome).inc()


def record_reconnect_attempt(result: str):
    RECONNECT_ATTEMPTS.labels(result=result).inc()


def record_state_transition(from_state: str, to_state: str):
    STATE_TRANSITIONS.labels(from_state=from_state, to_state=to_state).inc()


def record_store_write(status: str, duration_seconds: Optional[float] = None):
    """Record a transcript store write and, optionally, its latency."""
    STORE_WRITES.labels(status=status).inc()
    if duration_seconds is not None:
        STORE_WRITE_DURATION.observe(duration_seconds)


def set_active_sessions(count: int):
    """Set the number of active sessions."""
    ACTIVE_SESSIONS.set(count)


# =============================================================================
# Context Manager for Timing
# =============================================================================

class MetricTimer:
    """Context manager for timing operations and recording to metrics."""

    def __init__(
        self,
        histogram,
        labels: Dict[str, str] = None
    ):
        self.histogram = histogram
        self.labels = labels or {}
        self.start_time = None
        self.duration = None

    def _observe(self):
        if self.start_time:
            self.duration = time.time() - self.start_time
            if self.labels:
                self.histogram.labels(**self.labels).observe(self.duration)
            else:
                self.histogram.observe(self.duration)

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, *args):
        self._observe()

    async def __aenter__(self):
        self.start_time = time.time()
        return self

    async def __aexit__(self, *args):
        self._observe()
