"""
Tests for Prometheus metric helpers.
"""

import asyncio

import pytest
from prometheus_client import REGISTRY

from shared import observability
from shared.observability import (
    MetricTimer,
    STORE_WRITE_DURATION,
    get_metrics_response,
    record_recognition_event,
    record_segment_dropped,
    record_state_transition,
    set_active_sessions,
    setup_metrics,
)


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricHelpers:

    def test_segment_drops_are_labelled_by_transport(self):
        before = sample("meeting_stt_segments_dropped_total", {"transport": "socket"})

        record_segment_dropped("socket")
        record_segment_dropped("socket", count=2)

        assert sample("meeting_stt_segments_dropped_total", {"transport": "socket"}) == before + 3

    def test_recognition_outcomes(self):
        before = sample("meeting_stt_recognition_events_total", {"outcome": "folded"})
        record_recognition_event("folded")
        assert sample("meeting_stt_recognition_events_total", {"outcome": "folded"}) == before + 1

    def test_state_transitions(self):
        labels = {"from_state": "connected", "to_state": "reconnecting"}
        before = sample("meeting_stt_state_transitions_total", labels)
        record_state_transition("connected", "reconnecting")
        assert sample("meeting_stt_state_transitions_total", labels) == before + 1

    def test_active_sessions_gauge(self):
        set_active_sessions(3)
        assert sample("meeting_stt_active_sessions") == 3
        set_active_sessions(0)

    def test_setup_is_idempotent(self, monkeypatch):
        monkeypatch.setattr(observability, "_metrics_initialized", False)
        monkeypatch.delenv("DEPLOYMENT_ENV", raising=False)

        setup_metrics("meeting-stt", "1.0.0")
        setup_metrics("other", "9.9.9")

        assert observability._metrics_initialized
        assert sample(
            "meeting_stt_service_info",
            {"service": "meeting-stt", "version": "1.0.0", "environment": "development"},
        ) == 1.0

    def test_metrics_response(self):
        content, content_type = get_metrics_response()
        assert b"meeting_stt_store_writes_total" in content
        assert content_type.startswith("text/plain")


class TestMetricTimer:

    def test_sync_timer_observes_duration(self):
        before = sample("meeting_stt_store_write_duration_seconds_count")

        with MetricTimer(STORE_WRITE_DURATION) as timer:
            pass

        assert timer.duration is not None
        assert sample("meeting_stt_store_write_duration_seconds_count") == before + 1

    @pytest.mark.asyncio
    async def test_async_timer_observes_duration(self):
        timer = MetricTimer(STORE_WRITE_DURATION)

        async with timer:
            await asyncio.sleep(0.01)

        assert timer.duration >= 0.01
