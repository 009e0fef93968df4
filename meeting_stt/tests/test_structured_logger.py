"""
Tests for the JSON session event lines.
"""

import json
import logging

import pytest

from meeting_stt.structured_logger import StructuredLogger


@pytest.fixture
def slog():
    return StructuredLogger(logging.getLogger("meeting_stt.tests.slog"))


def records(caplog):
    return [json.loads(record.getMessage()) for record in caplog.records]


class TestStructuredLogger:

    def test_state_transition_is_flat_and_keyed_by_session(self, slog, caplog):
        caplog.set_level(logging.DEBUG, logger="meeting_stt.tests.slog")

        slog.state_transition("meet-1", "connected", "reconnecting", "transport_closed", data={"attempts": 2})

        line = records(caplog)[0]
        assert line["session"] == "meet-1"
        assert line["kind"] == "state"
        assert line["from"] == "connected"
        assert line["to"] == "reconnecting"
        assert line["attempts"] == 2
        assert caplog.records[0].levelno == logging.WARNING

    def test_caller_fields_do_not_replace_envelope(self, slog, caplog):
        caplog.set_level(logging.DEBUG, logger="meeting_stt.tests.slog")

        slog.event("meet-1", "session_stopped", "stopped", data={"session": "other", "chars": 12})

        line = records(caplog)[0]
        assert line["session"] == "meet-1"
        assert line["field_session"] == "other"
        assert line["chars"] == 12

    def test_latency_is_debug_and_skipped_when_disabled(self, slog, caplog):
        caplog.set_level(logging.INFO, logger="meeting_stt.tests.slog")

        slog.latency_recorded("meet-1", "backend_connect", 12.34)
        assert caplog.records == []

        caplog.set_level(logging.DEBUG, logger="meeting_stt.tests.slog")
        slog.latency_recorded("meet-1", "backend_connect", 12.34, extra={"attempts": 1})

        line = records(caplog)[0]
        assert line["duration_ms"] == 12.3
        assert line["attempts"] == 1

    def test_error_carries_type_and_unserializable_values(self, slog, caplog):
        caplog.set_level(logging.DEBUG, logger="meeting_stt.tests.slog")

        slog.error(None, "exhausted_retries", "gave up", data={"cause": OSError("refused")})

        line = records(caplog)[0]
        assert line["session"] == "-"
        assert line["error_type"] == "exhausted_retries"
        assert line["cause"] == "refused"
        assert caplog.records[0].levelno == logging.ERROR
