"""
Tests for the call-layer adapter.
"""

import json

import pytest
import pytest_asyncio

from meeting_stt.call_handler import CallHandler
from meeting_stt.pipeline import TranscriptionPipeline

from .fakes import pcm_frame


@pytest_asyncio.fixture
async def handler(test_config, store, transport_factory):
    pipeline = TranscriptionPipeline(test_config, store, transport_factory=transport_factory)
    handler = CallHandler(pipeline, "meet-1", "call-1")
    yield handler
    await pipeline.stop()


class TestCallHandler:

    @pytest.mark.asyncio
    async def test_established_starts_pipeline(self, handler):
        handler.on_participants_updated(added=[{"id": "p1", "display_name": "Alice"}])

        await handler.on_call_updated("connecting", "Established")

        assert handler.pipeline.is_running
        assert handler.pipeline.session.call_id == "call-1"
        assert handler.pipeline.session.participants == {"Alice"}

    @pytest.mark.asyncio
    async def test_terminated_after_established_stops_pipeline(self, handler):
        await handler.on_call_updated("", "established")
        await handler.on_call_updated("established", "terminated")

        assert not handler.pipeline.is_running
        assert handler.call_state == "terminated"

    @pytest.mark.asyncio
    async def test_terminated_without_established_is_ignored(self, handler):
        await handler.on_call_updated("connecting", "terminated")

        assert not handler.pipeline.is_running
        assert handler.pipeline.session is None

    @pytest.mark.asyncio
    async def test_roster_changes_update_session_names(self, handler):
        await handler.on_call_updated("", "established")

        handler.on_participants_updated(added=[
            {"id": "p1", "display_name": "Bob"},
            {"id": "p2", "display_name": "Alice"},
            {"id": "p3"},
            {"display_name": "no id"},
        ])
        handler.on_participants_updated(removed=[{"id": "p1"}])

        assert handler.display_names() == ["Alice"]
        assert handler.pipeline.session.participants == {"Alice"}
        assert len(handler.participants) == 2

    @pytest.mark.asyncio
    async def test_malformed_roster_entries_are_skipped(self, handler):
        await handler.on_call_updated("", "established")

        handler.on_participants_updated(added=["alice", None, {"id": "p1", "display_name": "Bob"}])
        handler.on_participants_updated(removed=["p1", 7])

        assert handler.display_names() == ["Bob"]
        assert handler.pipeline.is_running

    @pytest.mark.asyncio
    async def test_audio_is_forwarded_once_running(self, handler):
        assert handler.on_audio(pcm_frame(3000)) is False

        await handler.on_call_updated("", "established")

        assert handler.on_audio(pcm_frame(3000)) is True
        assert handler.on_audio(b"\x01") is False

    @pytest.mark.asyncio
    async def test_meeting_info(self, handler):
        handler.on_participants_updated(added=[{"id": "p1", "display_name": "Alice"}])

        info = json.loads(handler.meeting_info())

        assert info["meeting_id"] == "meet-1"
        assert info["call_id"] == "call-1"
        assert info["participants_count"] == 1
