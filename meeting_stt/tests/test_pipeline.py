"""
End-to-end tests for TranscriptionPipeline with scripted transports.
"""

import asyncio
import dataclasses
import json

import pytest
import pytest_asyncio

from meeting_stt.models import ConnectionState
from meeting_stt.pipeline import TranscriptionPipeline

from .fakes import TransportFactory, pcm_frame, recognition_message, wait_for_condition


@pytest_asyncio.fixture
async def pipeline(test_config, store, transport_factory):
    pipeline = TranscriptionPipeline(test_config, store, transport_factory=transport_factory)
    yield pipeline
    await pipeline.stop()


async def start_connected(pipeline, meeting_id="meet-1"):
    await pipeline.start(meeting_id, call_id="call-1", participants=["Alice", "Bob"])
    await wait_for_condition(lambda: pipeline.supervisor.is_connected)
    return pipeline.supervisor.transport


class TestTranscriptionPipeline:

    @pytest.mark.asyncio
    async def test_start_creates_session_and_connects(self, pipeline):
        await start_connected(pipeline)

        assert pipeline.is_running
        assert pipeline.session_id == "meet-1"
        assert pipeline.session.state == ConnectionState.CONNECTED
        assert pipeline.session.participants == {"Alice", "Bob"}

    @pytest.mark.asyncio
    async def test_final_events_fold_into_transcript_and_persist(self, pipeline, store):
        transport = await start_connected(pipeline)

        transport.emit(recognition_message("hello wor"))
        transport.emit(recognition_message("hello world"))
        await wait_for_condition(lambda: pipeline.session.transcript == "hello world")
        await wait_for_condition(lambda: store.writes_ok == 2)

        saved = await store.get_snapshot("meet-1")
        assert saved.text == "hello world"
        assert saved.metadata["display_names"] == ["Alice", "Bob"]
        assert saved.metadata["voice_id"] == "v-1"
        assert pipeline.session.events_folded == 2

    @pytest.mark.asyncio
    async def test_interim_and_redundant_events_do_not_write(self, pipeline, store):
        transport = await start_connected(pipeline)

        transport.emit(recognition_message("hel", slice_type=1))
        transport.emit(recognition_message("hello"))
        transport.emit(recognition_message("hello"))
        transport.emit(recognition_message("字幕由 Amara.org 社群提供"))
        await wait_for_condition(lambda: pipeline.session.transcript == "hello")
        await wait_for_condition(lambda: pipeline._events.empty() and not pipeline._writes)

        assert pipeline.session.events_folded == 1
        assert store.writes_ok == 1
        assert len(await store.get_history("meet-1")) == 1

    @pytest.mark.asyncio
    async def test_voiced_audio_reaches_transport(self, pipeline):
        transport = await start_connected(pipeline)

        assert pipeline.submit_audio(pcm_frame(3000)) is True
        await wait_for_condition(lambda: len(transport.sent) == 1)

        assert transport.sent[0] == pcm_frame(3000)

    @pytest.mark.asyncio
    async def test_odd_length_frame_is_rejected_without_raising(self, pipeline):
        await start_connected(pipeline)

        assert pipeline.submit_audio(b"\x00\x01\x02") is False
        assert pipeline.gate.frames_rejected == 1

    def test_submit_before_start_is_refused(self, test_config, store):
        pipeline = TranscriptionPipeline(test_config, store, transport_factory=TransportFactory(test_config))
        assert pipeline.submit_audio(pcm_frame(3000)) is False

    @pytest.mark.asyncio
    async def test_transport_drop_triggers_reconnect(self, pipeline, transport_factory):
        first = await start_connected(pipeline)

        first.drop(RuntimeError("socket reset"))
        await wait_for_condition(
            lambda: pipeline.supervisor.transport is not first and pipeline.supervisor.is_connected
        )

        second = pipeline.supervisor.transport
        second.emit(recognition_message("after reconnect"))
        await wait_for_condition(lambda: pipeline.session.transcript == "after reconnect")
        assert first.is_closed
        assert pipeline.supervisor.reconnect_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_degrade_then_manual_reconnect(self, test_config, store):
        factory = TransportFactory(test_config, failures=100)
        pipeline = TranscriptionPipeline(test_config, store, transport_factory=factory)
        await pipeline.start("meet-1")

        await wait_for_condition(lambda: pipeline.session.state == ConnectionState.FAILED)
        # Audio is still accepted by the gate; segments are dropped downstream
        assert pipeline.submit_audio(pcm_frame(3000)) is True
        await wait_for_condition(lambda: pipeline.supervisor.dropped_segments >= 1)

        factory.failures = 0
        assert await pipeline.reconnect() is True
        assert pipeline.session.state == ConnectionState.CONNECTED
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_stop_writes_final_snapshot_and_closes(self, pipeline, store, fake_redis):
        transport = await start_connected(pipeline)
        transport.emit(recognition_message("good morning"))
        await wait_for_condition(lambda: pipeline.session.transcript == "good morning")

        await pipeline.stop()

        assert not pipeline.is_running
        assert transport.is_closed
        saved = await store.get_snapshot("meet-1")
        assert saved.text == "good morning"
        assert saved.metadata["final"] is True
        summary = json.loads(fake_redis.strings["session:meet-1:summary"])
        assert summary["status"] == "Closed"
        assert pipeline.session.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_folds_events_still_queued(self, pipeline):
        transport = await start_connected(pipeline)
        await pipeline._cancel_task("events")

        transport.emit(recognition_message("late words"))
        await pipeline.stop()

        assert pipeline.session.transcript == "late words"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_start_twice_is_ignored(self, pipeline, transport_factory):
        session = await pipeline.start("meet-1")
        assert await pipeline.start("meet-2") is session

        await pipeline.stop()
        await pipeline.stop()
        assert not pipeline.is_running

    @pytest.mark.asyncio
    async def test_update_participants(self, pipeline):
        await pipeline.start("meet-1")
        pipeline.update_participants(["Carol", ""])

        assert pipeline.session.participants == {"Carol"}

    @pytest.mark.asyncio
    async def test_stats(self, pipeline):
        await start_connected(pipeline)
        stats = pipeline.stats()

        assert stats["running"] is True
        assert stats["supervisor"]["state"] == "connected"
        assert stats["session"]["meeting_id"] == "meet-1"

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_manual_reconnect(self, pipeline, transport_factory):
        await start_connected(pipeline)
        transport_factory.open_delay = 5.0

        reconnecting = asyncio.create_task(pipeline.reconnect())
        await wait_for_condition(
            lambda: len(transport_factory.built) == 2 and transport_factory.latest.open_calls == 1
        )
        await pipeline.stop()

        assert await reconnecting is False
        late = transport_factory.latest
        assert late.is_closed
        assert not late.is_connected
        assert "reconnect" not in pipeline._tasks

    @pytest.mark.asyncio
    async def test_final_segment_is_kept_when_backend_is_down_at_stop(self, test_config, store):
        config = dataclasses.replace(test_config, flush_interval_s=60.0, health_poll_interval_s=60.0)
        pipeline = TranscriptionPipeline(config, store, transport_factory=TransportFactory(config))
        transport = await start_connected(pipeline)
        transport._live = False

        assert pipeline.submit_audio(pcm_frame(3000)) is True
        await pipeline.stop()

        assert pipeline.supervisor.dropped_segments == 0
        assert transport.take_pending() == [pcm_frame(3000)]
