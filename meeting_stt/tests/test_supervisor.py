"""
Tests for ConnectionSupervisor reconnect policy and state machine.
"""

import asyncio

import pytest
import pytest_asyncio

from meeting_stt.errors import ExhaustedRetryError
from meeting_stt.models import ConnectionState
from meeting_stt.supervisor import ConnectionSupervisor

from .fakes import TransportFactory, recognition_message, wait_for_condition


def make_supervisor(config, factory, **kwargs):
    return ConnectionSupervisor(config, transport_factory=factory, session_id="sup_test", **kwargs)


class TestConnectionSupervisor:

    @pytest_asyncio.fixture
    async def supervisor(self, test_config, transport_factory):
        supervisor = make_supervisor(test_config, transport_factory)
        yield supervisor
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_start_connects(self, supervisor, transport_factory):
        await supervisor.start()

        assert supervisor.state == ConnectionState.CONNECTED
        assert supervisor.is_connected
        assert supervisor.transport is transport_factory.latest
        assert supervisor.connect_attempts == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, supervisor, transport_factory):
        await supervisor.start()
        await supervisor.start()

        assert len(transport_factory.built) == 1

    @pytest.mark.asyncio
    async def test_start_retries_with_fresh_transports(self, test_config):
        factory = TransportFactory(test_config, failures=2)
        supervisor = make_supervisor(test_config, factory)

        await supervisor.start()

        assert supervisor.state == ConnectionState.CONNECTED
        assert supervisor.failed_attempts == 2
        assert all(t.is_closed for t in factory.built[:2])
        assert supervisor.transport is factory.built[2]
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_exhausted_attempts_reach_failed_and_stop_retrying(self, test_config):
        """After max attempts the state is FAILED and the health poll does not retry"""
        factory = TransportFactory(test_config, failures=100)
        supervisor = make_supervisor(test_config, factory)

        with pytest.raises(ExhaustedRetryError) as exc_info:
            await supervisor.start()

        assert exc_info.value.attempts == test_config.max_reconnect_attempts
        assert supervisor.state == ConnectionState.FAILED
        assert supervisor.connect_attempts == test_config.max_reconnect_attempts

        poll = asyncio.create_task(supervisor.run_health_poll(interval=0.01))
        await asyncio.sleep(0.1)
        poll.cancel()
        with pytest.raises(asyncio.CancelledError):
            await poll

        assert supervisor.connect_attempts == test_config.max_reconnect_attempts
        assert supervisor.state == ConnectionState.FAILED
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_audio_is_dropped_while_failed(self, test_config):
        supervisor = make_supervisor(test_config, TransportFactory(test_config, failures=100))
        with pytest.raises(ExhaustedRetryError):
            await supervisor.start()

        assert await supervisor.send_audio(b"\x00\x01") is False
        assert supervisor.dropped_segments == 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_handle_failure_replaces_transport(self, supervisor, transport_factory):
        await supervisor.start()
        first = supervisor.transport
        first.drop(RuntimeError("socket reset"))

        await supervisor.handle_failure("receive_error", transport=first)

        assert supervisor.state == ConnectionState.CONNECTED
        assert supervisor.transport is not first
        assert first.is_closed
        assert supervisor.reconnect_count == 1

    @pytest.mark.asyncio
    async def test_failure_from_replaced_transport_is_ignored(self, supervisor):
        await supervisor.start()
        stale = supervisor.transport
        await supervisor.handle_failure("receive_error", transport=stale)
        current = supervisor.transport

        await supervisor.handle_failure("receive_error", transport=stale)

        assert supervisor.transport is current
        assert supervisor.reconnect_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_exhaustion_reaches_failed(self, test_config, transport_factory):
        supervisor = make_supervisor(test_config, transport_factory)
        await supervisor.start()
        transport_factory.failures = 100

        with pytest.raises(ExhaustedRetryError):
            await supervisor.handle_failure("health_poll")

        assert supervisor.state == ConnectionState.FAILED
        # start attempt + max reconnect attempts
        assert supervisor.connect_attempts == 1 + test_config.max_reconnect_attempts
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_buffered_audio_carries_over_to_new_transport(self, supervisor):
        await supervisor.start()
        old = supervisor.transport
        old.drop()
        await supervisor.send_audio(b"\x01\x01")
        await supervisor.send_audio(b"\x02\x02")

        await supervisor.handle_failure("health_poll", transport=old)

        assert supervisor.transport.sent == [b"\x01\x01", b"\x02\x02"]

    @pytest.mark.asyncio
    async def test_audio_sent_while_old_transport_closes_reaches_replacement(self, supervisor, test_config):
        await supervisor.start()
        old = supervisor.transport
        old.release_delay = 0.2
        old.drop()
        await supervisor.send_audio(b"\x01\x01")

        recovery = asyncio.create_task(supervisor.handle_failure("transport_closed", transport=old))
        await wait_for_condition(lambda: supervisor.transport is None)

        assert await supervisor.send_audio(b"\x02\x02") is True
        await recovery

        assert supervisor.dropped_segments == 0
        assert supervisor.transport is not old
        assert supervisor.transport.sent == [b"\x01\x01", b"\x02\x02"]

    @pytest.mark.asyncio
    async def test_handover_buffer_is_bounded(self, supervisor, test_config):
        await supervisor.start()
        old = supervisor.transport
        old.release_delay = 0.2
        old.drop()

        recovery = asyncio.create_task(supervisor.handle_failure("transport_closed", transport=old))
        await wait_for_condition(lambda: supervisor.transport is None)

        capacity = test_config.pending_capacity
        results = [await supervisor.send_audio(bytes([i, i])) for i in range(capacity + 2)]
        await recovery

        assert results == [True] * capacity + [False] * 2
        assert supervisor.dropped_segments == 2
        assert supervisor.transport.sent == [bytes([i, i]) for i in range(capacity)]

    @pytest.mark.asyncio
    async def test_health_poll_reconnects_dead_transport(self, supervisor):
        await supervisor.start()
        first = supervisor.transport
        first.drop()

        poll = asyncio.create_task(supervisor.run_health_poll(interval=0.01))
        await wait_for_condition(lambda: supervisor.transport is not first and supervisor.is_connected)
        poll.cancel()
        with pytest.raises(asyncio.CancelledError):
            await poll

        assert supervisor.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_manual_reconnect_from_failed(self, test_config):
        factory = TransportFactory(test_config, failures=test_config.max_reconnect_attempts)
        supervisor = make_supervisor(test_config, factory)
        with pytest.raises(ExhaustedRetryError):
            await supervisor.start()

        await supervisor.manual_reconnect()

        assert supervisor.state == ConnectionState.CONNECTED
        assert supervisor.is_connected
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_manual_reconnect_closes_old_before_building_new(self, test_config):
        events = []

        class RecordingFactory(TransportFactory):
            def __call__(self, session_id="test"):
                events.append(("build", len(self.built)))
                return super().__call__(session_id)

        factory = RecordingFactory(test_config)
        supervisor = make_supervisor(test_config, factory)
        await supervisor.start()
        old = supervisor.transport
        original_close = old.close

        async def recording_close():
            events.append(("close", 0))
            await original_close()

        old.close = recording_close

        await supervisor.manual_reconnect()

        assert events == [("build", 0), ("close", 0), ("build", 1)]
        assert old.is_closed
        assert supervisor.transport is not old
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_transitions_are_reported(self, test_config, transport_factory):
        transitions = []
        supervisor = make_supervisor(
            test_config,
            transport_factory,
            on_state_change=lambda old, new: transitions.append((old.value, new.value)),
        )

        await supervisor.start()
        await supervisor.handle_failure("health_poll")
        await supervisor.stop()

        assert transitions == [
            ("disconnected", "connecting"),
            ("connecting", "connected"),
            ("connected", "reconnecting"),
            ("reconnecting", "connected"),
            ("connected", "disconnected"),
        ]

    @pytest.mark.asyncio
    async def test_transport_closed_callback_and_text_passthrough(self, test_config, transport_factory):
        closed = []
        texts = []
        supervisor = make_supervisor(
            test_config,
            transport_factory,
            on_text=texts.append,
            on_transport_closed=lambda transport, error: closed.append((transport, error)),
        )
        await supervisor.start()
        transport = supervisor.transport

        transport.emit(recognition_message("hello"))
        error = RuntimeError("gone")
        transport.drop(error)

        assert [event.text for event in texts] == ["hello"]
        assert closed == [(transport, error)]
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_transport(self, supervisor):
        await supervisor.start()
        transport = supervisor.transport

        await supervisor.stop()

        assert transport.is_closed
        assert supervisor.transport is None
        assert supervisor.state == ConnectionState.DISCONNECTED
        assert await supervisor.send_audio(b"\x00\x00") is False
