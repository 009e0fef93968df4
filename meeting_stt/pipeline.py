"""
Transcription pipeline orchestrator.

Wires AudioGate -> ConnectionSupervisor/StreamingTransport ->
TranscriptAccumulator -> TranscriptStore for one session and owns its
lifecycle.

Tasks owned per session:
    connect   initial supervisor.start() (in-flight backend start)
    flush     AudioGate flush loop, hands segments to the supervisor
    events    single consumer of the session's inbound event channel
    health    supervisor health poll
    reconnect manual reconnect requested through reconnect()

Transports never touch the transcript. They put TextReceived and
TransportClosed events on one asyncio.Queue, and the events task is the
only writer of session.transcript.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Set, Union

from shared.observability import record_recognition_event

from .accumulator import TranscriptAccumulator
from .audio_gate import AudioGate
from .config import TranscriberConfig
from .errors import ExhaustedRetryError, FormatError
from .models import AudioFrame, ConnectionState, RecognitionEvent, Session, VoiceSegment
from .store import TranscriptStore
from .structured_logger import StructuredLogger
from .supervisor import ConnectionSupervisor
from .transports import SpeechController, StreamingTransport, create_transport

logger = logging.getLogger(__name__)

# Signature: (session_id) -> new unconnected transport
TransportFactory = Callable[[str], StreamingTransport]


@dataclass(frozen=True)
class TextReceived:
    event: RecognitionEvent


@dataclass(frozen=True)
class TransportClosed:
    transport: StreamingTransport
    error: Optional[BaseException] = None


PipelineEvent = Union[TextReceived, TransportClosed]


class TranscriptionPipeline:
    """Real-time transcription for one call session."""

    def __init__(
        self,
        config: TranscriberConfig,
        store: TranscriptStore,
        transport_factory: Optional[TransportFactory] = None,
        controller: Optional[SpeechController] = None,
        accumulator: Optional[TranscriptAccumulator] = None,
    ):
        self.config = config
        self.store = store
        self.controller = controller
        self.accumulator = accumulator or TranscriptAccumulator()
        self._transport_factory = transport_factory
        self._slog = StructuredLogger(logger)

        self.session: Optional[Session] = None
        self.gate: Optional[AudioGate] = None
        self.supervisor: Optional[ConnectionSupervisor] = None

        self._events: "asyncio.Queue[PipelineEvent]" = asyncio.Queue()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._writes: Set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def _make_transport(self, session_id: str) -> StreamingTransport:
        if self._transport_factory is not None:
            return self._transport_factory(session_id)
        return create_transport(self.config, session_id=session_id, controller=self.controller)

    async def start(
        self,
        meeting_id: str,
        call_id: Optional[str] = None,
        participants: Iterable[str] = (),
    ) -> Session:
        """
        Create the session and launch its tasks. Returns without waiting for
        the backend; audio submitted meanwhile is buffered by the transport.
        """
        if self._running:
            logger.warning(f"[{self.session_id}] Pipeline already running, start ignored")
            return self.session

        session = Session(meeting_id=meeting_id, call_id=call_id)
        session.set_participants(participants)
        self.session = session
        self.gate = AudioGate(self.config, session_id=session.session_id)
        self.supervisor = ConnectionSupervisor(
            self.config,
            transport_factory=lambda: self._make_transport(session.session_id),
            session_id=session.session_id,
            on_text=self._on_text,
            on_transport_closed=self._on_transport_closed,
            on_state_change=self._on_state_change,
            structured_logger=self._slog,
        )
        self._events = asyncio.Queue()
        self._running = True

        logger.info("=" * 70)
        logger.info(f"🎙️ Transcription session started: {meeting_id} (call: {call_id})")
        logger.info(f"   Backend: {self.config.backend} | Flush: {self.config.flush_interval_s}s")
        logger.info("=" * 70)
        self._slog.event(session.session_id, "session_started", "Transcription session started",
                         data={"call_id": call_id, "backend": self.config.backend})

        self._tasks["connect"] = asyncio.create_task(self._connect(), name=f"connect_{meeting_id}")
        self._tasks["flush"] = asyncio.create_task(
            self.gate.run(self._send_segment), name=f"flush_{meeting_id}"
        )
        self._tasks["events"] = asyncio.create_task(self._event_loop(), name=f"events_{meeting_id}")
        self._tasks["health"] = asyncio.create_task(
            self.supervisor.run_health_poll(), name=f"health_{meeting_id}"
        )
        return session

    async def _connect(self) -> None:
        start_time = time.time()
        try:
            await self.supervisor.start()
        except ExhaustedRetryError as e:
            self._report_exhausted(e)
            return
        self._slog.latency_recorded(
            self.session_id,
            "backend_connect",
            (time.time() - start_time) * 1000,
            extra={"attempts": self.supervisor.connect_attempts},
        )

    async def stop(self) -> None:
        """
        Tear the session down. Every step runs even if an earlier one failed:
        flush loop and final audio flush, health poll, in-flight start, event
        loop, transport close (which ends the receive loop), pending folds,
        outstanding store writes, final snapshot and closed summary.
        """
        if not self._running:
            return
        self._running = False
        session = self.session
        session_id = session.session_id

        await self._cancel_task("flush")
        try:
            segment = self.gate.flush()
            if segment is not None:
                # Buffered by the transport if it is not connected yet
                await self.supervisor.send_audio(segment.payload)
        except Exception as e:
            logger.warning(f"[{session_id}] ⚠️ Final audio flush failed: {e}")

        await self._cancel_task("health")
        await self._cancel_task("connect")
        await self._cancel_task("reconnect")
        # A reconnect driven by the event loop is also an in-flight start
        await self._cancel_task("events")
        try:
            await self.supervisor.stop()
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Error closing transport: {e}")

        try:
            self._drain_events()
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Error folding remaining events: {e}")

        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

        try:
            await self.store.save_snapshot(session_id, session.snapshot({"final": True}))
            await self.store.mark_closed(session_id)
        except Exception as e:
            logger.error(f"[{session_id}] ❌ Final snapshot failed: {e}")

        self._slog.event(session_id, "session_stopped", "Transcription session stopped", data=session.info())
        logger.info(
            f"[{session_id}] 🛑 Session stopped | transcript: {len(session.transcript)} chars | "
            f"events folded: {session.events_folded}"
        )

    async def _cancel_task(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"[{self.session_id}] ⚠️ Task '{name}' ended with error: {e}")

    # ------------------------------------------------------------------ #
    # Call-layer inputs
    # ------------------------------------------------------------------ #

    def submit_audio(self, frame: Union[AudioFrame, bytes], timestamp: Optional[float] = None) -> bool:
        """
        Hand one captured frame to the voice gate. Safe to call from the call
        layer's audio thread; never raises.

        Returns:
            bool: False if the pipeline is not running or the frame was rejected
        """
        if not self._running or self.gate is None:
            return False
        if not isinstance(frame, AudioFrame):
            frame = AudioFrame(data=bytes(frame), timestamp=timestamp or time.time())
        try:
            self.gate.submit(frame)
        except FormatError as e:
            logger.warning(f"[{self.session_id}] ⚠️ Dropped audio frame: {e}")
            return False
        except Exception as e:
            logger.error(f"[{self.session_id}] ❌ Audio gate error: {e}")
            return False
        return True

    def update_participants(self, names: Iterable[str]) -> None:
        if self.session is not None:
            self.session.set_participants(names)

    async def reconnect(self) -> bool:
        """Manual reconnect; allowed after the session went FAILED."""
        if not self._running or self.supervisor is None:
            return False
        task = self._tasks.get("reconnect")
        if task is None or task.done():
            task = asyncio.create_task(self._manual_reconnect(), name=f"reconnect_{self.session_id}")
            self._tasks["reconnect"] = task
        try:
            # stop() owns the task; a caller going away must not cancel it
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    async def _manual_reconnect(self) -> bool:
        try:
            await self.supervisor.manual_reconnect()
        except ExhaustedRetryError as e:
            self._report_exhausted(e)
            return False
        return True

    # ------------------------------------------------------------------ #
    # Transport callbacks (event loop thread)
    # ------------------------------------------------------------------ #

    def _on_text(self, event: RecognitionEvent) -> None:
        self._events.put_nowait(TextReceived(event))

    def _on_transport_closed(self, transport: StreamingTransport, error: Optional[BaseException]) -> None:
        self._events.put_nowait(TransportClosed(transport, error))

    def _on_state_change(self, old_state: ConnectionState, new_state: ConnectionState) -> None:
        if self.session is not None:
            self.session.state = new_state

    async def _send_segment(self, segment: VoiceSegment) -> None:
        await self.supervisor.send_audio(segment.payload)

    # ------------------------------------------------------------------ #
    # Event channel
    # ------------------------------------------------------------------ #

    async def _event_loop(self) -> None:
        while True:
            item = await self._events.get()
            try:
                if isinstance(item, TextReceived):
                    self._fold(item.event)
                elif isinstance(item, TransportClosed):
                    await self._recover(item)
            except Exception as e:
                logger.error(f"[{self.session_id}] ❌ Error handling {type(item).__name__}: {e}")
            finally:
                self._events.task_done()

    def _drain_events(self) -> None:
        """Fold text events still queued at shutdown; closures are moot by now."""
        while True:
            try:
                item = self._events.get_nowait()
            except asyncio.QueueEmpty:
                return
            if isinstance(item, TextReceived):
                self._fold(item.event)

    async def _recover(self, item: TransportClosed) -> None:
        try:
            await self.supervisor.handle_failure("transport_closed", transport=item.transport)
        except ExhaustedRetryError as e:
            self._report_exhausted(e)

    def _report_exhausted(self, error: ExhaustedRetryError) -> None:
        self._slog.error(
            self.session_id,
            "exhausted_retries",
            str(error),
            data={"attempts": error.attempts},
        )
        logger.error(f"[{self.session_id}] ❌ Recognition unavailable; audio will be dropped until manual reconnect")

    def _fold(self, event: RecognitionEvent) -> None:
        session = self.session
        if not event.is_final:
            record_recognition_event("interim")
            return

        updated, appended = self.accumulator.fold(session.transcript, event.text)
        if not appended:
            record_recognition_event("redundant")
            return

        session.transcript = updated
        session.events_folded += 1
        session.last_event_at = event.received_at
        record_recognition_event("folded")
        logger.info(f"[{session.session_id}] 📝 +'{appended}' | total: {len(updated)} chars")

        self._schedule_write(session.snapshot(event.provenance()))

    def _schedule_write(self, snapshot) -> None:
        task = asyncio.create_task(self.store.save_snapshot(snapshot.session_id, snapshot))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def stats(self) -> dict:
        return {
            "running": self._running,
            "session": self.session.info() if self.session else None,
            "gate": self.gate.stats() if self.gate else None,
            "supervisor": self.supervisor.stats() if self.supervisor else None,
            "accumulator": self.accumulator.stats(),
            "pending_writes": len(self._writes),
        }
