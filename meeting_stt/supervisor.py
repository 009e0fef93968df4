"""
Connection supervisor for a session's recognition transport.

Owns the reconnect policy, the connection state machine and the periodic
health poll. The session holds exactly one live transport at a time; on
reconnect the old one is closed before its replacement is built, and any
audio still buffered in it is carried over.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED | FAILED
    CONNECTED -> RECONNECTING -> CONNECTED | FAILED
    FAILED is terminal for automatic retries; manual_reconnect() starts over.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, List, Optional

from shared.observability import (
    record_reconnect_attempt,
    record_segment_dropped,
    record_state_transition,
)

from .config import TranscriberConfig
from .errors import BackendConnectionError, ExhaustedRetryError
from .models import ConnectionState
from .structured_logger import StructuredLogger
from .transports.base import StreamingTransport, TextCallback

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], StreamingTransport]
# Signature: (transport, error) -> None
TransportClosedCallback = Callable[[StreamingTransport, Optional[BaseException]], None]
# Signature: (old_state, new_state) -> None
StateCallback = Callable[[ConnectionState, ConnectionState], None]


class ConnectionSupervisor:
    """Keeps one recognition transport connected for a session."""

    def __init__(
        self,
        config: TranscriberConfig,
        transport_factory: TransportFactory,
        session_id: str,
        on_text: Optional[TextCallback] = None,
        on_transport_closed: Optional[TransportClosedCallback] = None,
        on_state_change: Optional[StateCallback] = None,
        structured_logger: Optional[StructuredLogger] = None,
    ):
        self.config = config
        self.session_id = session_id
        self.max_attempts = config.max_reconnect_attempts
        self.retry_delay = config.reconnect_delay_s

        self._transport_factory = transport_factory
        self._on_text = on_text
        self._on_transport_closed = on_transport_closed
        self._on_state_change = on_state_change
        self._slog = structured_logger or StructuredLogger(logger)

        self.state = ConnectionState.DISCONNECTED
        self.transport: Optional[StreamingTransport] = None
        self._lock = asyncio.Lock()
        self._stopping = False
        # Segments sent while the old transport closes and before the new one exists
        self._replacing = False
        self._handover: Deque[bytes] = deque()

        self.valid_transitions = {
            ConnectionState.DISCONNECTED: [ConnectionState.CONNECTING],
            ConnectionState.CONNECTING: [
                ConnectionState.CONNECTED, ConnectionState.FAILED, ConnectionState.DISCONNECTED,
            ],
            ConnectionState.CONNECTED: [ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED],
            ConnectionState.RECONNECTING: [
                ConnectionState.CONNECTED, ConnectionState.FAILED, ConnectionState.DISCONNECTED,
            ],
            ConnectionState.FAILED: [ConnectionState.DISCONNECTED],
        }

        # Metrics
        self.connect_attempts = 0
        self.failed_attempts = 0
        self.reconnect_count = 0
        self.dropped_segments = 0
        self.last_error: Optional[BaseException] = None
        self._connected_at: Optional[float] = None

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #

    def _transition(self, new_state: ConnectionState, trigger: str) -> bool:
        old_state = self.state
        if old_state == new_state:
            return True

        if new_state not in self.valid_transitions.get(old_state, []):
            logger.error(
                f"[{self.session_id}] ❌ INVALID TRANSITION: "
                f"{old_state.value.upper()} → {new_state.value.upper()} (trigger: {trigger})"
            )
            return False

        self.state = new_state
        record_state_transition(old_state.value, new_state.value)
        if self.config.log_state_transitions:
            self._slog.state_transition(
                self.session_id,
                old_state.value,
                new_state.value,
                trigger,
                data={"attempts": self.connect_attempts, "reconnects": self.reconnect_count},
            )

        if self._on_state_change is not None:
            try:
                self._on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"[{self.session_id}] ❌ Error in state change callback: {e}")
        return True

    @property
    def is_connected(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self.transport is not None
            and self.transport.is_connected
        )

    # ------------------------------------------------------------------ #
    # Transport handle
    # ------------------------------------------------------------------ #

    def _build_transport(self, carried: Optional[List[bytes]] = None) -> StreamingTransport:
        transport = self._transport_factory()
        if self._on_text is not None:
            transport.on_text(self._on_text)
        transport.on_closed(lambda error, t=transport: self._handle_transport_closed(t, error))
        if carried:
            transport.adopt_pending(carried)
        return transport

    async def _replace_transport(self) -> None:
        """Close the current transport fully, then install a fresh one with its buffered audio."""
        carried: List[bytes] = []
        self._replacing = True
        try:
            old, self.transport = self.transport, None
            if old is not None:
                carried = old.take_pending()
                try:
                    await old.close()
                except Exception as e:
                    logger.warning(f"[{self.session_id}] ⚠️ Error closing old transport: {e}")
            # Audio that arrived while the old transport was closing goes after its backlog
            carried.extend(self._handover)
            self._handover.clear()
            if self._stopping:
                return
            self.transport = self._build_transport(carried)
        finally:
            self._replacing = False

    def _handle_transport_closed(self, transport: StreamingTransport, error: Optional[BaseException]) -> None:
        if self._stopping or transport is not self.transport:
            return
        self.last_error = error
        logger.warning(
            f"[{self.session_id}] ⚠️ Transport reported closed "
            f"({type(error).__name__ if error else 'clean close'})"
        )
        if self._on_transport_closed is not None:
            self._on_transport_closed(transport, error)

    # ------------------------------------------------------------------ #
    # Connecting
    # ------------------------------------------------------------------ #

    async def _connect_with_retry(self, trigger: str) -> None:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            if self._stopping:
                return
            if self.transport is None or self.transport.is_closed:
                await self._replace_transport()

            self.connect_attempts += 1
            logger.info(f"[{self.session_id}] 🔌 Connect attempt {attempt}/{self.max_attempts} ({trigger})")
            try:
                await self.transport.connect()
            except BackendConnectionError as e:
                last_error = e
                self.last_error = e
                self.failed_attempts += 1
                record_reconnect_attempt("failure")
                self._slog.error(
                    self.session_id,
                    "connection",
                    f"Connect attempt {attempt}/{self.max_attempts} failed: {e}",
                    data={"trigger": trigger},
                )
                # A failed transport is not reused
                await self._replace_transport()
                if attempt < self.max_attempts and not self._stopping:
                    await asyncio.sleep(self.retry_delay)
                continue

            record_reconnect_attempt("success")
            self._connected_at = time.time()
            self._transition(ConnectionState.CONNECTED, trigger)
            return

        if self._stopping:
            return
        self._transition(ConnectionState.FAILED, "attempts_exhausted")
        logger.error(
            f"[{self.session_id}] ❌ Giving up after {self.max_attempts} attempts; "
            f"automatic reconnect disabled until manual reconnect"
        )
        raise ExhaustedRetryError(self.max_attempts, last_error)

    async def start(self) -> None:
        """
        Connect the session's transport.

        Raises:
            ExhaustedRetryError: every attempt failed; state is FAILED
        """
        async with self._lock:
            if self.is_connected:
                return
            self._stopping = False
            if self.transport is None or self.transport.is_closed:
                self.transport = self._build_transport()
            if self.state != ConnectionState.DISCONNECTED:
                self._transition(ConnectionState.DISCONNECTED, "start")
            self._transition(ConnectionState.CONNECTING, "start")
            await self._connect_with_retry("start")

    async def handle_failure(
        self,
        trigger: str,
        transport: Optional[StreamingTransport] = None,
    ) -> None:
        """
        React to a detected connection failure by reconnecting.

        `transport` identifies which transport failed; reports about a
        transport that has already been replaced are ignored.

        Raises:
            ExhaustedRetryError: the reconnect ceiling was reached; state is FAILED
        """
        async with self._lock:
            if self._stopping:
                return
            if transport is not None and transport is not self.transport:
                logger.debug(f"[{self.session_id}] Ignoring failure report from a replaced transport")
                return
            if self.state != ConnectionState.CONNECTED:
                logger.info(
                    f"[{self.session_id}] Failure ({trigger}) ignored in state {self.state.value}"
                )
                return

            self.reconnect_count += 1
            self._transition(ConnectionState.RECONNECTING, trigger)
            await self._replace_transport()
            await self._connect_with_retry(trigger)

    async def manual_reconnect(self) -> None:
        """
        Tear the current transport down and connect a new one. Allowed from
        any state, including FAILED.

        Raises:
            ExhaustedRetryError: every attempt failed; state is FAILED
        """
        async with self._lock:
            self._stopping = False
            logger.info(f"[{self.session_id}] 🔄 Manual reconnect requested (state={self.state.value})")
            self.reconnect_count += 1
            await self._replace_transport()
            self._transition(ConnectionState.DISCONNECTED, "manual_reconnect")
            self._transition(ConnectionState.CONNECTING, "manual_reconnect")
            await self._connect_with_retry("manual_reconnect")

    # ------------------------------------------------------------------ #
    # Audio + health
    # ------------------------------------------------------------------ #

    async def send_audio(self, payload: bytes) -> bool:
        """
        Forward a segment to the live transport; dropped while FAILED or stopped.
        While a transport is being replaced the segment is held for the new one.
        """
        transport = self.transport
        if self.state == ConnectionState.FAILED or self._stopping:
            return self._count_drop()
        if transport is None:
            if self._replacing and len(self._handover) < self.config.pending_capacity:
                self._handover.append(payload)
                return True
            return self._count_drop()
        return await transport.send_audio(payload)

    def _count_drop(self) -> bool:
        self.dropped_segments += 1
        record_segment_dropped("supervisor")
        return False

    async def run_health_poll(self, interval: Optional[float] = None) -> None:
        """Check the transport on a fixed interval until cancelled."""
        interval = interval or self.config.health_poll_interval_s
        logger.info(f"[{self.session_id}] 🩺 Health poll started (interval={interval}s)")
        try:
            while True:
                await asyncio.sleep(interval)
                transport_connected = self.transport is not None and self.transport.is_connected
                logger.info(
                    f"[{self.session_id}] 🩺 state={self.state.value} | transport_connected={transport_connected} | "
                    f"pending={self.transport.pending_count if self.transport else 0}"
                )

                if self.state == ConnectionState.CONNECTED and not transport_connected:
                    try:
                        await self.handle_failure("health_poll")
                    except ExhaustedRetryError as e:
                        logger.error(f"[{self.session_id}] ❌ {e}")
        finally:
            logger.info(f"[{self.session_id}] 🛑 Health poll stopped")

    async def stop(self) -> None:
        """Close the transport and stop all automatic reconnects."""
        self._stopping = True
        transport, self.transport = self.transport, None
        try:
            if transport is not None:
                await transport.close()
        finally:
            self._transition(ConnectionState.DISCONNECTED, "stop")

    def stats(self) -> dict:
        return {
            "state": self.state.value,
            "connect_attempts": self.connect_attempts,
            "failed_attempts": self.failed_attempts,
            "reconnect_count": self.reconnect_count,
            "dropped_segments": self.dropped_segments,
            "last_error": str(self.last_error) if self.last_error else None,
            "connected_at": self._connected_at,
            "transport": self.transport.stats() if self.transport else None,
        }
