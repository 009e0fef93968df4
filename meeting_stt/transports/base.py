"""
Streaming transport base class.

Defines the capability set every recognition backend exposes to the pipeline
(connect, send_audio, on_text, on_closed, close, is_connected) and implements
the behaviour both variants share:

- idempotent connect guarded by a lock
- bounded pre-connect buffering with a drop-newest overflow policy
- FIFO delivery of buffered audio once connected
- recognition payload decoding and callback dispatch
- close() that always releases backend resources
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, List, Optional

from shared.observability import record_recognition_event, record_segment_dropped

from ..config import TranscriberConfig
from ..errors import BackendConnectionError, ProtocolError
from ..models import ConnectionState, RecognitionEvent

logger = logging.getLogger(__name__)

# Signature: (event) -> None
TextCallback = Callable[[RecognitionEvent], None]
# Signature: (error or None for a clean close) -> None
ClosedCallback = Callable[[Optional[BaseException]], None]


class StreamingTransport(ABC):
    """
    One connection to a recognition backend.

    Audio flows in through send_audio(); recognized text flows out through the
    callback registered with on_text(). A transport instance is single-use:
    once closed it cannot be reconnected, the supervisor builds a new one.
    """

    name = "transport"

    def __init__(self, config: TranscriberConfig, session_id: Optional[str] = None):
        self.config = config
        self.session_id = session_id or "-"
        self.state = ConnectionState.DISCONNECTED

        self._pending: Deque[bytes] = deque()
        self._pending_capacity = config.pending_capacity
        self._connect_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()

        self._text_callback: Optional[TextCallback] = None
        self._closed_callback: Optional[ClosedCallback] = None
        self._closed = False
        self._closed_notified = False

        # Metrics
        self.segments_sent = 0
        self.bytes_sent = 0
        self.dropped_segments = 0
        self.events_received = 0
        self.events_rejected = 0
        self._connection_time: Optional[float] = None
        self._last_activity: float = time.time()

    # ------------------------------------------------------------------ #
    # Backend hooks
    # ------------------------------------------------------------------ #

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the backend can accept audio."""

    @abstractmethod
    async def _open(self) -> None:
        """Open the backend session. Raise on failure."""

    @abstractmethod
    async def _send(self, payload: bytes) -> bool:
        """Deliver one segment to the open backend. Return False if it was dropped."""

    @abstractmethod
    async def _release(self) -> None:
        """Release every backend resource. Must tolerate a partially opened session."""

    # ------------------------------------------------------------------ #
    # Callbacks
    # ------------------------------------------------------------------ #

    def on_text(self, callback: TextCallback) -> None:
        self._text_callback = callback

    def on_closed(self, callback: ClosedCallback) -> None:
        self._closed_callback = callback

    def _emit_payload(self, payload: Any) -> None:
        """Decode one backend payload and pass it to the text callback."""
        self.events_received += 1
        self._last_activity = time.time()
        try:
            if isinstance(payload, (str, bytes, bytearray)):
                event = RecognitionEvent.from_json(payload)
            else:
                event = RecognitionEvent.from_payload(payload)
        except ProtocolError as e:
            self.events_rejected += 1
            record_recognition_event("rejected")
            logger.warning(f"[{self.session_id}] ⚠️ Discarding backend payload: {e}")
            return

        if self._text_callback is None:
            logger.debug(f"[{self.session_id}] No text callback registered, event dropped")
            return

        try:
            self._text_callback(event)
        except Exception as callback_error:
            logger.error(f"[{self.session_id}] ❌ Error in text callback: {callback_error}")

    def _notify_closed(self, error: Optional[BaseException]) -> None:
        """Report an unexpected end of the backend session, once."""
        if self._closed or self._closed_notified:
            return
        self._closed_notified = True
        if self._closed_callback is None:
            return
        try:
            self._closed_callback(error)
        except Exception as callback_error:
            logger.error(f"[{self.session_id}] ❌ Error in closed callback: {callback_error}")

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """
        Open the backend session. Calling while already connected is a no-op.

        Raises:
            BackendConnectionError: the backend could not be reached, or this
                transport was already closed.
        """
        async with self._connect_lock:
            if self.is_connected:
                logger.debug(f"[{self.session_id}] Already connected ({self.name})")
                return
            if self._closed:
                raise BackendConnectionError(f"{self.name} transport is closed; build a new one")

            self.state = ConnectionState.CONNECTING
            start_time = time.time()
            try:
                await self._open()
            except asyncio.CancelledError:
                self.state = ConnectionState.DISCONNECTED
                await self._release()
                raise
            except Exception as e:
                self.state = ConnectionState.DISCONNECTED
                try:
                    await self._release()
                except Exception as release_error:
                    logger.debug(f"[{self.session_id}] Error releasing failed connection: {release_error}")
                if isinstance(e, BackendConnectionError):
                    raise
                raise BackendConnectionError(f"{self.name} connect failed: {type(e).__name__}: {e}") from e

            if self._closed:
                # close() ran while the backend was still opening
                self.state = ConnectionState.DISCONNECTED
                await self._release()
                raise BackendConnectionError(f"{self.name} transport was closed while connecting")

            self.state = ConnectionState.CONNECTED
            self._connection_time = time.time()
            self._closed_notified = False
            logger.info(
                f"[{self.session_id}] ✅ Connected via {self.name} transport in "
                f"{time.time() - start_time:.3f}s | pending segments: {len(self._pending)}"
            )

        async with self._send_lock:
            await self._drain_pending()

    async def send_audio(self, payload: bytes) -> bool:
        """
        Send one voice segment.

        Before the backend is connected the segment is buffered; when the
        buffer is full the new segment is dropped and counted. Never blocks on
        a full buffer.

        Returns:
            bool: True if the segment was sent or buffered
        """
        if not payload:
            return True

        if not self.is_connected:
            return self._buffer(payload)

        async with self._send_lock:
            await self._drain_pending()
            if self._pending:
                # Drain stopped on a failure; keep ordering behind what is left
                return self._buffer(payload)
            return await self._send_or_buffer(payload)

    async def close(self) -> None:
        """Release all backend resources. Safe to call repeatedly and before connect."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._release()
        finally:
            self.state = ConnectionState.DISCONNECTED
            if self._connection_time:
                session_duration = time.time() - self._connection_time
                logger.info(
                    f"[{self.session_id}] ✅ {self.name} transport closed | Session: {session_duration:.1f}s | "
                    f"Segments: {self.segments_sent} | Bytes: {self.bytes_sent} | Dropped: {self.dropped_segments}"
                )
            else:
                logger.info(f"[{self.session_id}] ✅ {self.name} transport closed (never connected)")

    def take_pending(self) -> List[bytes]:
        """Hand over buffered segments, oldest first, e.g. to a replacement transport."""
        pending = list(self._pending)
        self._pending.clear()
        return pending

    def adopt_pending(self, segments: List[bytes]) -> None:
        """Buffer segments carried over from a previous transport, oldest first."""
        for payload in segments:
            self._buffer(payload)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _buffer(self, payload: bytes) -> bool:
        if len(self._pending) >= self._pending_capacity:
            self._count_drop()
            return False
        self._pending.append(payload)
        return True

    def _count_drop(self) -> None:
        self.dropped_segments += 1
        record_segment_dropped(self.name)
        if self.dropped_segments == 1 or self.dropped_segments % 50 == 0:
            logger.warning(
                f"[{self.session_id}] ⚠️ {self.name} buffer full ({self._pending_capacity}), "
                f"dropping newest segment | dropped so far: {self.dropped_segments}"
            )

    async def _send_or_buffer(self, payload: bytes) -> bool:
        try:
            accepted = await self._send(payload)
        except Exception as e:
            logger.warning(f"[{self.session_id}] ⚠️ {self.name} send failed: {type(e).__name__}: {e}")
            self.state = ConnectionState.DISCONNECTED
            self._on_send_failure(e)
            self._buffer(payload)
            return False

        if accepted:
            self.segments_sent += 1
            self.bytes_sent += len(payload)
            self._last_activity = time.time()
        return accepted

    def _on_send_failure(self, error: BaseException) -> None:
        self._notify_closed(error)

    async def _drain_pending(self) -> None:
        """Send buffered segments in order; stop at the first failure."""
        while self._pending and self.is_connected:
            payload = self._pending.popleft()
            try:
                accepted = await self._send(payload)
            except Exception as e:
                logger.warning(f"[{self.session_id}] ⚠️ {self.name} send failed while draining: {e}")
                self._pending.appendleft(payload)
                self.state = ConnectionState.DISCONNECTED
                self._on_send_failure(e)
                return
            if accepted:
                self.segments_sent += 1
                self.bytes_sent += len(payload)

    def stats(self) -> dict:
        """Get transport statistics for monitoring."""
        return {
            "transport": self.name,
            "is_connected": self.is_connected,
            "state": self.state.value,
            "segments_sent": self.segments_sent,
            "bytes_sent": self.bytes_sent,
            "pending_segments": len(self._pending),
            "dropped_segments": self.dropped_segments,
            "events_received": self.events_received,
            "events_rejected": self.events_rejected,
            "last_activity": self._last_activity,
            "connection_time": self._connection_time,
        }
