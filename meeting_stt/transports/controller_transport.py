"""
Controller streaming transport.

Wraps a vendor speech SDK that runs its own recognition loop. Instead of
pushing audio, the SDK pulls it through a read callback from a bounded
producer/consumer queue, and reports results through a message callback
that may fire on any thread.
"""

import asyncio
import logging
import queue
import threading
from typing import Any, Callable, Optional, Protocol

from ..config import TranscriberConfig
from .base import StreamingTransport

logger = logging.getLogger(__name__)

# Signature: (max_bytes) -> bytes; b"" means end of stream
ReadCallback = Callable[[int], bytes]
# Signature: (payload) -> None; payload is a dict or a JSON string
MessageCallback = Callable[[Any], None]
# Signature: (error or None) -> None
StoppedCallback = Callable[[Optional[BaseException]], None]


class SpeechController(Protocol):
    """
    Minimal surface of a vendor speech recognition controller.

    start() begins continuous recognition and returns once the session is
    live. From then on the controller calls `read` from its own thread to pull
    audio and `on_message` for every recognition payload. `on_stopped` reports
    that the controller ended the session by itself.
    """

    async def start(
        self,
        read: ReadCallback,
        on_message: MessageCallback,
        on_stopped: StoppedCallback,
    ) -> None:
        ...

    async def stop(self) -> None:
        ...


class ControllerTransport(StreamingTransport):
    """Recognition through a SpeechController fed by a bounded audio queue."""

    name = "controller"

    def __init__(
        self,
        config: TranscriberConfig,
        controller: SpeechController,
        session_id: Optional[str] = None,
    ):
        super().__init__(config, session_id)
        self._controller = controller
        self._audio: "queue.Queue[bytes]" = queue.Queue(maxsize=config.pending_capacity)
        self._end_of_stream = threading.Event()
        self._leftover = b""

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._start_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def is_connected(self) -> bool:
        return self._started and not self._end_of_stream.is_set() and not self._closed

    async def _open(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._start_task = asyncio.create_task(
            self._controller.start(self.read, self._on_message, self._on_stopped),
            name=f"stt_controller_start_{self.session_id}",
        )
        logger.info(f"[{self.session_id}] 🔌 Starting speech controller...")
        await asyncio.wait_for(asyncio.shield(self._start_task), timeout=self.config.connect_timeout_s)
        self._started = True

    async def _send(self, payload: bytes) -> bool:
        try:
            self._audio.put_nowait(payload)
        except queue.Full:
            self._count_drop()
            return False
        return True

    # ------------------------------------------------------------------ #
    # Controller-side callbacks (controller threads)
    # ------------------------------------------------------------------ #

    def read(self, max_bytes: int) -> bytes:
        """
        Pull up to `max_bytes` of audio, blocking until some is available.

        Returns b"" once the stream has ended and the queue is drained.
        """
        max_bytes = max_bytes if max_bytes and max_bytes > 0 else self.config.controller_read_bytes
        while not self._leftover:
            if self._end_of_stream.is_set() and self._audio.empty():
                return b""
            try:
                self._leftover = self._audio.get(timeout=0.1)
            except queue.Empty:
                continue
        chunk, self._leftover = self._leftover[:max_bytes], self._leftover[max_bytes:]
        return chunk

    def _on_message(self, payload: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug(f"[{self.session_id}] Controller message after shutdown, dropped")
            return
        loop.call_soon_threadsafe(self._emit_payload, payload)

    def _on_stopped(self, error: Optional[BaseException] = None) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._handle_stopped, error)

    def _handle_stopped(self, error: Optional[BaseException]) -> None:
        if self._closed:
            return
        self._end_of_stream.set()
        if error is not None:
            logger.warning(f"[{self.session_id}] ⚠️ Speech controller stopped: {type(error).__name__}: {error}")
        else:
            logger.info(f"[{self.session_id}] Speech controller ended the session")
        self._notify_closed(error)

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #

    def take_pending(self):
        pending = super().take_pending()
        while True:
            try:
                pending.append(self._audio.get_nowait())
            except queue.Empty:
                break
        return pending

    async def _release(self) -> None:
        # Unblocks read() so the controller's loop can finish
        self._end_of_stream.set()

        task, self._start_task = self._start_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=self.config.close_timeout_s)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception as e:
                logger.debug(f"[{self.session_id}] Controller start failed during teardown: {e}")

        if self._started:
            self._started = False
            try:
                await asyncio.wait_for(self._controller.stop(), timeout=self.config.close_timeout_s)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.session_id}] ⚠️ Speech controller stop timed out")
            except Exception as e:
                logger.warning(f"[{self.session_id}] ⚠️ Error stopping speech controller: {e}")
