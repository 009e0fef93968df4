"""
Websocket streaming transport.

Streams voice segments as binary frames to a recognition endpoint and reads
JSON recognition payloads back on a dedicated receive task.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ..config import TranscriberConfig
from .base import StreamingTransport

logger = logging.getLogger(__name__)


class SocketTransport(StreamingTransport):
    """
    Recognition over a persistent websocket.

    Lifecycle: connect() opens the socket and starts the receive loop;
    close() cancels the loop and closes the socket. Any way the receive loop
    ends other than close() is reported through on_closed().
    """

    name = "socket"

    def __init__(
        self,
        config: TranscriberConfig,
        session_id: Optional[str] = None,
        url: Optional[str] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        super().__init__(config, session_id)
        self.url = url or config.backend_url()
        self._connect_fn = connect

        self._ws = None
        self._socket_open = False
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._socket_open and not self._closed

    async def _open(self) -> None:
        logger.info(f"[{self.session_id}] 🔌 Connecting to recognition socket...")
        self._ws = await asyncio.wait_for(
            self._connect_fn(
                self.url,
                ping_interval=self.config.ws_ping_interval_s,
                ping_timeout=self.config.ws_ping_timeout_s,
                close_timeout=self.config.close_timeout_s,
            ),
            timeout=self.config.connect_timeout_s,
        )
        self._socket_open = True
        self._receive_task = asyncio.create_task(
            self._receive_loop(self._ws), name=f"stt_receive_{self.session_id}"
        )

    async def _send(self, payload: bytes) -> bool:
        try:
            await asyncio.wait_for(self._ws.send(payload), timeout=self.config.send_timeout_s)
        except asyncio.TimeoutError:
            # Backend stopped reading; treat the socket as dead so the supervisor replaces it
            self._socket_open = False
            raise
        return True

    async def _receive_loop(self, ws) -> None:
        """Read recognition payloads until the socket ends or the task is cancelled."""
        error: Optional[BaseException] = None
        logger.info(f"[{self.session_id}] 🎧 Socket receive loop started")
        try:
            async for message in ws:
                if isinstance(message, (bytes, bytearray)):
                    logger.debug(f"[{self.session_id}] Ignoring binary frame ({len(message)} bytes)")
                    continue
                self._emit_payload(message)
        except asyncio.CancelledError:
            logger.debug(f"[{self.session_id}] Socket receive loop cancelled")
            raise
        except ConnectionClosedOK:
            logger.info(f"[{self.session_id}] Socket closed by backend")
        except ConnectionClosed as e:
            error = e
            logger.warning(f"[{self.session_id}] ⚠️ Socket closed abnormally: {e}")
        except Exception as e:
            error = e
            logger.error(f"[{self.session_id}] ❌ Socket receive loop error: {type(e).__name__}: {e}")
        finally:
            self._socket_open = False

        if self._closed:
            return

        # Loop ended on its own: close our end before reporting
        try:
            await asyncio.wait_for(ws.close(), timeout=self.config.close_timeout_s)
        except Exception as close_error:
            logger.debug(f"[{self.session_id}] Error closing ended socket: {close_error}")
        self._notify_closed(error)

    async def _release(self) -> None:
        self._socket_open = False

        task, self._receive_task = self._receive_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=self.config.close_timeout_s)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await asyncio.wait_for(ws.close(), timeout=self.config.close_timeout_s)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.session_id}] ⚠️ Socket close timed out")
            except Exception as e:
                logger.debug(f"[{self.session_id}] Error closing socket: {e}")
