"""
Configuration for the meeting transcription pipeline.

Loads environment variables with the MEETING_STT_* prefix to drive voice
activity gating, backend selection, reconnect policy and transcript retention.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = {"socket", "controller"}
SUPPORTED_BYTE_ORDERS = {"big", "little"}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class TranscriberConfig:
    """
    Unified configuration for the transcription pipeline.

    Covers AudioGate, the streaming transports, the connection supervisor and
    the transcript store.
    """

    # Audio settings
    sample_rate: int = 16000          # Call layer delivers 16kHz PCM16 mono
    sample_byte_order: str = "big"    # Byte order of frames in and segments out

    # Voice activity gate
    vad_threshold: float = 0.01       # Normalized RMS above which a frame is speech
    vad_silence_frames: int = 3       # Consecutive silent frames that end an utterance
    vad_min_log_samples: int = 1600   # Frames at least this long get a debug VAD line (100ms)
    flush_interval_s: float = 3.0     # Wall-clock interval between segment flushes
    max_buffer_seconds: float = 30.0  # Speech held between flushes before new frames are dropped

    # Recognition backend
    backend: str = "socket"           # "socket" or "controller"
    ws_url: str = os.getenv("MEETING_STT_WS_URL", "ws://localhost:8765/v1/audio/transcriptions")
    language: str = "yue"
    api_key: str = os.getenv("MEETING_STT_API_KEY", "")
    connect_timeout_s: float = 15.0
    ws_ping_interval_s: Optional[float] = 20.0
    ws_ping_timeout_s: Optional[float] = 10.0
    close_timeout_s: float = 2.0
    send_timeout_s: float = 5.0        # A send stalled longer than this marks the socket dead

    # Transport buffering
    pending_capacity: int = 64        # Segments held before connect / while controller lags
    controller_read_bytes: int = 3200  # Max bytes handed out per controller read (100ms)

    # Reconnect policy
    max_reconnect_attempts: int = 5
    reconnect_delay_s: float = 2.0
    health_poll_interval_s: float = 30.0

    # Transcript persistence
    store_ttl_s: int = 24 * 3600
    history_default_count: int = 50

    # Verbosity control (for debugging)
    verbose: bool = False
    log_vad_decisions: bool = False
    log_state_transitions: bool = True

    @staticmethod
    def from_env() -> 'TranscriberConfig':
        """
        Load configuration from environment variables.

        Returns:
            TranscriberConfig: Configuration instance loaded from environment
        """
        return TranscriberConfig(
            # Audio settings
            sample_rate=int(os.getenv("MEETING_STT_SAMPLE_RATE", "16000")),
            sample_byte_order=os.getenv("MEETING_STT_SAMPLE_BYTE_ORDER", "big"),

            # Voice activity gate
            vad_threshold=float(os.getenv("MEETING_STT_VAD_THRESHOLD", "0.01")),
            vad_silence_frames=int(os.getenv("MEETING_STT_VAD_SILENCE_FRAMES", "3")),
            vad_min_log_samples=int(os.getenv("MEETING_STT_VAD_MIN_LOG_SAMPLES", "1600")),
            flush_interval_s=float(os.getenv("MEETING_STT_FLUSH_INTERVAL", "3.0")),
            max_buffer_seconds=float(os.getenv("MEETING_STT_MAX_BUFFER_SECONDS", "30.0")),

            # Backend
            backend=os.getenv("MEETING_STT_BACKEND", "socket"),
            ws_url=os.getenv("MEETING_STT_WS_URL", "ws://localhost:8765/v1/audio/transcriptions"),
            language=os.getenv("MEETING_STT_LANGUAGE", "yue"),
            api_key=os.getenv("MEETING_STT_API_KEY", ""),
            connect_timeout_s=float(os.getenv("MEETING_STT_CONNECT_TIMEOUT", "15.0")),
            close_timeout_s=float(os.getenv("MEETING_STT_CLOSE_TIMEOUT", "2.0")),
            send_timeout_s=float(os.getenv("MEETING_STT_SEND_TIMEOUT", "5.0")),

            # Buffering
            pending_capacity=int(os.getenv("MEETING_STT_PENDING_CAPACITY", "64")),
            controller_read_bytes=int(os.getenv("MEETING_STT_CONTROLLER_READ_BYTES", "3200")),

            # Reconnect
            max_reconnect_attempts=int(os.getenv("MEETING_STT_MAX_RECONNECT_ATTEMPTS", "5")),
            reconnect_delay_s=float(os.getenv("MEETING_STT_RECONNECT_DELAY", "2.0")),
            health_poll_interval_s=float(os.getenv("MEETING_STT_HEALTH_POLL_INTERVAL", "30.0")),

            # Persistence
            store_ttl_s=int(os.getenv("MEETING_STT_STORE_TTL", str(24 * 3600))),
            history_default_count=int(os.getenv("MEETING_STT_HISTORY_COUNT", "50")),

            # Verbosity
            verbose=_env_bool("MEETING_STT_VERBOSE", "false"),
            log_vad_decisions=_env_bool("MEETING_STT_LOG_VAD", "false"),
            log_state_transitions=_env_bool("MEETING_STT_LOG_STATE_TRANSITIONS", "true"),
        )

    def __post_init__(self):
        """
        Validate and normalize configuration.
        """
        backend = (self.backend or "socket").strip().lower()
        if backend not in SUPPORTED_BACKENDS:
            logger.warning("Backend '%s' is not supported. Defaulting to 'socket'.", backend)
            backend = "socket"
        self.backend = backend

        byte_order = (self.sample_byte_order or "big").strip().lower()
        if byte_order not in SUPPORTED_BYTE_ORDERS:
            logger.warning("Sample byte order '%s' is not supported. Using 'big'.", byte_order)
            byte_order = "big"
        self.sample_byte_order = byte_order

        if not 0.0 < self.vad_threshold < 1.0:
            logger.warning("vad_threshold out of range (%s). Using 0.01.", self.vad_threshold)
            self.vad_threshold = 0.01

        if self.vad_silence_frames < 1:
            logger.warning("vad_silence_frames too low (%s). Using 1.", self.vad_silence_frames)
            self.vad_silence_frames = 1

        if self.flush_interval_s <= 0:
            logger.warning("flush_interval_s must be positive (%s). Using 3.0s.", self.flush_interval_s)
            self.flush_interval_s = 3.0

        if self.max_buffer_seconds <= 0:
            logger.warning("max_buffer_seconds must be positive (%s). Using 30.0s.", self.max_buffer_seconds)
            self.max_buffer_seconds = 30.0

        if self.send_timeout_s <= 0:
            logger.warning("send_timeout_s must be positive (%s). Using 5.0s.", self.send_timeout_s)
            self.send_timeout_s = 5.0

        if self.pending_capacity < 1:
            logger.warning("pending_capacity too low (%s). Using 1.", self.pending_capacity)
            self.pending_capacity = 1

        if self.max_reconnect_attempts < 1:
            logger.warning("max_reconnect_attempts too low (%s). Using 1.", self.max_reconnect_attempts)
            self.max_reconnect_attempts = 1

        if self.reconnect_delay_s < 0:
            self.reconnect_delay_s = 0.0

        if self.verbose:
            logger.info(
                f" TranscriberConfig loaded: backend={self.backend}, "
                f"sample_rate={self.sample_rate}Hz, vad_threshold={self.vad_threshold}, "
                f"flush={self.flush_interval_s}s, max_attempts={self.max_reconnect_attempts}"
            )

    @property
    def sample_dtype(self) -> str:
        """numpy dtype string for PCM16 samples in the configured byte order."""
        return ">i2" if self.sample_byte_order == "big" else "<i2"

    def backend_url(self) -> str:
        """Websocket URL with language and api key query parameters applied."""
        separator = "&" if "?" in self.ws_url else "?"
        url = f"{self.ws_url.strip()}{separator}language={self.language}"
        if self.api_key:
            url += f"&api-key={self.api_key}"
        return url
