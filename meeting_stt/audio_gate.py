"""
Energy-based voice gate for call audio.

Receives raw PCM16 frames from the call layer, keeps the voice-active ones (plus
a short trailing silence tail so words are not clipped) and hands them out as
one VoiceSegment per flush interval.

submit() runs on the call layer's producer thread and must return quickly; the
flush loop runs on the asyncio event loop. The sample buffer is the only state
they share and it is guarded by a lock.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, List, Optional

import numpy as np

from shared.observability import record_frame_rejected, record_segment_flushed

from .config import TranscriberConfig
from .errors import FormatError
from .models import AudioFrame, VoiceSegment

logger = logging.getLogger(__name__)

# Largest positive PCM16 magnitude, used to normalize RMS into [0, 1]
MAX_SAMPLE_MAGNITUDE = 32767.0

SegmentSink = Callable[[VoiceSegment], Awaitable[Any]]


def normalized_rms(samples: np.ndarray) -> float:
    """Root-mean-square energy of PCM16 samples, normalized to [0, 1]."""
    if samples.size == 0:
        return 0.0
    as_float = samples.astype(np.float64)
    rms = float(np.sqrt(np.mean(as_float * as_float)))
    return min(rms / MAX_SAMPLE_MAGNITUDE, 1.0)


class AudioGate:
    """
    Voice activity gate and segment batcher.

    A frame is accepted while speech is active or while the silence run is
    still shorter than `vad_silence_frames`. Accepted samples accumulate until
    the next flush.
    """

    def __init__(self, config: TranscriberConfig, session_id: Optional[str] = None):
        self.config = config
        self.session_id = session_id or "-"
        self._dtype = np.dtype(config.sample_dtype)
        self._lock = threading.Lock()

        # VAD state
        self._silence_frame_count = 0
        self._is_voice_active = False

        # Send buffer
        self._chunks: List[np.ndarray] = []
        self._buffered_samples = 0
        self._max_buffered_samples = int(config.max_buffer_seconds * config.sample_rate)
        self._segment_started_at: Optional[float] = None

        # Metrics
        self.frames_received = 0
        self.frames_accepted = 0
        self.frames_rejected = 0
        self.frames_dropped = 0
        self.segments_flushed = 0

    @property
    def is_voice_active(self) -> bool:
        return self._is_voice_active

    @property
    def buffered_samples(self) -> int:
        return self._buffered_samples

    def submit(self, frame: AudioFrame) -> None:
        """
        Accept one audio frame.

        Raises:
            FormatError: frame length is not a whole number of 16-bit samples.
                The frame is dropped and the buffer is left unchanged.
        """
        data = frame.data
        self.frames_received += 1

        if len(data) % 2 != 0:
            self.frames_rejected += 1
            record_frame_rejected("odd_length")
            raise FormatError(
                f"Audio frame of {len(data)} bytes is not a whole number of 16-bit samples",
                byte_length=len(data),
            )

        if not data:
            return

        samples = np.frombuffer(data, dtype=self._dtype)
        energy = normalized_rms(samples)

        with self._lock:
            has_voice = energy > self.config.vad_threshold
            if has_voice:
                self._silence_frame_count = 0
                self._is_voice_active = True
            else:
                self._silence_frame_count += 1
                if self._silence_frame_count >= self.config.vad_silence_frames:
                    self._is_voice_active = False

            accepted = has_voice or self._is_voice_active
            overflow = accepted and self._buffered_samples + samples.size > self._max_buffered_samples
            if overflow:
                self.frames_dropped += 1
            elif accepted:
                # frombuffer views the caller's bytes; keep our own copy
                self._chunks.append(samples.copy())
                self._buffered_samples += samples.size
                if self._segment_started_at is None:
                    self._segment_started_at = frame.timestamp
                self.frames_accepted += 1

        if overflow:
            record_frame_rejected("buffer_full")
            if self.frames_dropped == 1 or self.frames_dropped % 50 == 0:
                logger.warning(
                    f"[{self.session_id}] ⚠️ Voice buffer full ({self.config.max_buffer_seconds}s), "
                    f"dropping frame | dropped so far: {self.frames_dropped}"
                )

        if self.config.log_vad_decisions and samples.size >= self.config.vad_min_log_samples:
            logger.debug(
                f"[{self.session_id}] [VAD] RMS: {energy:.6f}, threshold: {self.config.vad_threshold:.6f}, "
                f"voice: {has_voice}, silence_frames: {self._silence_frame_count}"
            )

    def flush(self) -> Optional[VoiceSegment]:
        """
        Take the accumulated samples as one segment and start a fresh buffer.

        Returns:
            VoiceSegment, or None when nothing was accumulated.
        """
        with self._lock:
            if not self._chunks:
                return None
            chunks, self._chunks = self._chunks, []
            started_at = self._segment_started_at or time.time()
            self._buffered_samples = 0
            self._segment_started_at = None

        samples = np.concatenate(chunks) if len(chunks) > 1 else chunks[0]
        segment = VoiceSegment(
            samples=samples,
            payload=samples.astype(self._dtype, copy=False).tobytes(),
            started_at=started_at,
        )
        self.segments_flushed += 1
        record_segment_flushed()
        return segment

    def reset(self) -> None:
        """Drop buffered samples and VAD state."""
        with self._lock:
            self._chunks = []
            self._buffered_samples = 0
            self._segment_started_at = None
            self._silence_frame_count = 0
            self._is_voice_active = False

    async def run(self, sink: SegmentSink, interval: Optional[float] = None) -> None:
        """
        Flush loop: every `interval` seconds hand the buffered segment to `sink`.

        Runs until cancelled. Sink failures are logged and do not stop the loop.
        """
        interval = interval or self.config.flush_interval_s
        logger.info(f"[{self.session_id}] 🎚️ Audio flush loop started (interval={interval}s)")
        try:
            while True:
                await asyncio.sleep(interval)
                segment = self.flush()
                if segment is None:
                    continue
                try:
                    await sink(segment)
                except Exception as e:
                    logger.error(f"[{self.session_id}] ❌ Failed to hand off voice segment: {e}")
        finally:
            logger.info(f"[{self.session_id}] 🛑 Audio flush loop stopped | segments: {self.segments_flushed}")

    def stats(self) -> dict:
        return {
            "frames_received": self.frames_received,
            "frames_accepted": self.frames_accepted,
            "frames_rejected": self.frames_rejected,
            "frames_dropped": self.frames_dropped,
            "segments_flushed": self.segments_flushed,
            "buffered_samples": self._buffered_samples,
            "voice_active": self._is_voice_active,
        }
