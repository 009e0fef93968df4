"""
Meeting STT: real-time meeting transcription pipeline.

Gates call audio by voice activity, streams it to a recognition backend,
folds overlapping recognition snippets into one clean transcript and
persists it to Redis.
"""

from .accumulator import TranscriptAccumulator, find_new_text, strip_noise
from .audio_gate import AudioGate
from .config import TranscriberConfig
from .errors import (
    BackendConnectionError,
    ExhaustedRetryError,
    FormatError,
    PersistenceError,
    ProtocolError,
    TranscriptionError,
)
from .models import (
    AudioFrame,
    ConnectionState,
    RecognitionEvent,
    Session,
    TranscriptSnapshot,
    VoiceSegment,
)
from .pipeline import TranscriptionPipeline
from .store import TranscriptStore
from .supervisor import ConnectionSupervisor

__version__ = "1.0.0"

__all__ = [
    "AudioFrame",
    "AudioGate",
    "BackendConnectionError",
    "ConnectionState",
    "ConnectionSupervisor",
    "ExhaustedRetryError",
    "FormatError",
    "PersistenceError",
    "ProtocolError",
    "RecognitionEvent",
    "Session",
    "TranscriberConfig",
    "TranscriptAccumulator",
    "TranscriptSnapshot",
    "TranscriptStore",
    "TranscriptionError",
    "TranscriptionPipeline",
    "VoiceSegment",
    "find_new_text",
    "strip_noise",
]
