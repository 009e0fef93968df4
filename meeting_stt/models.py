"""
Data model for the meeting transcription pipeline.

Session, audio containers, recognition events and transcript snapshots shared by
AudioGate, the transports, the accumulator and the store.
"""

import json
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Set

import numpy as np

from .errors import ProtocolError


class ConnectionState(Enum):
    """Lifecycle of one recognition backend connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# Backend success markers seen in the `code` field
SUCCESS_CODES = {"success", "0", "ok"}

# slice_type values that mark an authoritative (final) recognition slice
FINAL_SLICE_TYPES = {"2", "final", "sentence_end"}


@dataclass
class AudioFrame:
    """Raw PCM16 mono samples as delivered by the call layer."""
    data: bytes
    timestamp: float = field(default_factory=time.time)

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class VoiceSegment:
    """
    Contiguous voice-active samples accumulated between two flush points.

    Once handed to a transport the segment belongs to it; AudioGate starts a
    fresh buffer and never touches these samples again.
    """
    samples: np.ndarray
    payload: bytes
    started_at: float
    flushed_at: float = field(default_factory=time.time)

    @property
    def sample_count(self) -> int:
        return int(self.samples.size)

    def duration(self, sample_rate: int) -> float:
        return self.sample_count / float(sample_rate)

    def __len__(self) -> int:
        return len(self.payload)


def _is_success_code(code: Any) -> bool:
    if isinstance(code, bool):
        return False
    return str(code).strip().lower() in SUCCESS_CODES


@dataclass(frozen=True)
class RecognitionEvent:
    """One recognition payload reported by a backend. Immutable once received."""
    text: str
    code: Optional[str] = None
    slice_type: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    voice_id: Optional[str] = None
    message_id: Optional[str] = None
    received_at: float = field(default_factory=time.time)
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_final(self) -> bool:
        """Events without slice markers are treated as final."""
        if self.slice_type is None:
            return True
        return self.slice_type.strip().lower() in FINAL_SLICE_TYPES

    @classmethod
    def from_payload(cls, payload: Any) -> "RecognitionEvent":
        """
        Build an event from a decoded backend payload.

        Raises:
            ProtocolError: payload is not an object, carries a non-success
                `code`, or has no text at all.
        """
        if not isinstance(payload, dict):
            raise ProtocolError(f"Expected JSON object, got {type(payload).__name__}", payload)

        code = payload.get("code")
        if code is not None and not _is_success_code(code):
            detail = payload.get("message")
            message = f"Backend reported code={code!r}"
            if detail:
                message += f": {detail}"
            raise ProtocolError(message, payload)

        result = payload.get("result")
        if result is not None and not isinstance(result, dict):
            raise ProtocolError("`result` must be an object", payload)
        result = result or {}

        text = payload.get("text")
        if text is None:
            text = result.get("voice_text_str")
        if text is None:
            raise ProtocolError("Payload has no `text` field", payload)

        def pick(key: str) -> Optional[str]:
            value = result.get(key, payload.get(key))
            return None if value is None or value == "" else str(value)

        return cls(
            text=str(text),
            code=None if code is None else str(code),
            slice_type=pick("slice_type"),
            start_time=pick("start_time"),
            end_time=pick("end_time"),
            voice_id=pick("voice_id"),
            message_id=pick("message_id"),
            raw=dict(payload),
        )

    @classmethod
    def from_json(cls, message: str) -> "RecognitionEvent":
        try:
            payload = json.loads(message)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid JSON from backend: {e}", message) from e
        return cls.from_payload(payload)

    def provenance(self) -> Dict[str, Any]:
        """Metadata carried into the stored snapshot."""
        return {
            "voice_id": self.voice_id or "",
            "message_id": self.message_id or "",
            "start_time": self.start_time or "",
            "end_time": self.end_time or "",
            "slice_type": self.slice_type or "",
        }


@dataclass
class TranscriptSnapshot:
    """The single current transcript record of a session."""
    session_id: str
    call_id: Optional[str]
    text: str
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)
    snapshot_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = "FullTranscription"
        data["length"] = len(self.text)
        return data

    def to_json(self) -> str:
        # ensure_ascii=False keeps CJK transcripts readable in the store
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "TranscriptSnapshot":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            call_id=data.get("call_id"),
            text=data.get("text", ""),
            timestamp=float(data.get("timestamp", 0.0)),
            metadata=data.get("metadata") or {},
            snapshot_id=data.get("snapshot_id") or str(uuid.uuid4()),
        )


@dataclass
class Session:
    """
    One transcription session, bound to a single call.

    `transcript` is only ever written by the pipeline's event loop.
    """
    meeting_id: str
    call_id: Optional[str] = None
    transcript: str = ""
    state: ConnectionState = ConnectionState.DISCONNECTED
    participants: Set[str] = field(default_factory=set)
    started_at: float = field(default_factory=time.time)
    last_event_at: Optional[float] = None
    events_folded: int = 0

    @property
    def session_id(self) -> str:
        return self.meeting_id

    def set_participants(self, names: Iterable[str]) -> None:
        self.participants = {name for name in names if name}

    def snapshot(self, metadata: Optional[Dict[str, Any]] = None) -> TranscriptSnapshot:
        meta = {
            "display_names": sorted(self.participants),
            "connection_state": self.state.value,
        }
        if metadata:
            meta.update(metadata)
        return TranscriptSnapshot(
            session_id=self.session_id,
            call_id=self.call_id,
            text=self.transcript,
            metadata=meta,
        )

    def info(self) -> Dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "call_id": self.call_id,
            "state": self.state.value,
            "transcript_length": len(self.transcript),
            "participants": sorted(self.participants),
            "events_folded": self.events_folded,
            "duration_s": round(time.time() - self.started_at, 1),
        }
