"""
Call-layer adapter.

Translates call lifecycle, roster and audio callbacks from the calling
platform into TranscriptionPipeline operations:

- call becomes established -> pipeline.start()
- established -> terminated -> pipeline.stop()
- roster changes -> pipeline.update_participants() (annotation only)
- captured audio -> pipeline.submit_audio()
"""

import json
import logging
import time
from typing import Any, Dict, Iterable, Optional

from .pipeline import TranscriptionPipeline

logger = logging.getLogger(__name__)

CALL_ESTABLISHED = "established"
CALL_TERMINATED = "terminated"


def _normalize_state(state: Optional[str]) -> str:
    return (state or "").strip().lower()


class CallHandler:
    """One call's binding to a transcription pipeline."""

    def __init__(self, pipeline: TranscriptionPipeline, meeting_id: str, call_id: Optional[str] = None):
        self.pipeline = pipeline
        self.meeting_id = meeting_id
        self.call_id = call_id
        self.call_state = ""
        # participant id -> display name ("" when the platform gives none)
        self.participants: Dict[str, str] = {}

    async def on_call_updated(self, old_state: Optional[str], new_state: Optional[str]) -> None:
        old_state, new_state = _normalize_state(old_state), _normalize_state(new_state)
        self.call_state = new_state
        logger.info(f"[{self.meeting_id}] Call status updated: {old_state or '-'} -> {new_state}")

        if old_state != new_state and new_state == CALL_ESTABLISHED:
            await self.pipeline.start(self.meeting_id, self.call_id, self.display_names())
        elif old_state == CALL_ESTABLISHED and new_state == CALL_TERMINATED:
            await self.pipeline.stop()

    def on_participants_updated(
        self,
        added: Iterable[Dict[str, Any]] = (),
        removed: Iterable[Dict[str, Any]] = (),
    ) -> None:
        """
        Apply roster changes. Each participant is a dict with an `id` and an
        optional `display_name`; entries without an id, or that are not dicts,
        are ignored.
        """
        for participant in added:
            if not isinstance(participant, dict):
                logger.warning(f"[{self.meeting_id}] Ignoring malformed roster entry: {participant!r}")
                continue
            participant_id = participant.get("id")
            if participant_id:
                self.participants[participant_id] = participant.get("display_name") or ""
        for participant in removed:
            if not isinstance(participant, dict):
                logger.warning(f"[{self.meeting_id}] Ignoring malformed roster entry: {participant!r}")
                continue
            self.participants.pop(participant.get("id"), None)

        self.pipeline.update_participants(self.display_names())

    def display_names(self):
        return sorted(name for name in self.participants.values() if name)

    def on_audio(self, data: bytes, timestamp: Optional[float] = None) -> bool:
        """Audio callback; runs on the platform's media thread."""
        return self.pipeline.submit_audio(data, timestamp=timestamp)

    def meeting_info(self) -> str:
        return json.dumps({
            "meeting_id": self.meeting_id,
            "call_id": self.call_id,
            "call_state": self.call_state,
            "participants_count": len(self.participants),
            "timestamp": time.time(),
        }, ensure_ascii=False)
