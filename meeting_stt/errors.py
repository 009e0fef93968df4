"""
Error taxonomy for the meeting transcription pipeline.

Every failure raised inside the pipeline derives from TranscriptionError so the
call layer can treat the subsystem as a single best-effort unit:

    FormatError            - malformed audio frame (frame dropped, logged)
    BackendConnectionError - transport-level failure (drives reconnect)
    ProtocolError          - malformed backend payload (event discarded)
    PersistenceError       - store read/write failure (surfaced as False/None)
    ExhaustedRetryError    - reconnect ceiling reached (session FAILED)
"""

from typing import Optional


class TranscriptionError(Exception):
    """Base class for all pipeline errors."""


class FormatError(TranscriptionError, ValueError):
    """Audio frame is not a whole number of 16-bit samples."""

    def __init__(self, message: str, byte_length: Optional[int] = None):
        super().__init__(message)
        self.byte_length = byte_length


class BackendConnectionError(TranscriptionError, ConnectionError):
    """Recognition backend connection could not be opened or was lost."""


class ProtocolError(TranscriptionError):
    """Backend sent a payload that cannot be interpreted."""

    def __init__(self, message: str, payload: Optional[object] = None):
        super().__init__(message)
        self.payload = payload


class PersistenceError(TranscriptionError):
    """Transcript store operation failed."""


class ExhaustedRetryError(TranscriptionError):
    """Connection attempts exceeded the configured ceiling."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        message = f"Gave up after {attempts} connection attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
