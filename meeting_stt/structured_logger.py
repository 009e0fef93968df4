"""
JSON event lines for transcription sessions.

Each line is one flat object keyed by session so log shippers can group a
call's lifecycle without parsing free text:

    {"ts": 1718000000.12, "session": "…", "kind": "state", "msg": "connected -> reconnecting",
     "from": "connected", "to": "reconnecting", "trigger": "transport_closed", ...}

Lines go through an ordinary `logging.Logger`, so handlers and levels set up
by the service still apply.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

# Connection states that mean audio is at risk
_DEGRADED_STATES = frozenset({"reconnecting", "failed"})

# Top-level keys a caller's fields may not overwrite
_RESERVED = ("ts", "session", "kind", "msg")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class StructuredLogger:
    """Emits one JSON line per session event on the wrapped logger."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def _emit(self, level: int, kind: str, msg: str, session_id: Optional[str], fields: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        record: Dict[str, Any] = {"ts": round(time.time(), 3), "session": session_id or "-", "kind": kind, "msg": msg}
        for key, value in fields.items():
            record[f"field_{key}" if key in _RESERVED else key] = value
        try:
            line = json.dumps(record, default=str, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError):
            line = repr(record)
        self.logger.log(level, line)

    def event(
        self,
        session_id: Optional[str],
        event_type: str,
        message: str,
        level: str = "INFO",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Session lifecycle event such as session_started or session_stopped."""
        self._emit(_LEVELS.get(level.upper(), logging.INFO), event_type, message, session_id, data or {})

    def state_transition(
        self,
        session_id: str,
        old_state: str,
        new_state: str,
        trigger: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Connection state change; entering a degraded state logs at WARNING."""
        fields = {"from": old_state, "to": new_state, "trigger": trigger}
        fields.update(data or {})
        level = logging.WARNING if new_state in _DEGRADED_STATES else logging.INFO
        self._emit(level, "state", f"{old_state} -> {new_state}", session_id, fields)

    def error(
        self,
        session_id: Optional[str],
        error_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        fields = {"error_type": error_type}
        fields.update(data or {})
        self._emit(logging.ERROR, "error", message, session_id, fields)

    def latency_recorded(
        self,
        session_id: str,
        operation: str,
        duration_ms: float,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Timing of a backend operation, e.g. how long the first connect took."""
        fields = {"operation": operation, "duration_ms": round(duration_ms, 1)}
        fields.update(extra or {})
        self._emit(logging.DEBUG, "latency", f"{operation} {duration_ms:.0f}ms", session_id, fields)
