"""
Streaming transports to recognition backends.

Use create_transport() to build the variant selected by TranscriberConfig.backend.
"""

from typing import Optional

from ..config import TranscriberConfig
from .base import StreamingTransport
from .controller_transport import ControllerTransport, SpeechController
from .socket_transport import SocketTransport

__all__ = [
    "StreamingTransport",
    "SocketTransport",
    "ControllerTransport",
    "SpeechController",
    "create_transport",
]


def create_transport(
    config: TranscriberConfig,
    session_id: Optional[str] = None,
    controller: Optional[SpeechController] = None,
) -> StreamingTransport:
    """
    Build a new, unconnected transport for the configured backend.

    Raises:
        ValueError: the controller backend is selected but no controller was given
    """
    if config.backend == "controller":
        if controller is None:
            raise ValueError("backend 'controller' requires a SpeechController instance")
        return ControllerTransport(config, controller, session_id=session_id)
    return SocketTransport(config, session_id=session_id)
