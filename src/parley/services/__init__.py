"""Chat transport services: probe, polling, mode controller and session client."""

from .chat_session_client import ChatSessionClient
from .http_backend import HttpChatBackend, WebSocketChannel
from .message_log import MessageLog
from .mode_controller import ModeController
from .polling_transport import PollingTransport
from .transcript import TranscriptRecorder
from .transport_probe import TransportProbe

__all__ = [
    "ChatSessionClient",
    "HttpChatBackend",
    "WebSocketChannel",
    "MessageLog",
    "ModeController",
    "PollingTransport",
    "TranscriptRecorder",
    "TransportProbe",
]
