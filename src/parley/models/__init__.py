"""Parley data models.

This package contains the data models shared by the chat transports:
messages and their delivery lifecycle, connection state, polling cursors
and the request/response shapes exchanged with the chat backend.
"""

from .chat_message import ChatMessage, MessageRole, DeliveryStatus, is_provisional_id, new_client_message_id
from .connection_state import (
    ConnectionState,
    TransportMode,
    CloseReason,
    ModeChangeKind,
    ModeChangeNotice,
)
from .exchange import PollingCursor, PollResponse, SendAck, ConnectResult

__all__ = [
    # ChatMessage
    "ChatMessage",
    "MessageRole",
    "DeliveryStatus",
    "new_client_message_id",
    "is_provisional_id",
    # ConnectionState
    "ConnectionState",
    "TransportMode",
    "CloseReason",
    "ModeChangeKind",
    "ModeChangeNotice",
    # Backend exchange
    "PollingCursor",
    "PollResponse",
    "SendAck",
    "ConnectResult",
]
