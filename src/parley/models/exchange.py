"""Request/response models exchanged with the chat backend."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .chat_message import INLINE_ID_PREFIX, ChatMessage, DeliveryStatus, MessageRole
from .connection_state import CloseReason, TransportMode


class PollingCursor(BaseModel):
    """Marker of the newest message already seen, used to fetch only new ones."""

    last_seen_message_id: Optional[str] = Field(None, description="Id of the newest message seen")
    last_seen_timestamp: Optional[datetime] = Field(None, description="Timestamp of the newest message seen")

    @property
    def is_empty(self) -> bool:
        return self.last_seen_message_id is None and self.last_seen_timestamp is None

    def advance(self, messages: List[ChatMessage]) -> "PollingCursor":
        """Return the cursor positioned after the newest of ``messages``."""
        if not messages:
            return self
        newest = max(messages, key=lambda m: m.sort_key())
        if self.last_seen_timestamp is not None and newest.created_at < self.last_seen_timestamp:
            return self
        return PollingCursor(
            last_seen_message_id=newest.id,
            last_seen_timestamp=newest.created_at,
        )


class PollResponse(BaseModel):
    """Result of one polling fetch."""

    messages: List[ChatMessage] = Field(default_factory=list, description="New messages in server order")
    cursor: PollingCursor = Field(default_factory=PollingCursor, description="Cursor for the next fetch")
    has_more: bool = Field(default=False, description="Server holds more messages past this page")


class SendAck(BaseModel):
    """
    Acknowledgment of a sent message.

    The backend may return an assistant reply inline. That reply must be
    surfaced exactly like a polled message.
    """

    server_message_id: Optional[str] = Field(None, description="Server-assigned id of the sent message")
    echoed_client_message_id: Optional[str] = Field(None, description="Client id echoed back by the server")
    inline_reply_content: Optional[str] = Field(None, description="Assistant reply returned in the send response")
    inline_reply_id: Optional[str] = Field(None, description="Server id of the inline reply")
    inline_reply_created_at: Optional[datetime] = Field(None, description="Server timestamp of the inline reply")
    created_at: Optional[datetime] = Field(None, description="Server timestamp of the sent message")
    via: TransportMode = Field(default=TransportMode.POLLING, description="Transport that carried the send")

    @classmethod
    def from_payload(cls, body: Dict[str, Any], via: TransportMode = TransportMode.POLLING) -> "SendAck":
        """Build an ack from a send response body or an ``ack`` frame.

        ``message_id``/``content`` describe the assistant reply when ``type``
        is ``assistant``; otherwise ``message_id`` names the sent message.
        ``user_message_id`` always names the sent message when present. A
        nested ``reply`` object carries the inline reply explicitly.
        """
        reply = body.get("reply") if isinstance(body.get("reply"), dict) else None
        server_message_id = body.get("user_message_id")
        fields: Dict[str, Any] = {
            "echoed_client_message_id": body.get("client_message_id") or None,
            "created_at": body.get("user_timestamp") or None,
            "via": via,
        }

        if reply:
            fields["inline_reply_content"] = reply.get("content") or None
            fields["inline_reply_id"] = reply.get("id")
            fields["inline_reply_created_at"] = reply.get("timestamp") or reply.get("created_at")
            server_message_id = server_message_id or body.get("message_id")
        elif body.get("type") == MessageRole.ASSISTANT.value and body.get("content"):
            fields["inline_reply_content"] = body["content"]
            fields["inline_reply_id"] = body.get("message_id")
            fields["inline_reply_created_at"] = body.get("timestamp")
        else:
            server_message_id = server_message_id or body.get("message_id")

        if fields.get("inline_reply_id") is not None:
            fields["inline_reply_id"] = str(fields["inline_reply_id"])
        fields["server_message_id"] = str(server_message_id) if server_message_id else None
        return cls(**fields)

    @property
    def confirms_persistence(self) -> bool:
        """True if the server assigned an id (persisted), not just a transport ack."""
        return self.server_message_id is not None

    def inline_reply(self, session_id: str) -> Optional[ChatMessage]:
        """Build the inline assistant reply as a regular delivered message."""
        if not self.inline_reply_content:
            return None
        reply_id = self.inline_reply_id or f"{INLINE_ID_PREFIX}{self.server_message_id or self.echoed_client_message_id}"
        fields = {
            "id": reply_id,
            "session_id": session_id,
            "role": MessageRole.ASSISTANT,
            "content": self.inline_reply_content,
            "delivery_status": DeliveryStatus.DELIVERED,
            "metadata": {"inline_reply": True},
        }
        if self.inline_reply_created_at is not None:
            fields["created_at"] = self.inline_reply_created_at
        return ChatMessage(**fields)


class ConnectResult(BaseModel):
    """Outcome of a persistent connect attempt."""

    connected: bool
    latency_ms: Optional[int] = Field(None, ge=0)
    reason: Optional[CloseReason] = Field(None, description="Failure reason when not connected")
    error: Optional[str] = None
    attempted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def timed_out(self) -> bool:
        return not self.connected and self.reason == CloseReason.TIMEOUT
