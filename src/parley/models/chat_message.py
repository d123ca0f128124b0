"""ChatMessage model with delivery lifecycle and validation rules."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


CLIENT_ID_PREFIX = "client-"
INLINE_ID_PREFIX = "inline-"
MAX_USER_CONTENT_LENGTH = 10000


def new_client_message_id() -> str:
    """Generate a provisional id for an optimistically added message."""
    return f"{CLIENT_ID_PREFIX}{uuid4().hex}"


def is_provisional_id(message_id: Optional[str]) -> bool:
    """True for ids generated on the client rather than assigned by the server."""
    return bool(message_id) and message_id.startswith((CLIENT_ID_PREFIX, INLINE_ID_PREFIX))


class MessageRole(str, Enum):
    """Message role enumeration."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    """Delivery status of a message as seen by the client."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


_VALID_TRANSITIONS = {
    DeliveryStatus.SENDING: {DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED},
    DeliveryStatus.SENT: {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED},
    DeliveryStatus.FAILED: {DeliveryStatus.SENDING},
    DeliveryStatus.DELIVERED: set(),
}


class ChatMessage(BaseModel):
    """
    Single chat message owned by a ChatSessionClient.

    Created client-side in ``sending`` state with a provisional id. When the
    server confirms it, ``id`` is replaced by the server-assigned id while
    ``client_message_id`` keeps the provisional one so the message can still
    be matched.
    """

    id: str = Field(default_factory=new_client_message_id, description="Client provisional or server-assigned id")
    client_message_id: Optional[str] = Field(None, description="Provisional id generated by the client, if any")
    session_id: str = Field(..., description="Chat session this message belongs to")
    role: MessageRole = Field(..., description="Message role (user, assistant, system)")
    content: str = Field(..., min_length=1, description="Message text")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Creation timestamp")
    delivery_status: DeliveryStatus = Field(default=DeliveryStatus.DELIVERED, description="Delivery status")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Transport or server metadata")

    class Config:
        """Pydantic configuration."""

        validate_assignment = True

    @field_validator('id', 'session_id')
    @classmethod
    def validate_identifier(cls, v):
        """Identifiers cannot be blank."""
        if not v or not v.strip():
            raise ValueError("identifier cannot be empty")
        return v.strip()

    @field_validator('content')
    @classmethod
    def validate_content(cls, v):
        """Reject whitespace-only content."""
        if not v.strip():
            raise ValueError("Content cannot be empty")
        return v

    @field_validator('created_at')
    @classmethod
    def ensure_timezone(cls, v):
        """Naive timestamps are treated as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def outgoing(cls, session_id: str, content: str) -> "ChatMessage":
        """Create an optimistic user message in ``sending`` state."""
        if len(content) > MAX_USER_CONTENT_LENGTH:
            raise ValueError(f"Message content exceeds {MAX_USER_CONTENT_LENGTH} characters")
        client_id = new_client_message_id()
        return cls(
            id=client_id,
            client_message_id=client_id,
            session_id=session_id,
            role=MessageRole.USER,
            content=content,
            delivery_status=DeliveryStatus.SENDING,
        )

    @property
    def key(self) -> str:
        """Stable identity across server reconciliation."""
        return self.client_message_id or self.id

    @property
    def is_confirmed(self) -> bool:
        """True once the server confirmed persistence."""
        return self.delivery_status == DeliveryStatus.DELIVERED

    def can_transition_to(self, status: DeliveryStatus) -> bool:
        """Check whether a delivery status change is allowed."""
        return status in _VALID_TRANSITIONS[DeliveryStatus(self.delivery_status)]

    def transition_to(self, status: DeliveryStatus) -> bool:
        """Move to a new delivery status if the transition is valid.

        Returns:
            True if the status changed, False if the transition was rejected
        """
        if not self.can_transition_to(status):
            return False
        self.delivery_status = status
        return True

    def confirm(self, server_message_id: Optional[str], created_at: Optional[datetime] = None) -> None:
        """Apply server confirmation: adopt the server id and timestamp."""
        if server_message_id and server_message_id != self.id:
            if self.client_message_id is None:
                self.client_message_id = self.id
            self.id = server_message_id
        if created_at is not None:
            self.created_at = created_at
        if self.delivery_status != DeliveryStatus.DELIVERED:
            self.delivery_status = DeliveryStatus.DELIVERED

    def sort_key(self):
        """Ordering key: server timestamp first, id as a stable tiebreaker."""
        return (self.created_at, self.id)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the chat backend message shape."""
        return {
            "id": self.id,
            "client_message_id": self.client_message_id,
            "session_id": self.session_id,
            "type": self.role.value if isinstance(self.role, MessageRole) else self.role,
            "content": self.content,
            "timestamp": self.created_at.isoformat(),
            "status": self.delivery_status.value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any], session_id: Optional[str] = None) -> "ChatMessage":
        """Build a server-delivered message from a backend payload.

        Accepts both ``type`` (backend naming) and ``role`` for the role field,
        and ``timestamp``/``created_at`` for the creation time.
        """
        role = data.get("type") or data.get("role") or MessageRole.ASSISTANT.value
        created_at = data.get("timestamp") or data.get("created_at")
        fields: Dict[str, Any] = {
            "id": str(data["id"]),
            "client_message_id": data.get("client_message_id"),
            "session_id": data.get("session_id") or session_id,
            "role": role,
            "content": data["content"],
            "delivery_status": DeliveryStatus.DELIVERED,
            "metadata": data.get("metadata") or {},
        }
        if created_at:
            fields["created_at"] = created_at
        return cls(**fields)
