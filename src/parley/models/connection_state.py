"""ConnectionState model and transport mode enumerations."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class TransportMode(str, Enum):
    """Transport mode. ``auto`` is a preference, never a runtime state."""

    PERSISTENT = "persistent"
    POLLING = "polling"
    AUTO = "auto"


class CloseReason(str, Enum):
    """Why a persistent connection closed."""

    NORMAL = "normal"
    TIMEOUT = "timeout"
    ERROR = "error"
    SERVER_CLOSED = "server_closed"


class ModeChangeKind(str, Enum):
    """What caused a mode change notification."""

    FALLBACK = "fallback"
    RECOVERED = "recovered"
    MANUAL = "manual"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionState(BaseModel):
    """
    Runtime connection state of a single chat session.

    ``consecutive_failures`` resets on any successful exchange. Once the
    session has fallen back to polling it stays there until a manual request
    or a successful recovery probe.
    """

    mode: TransportMode = Field(..., description="Concrete transport mode in use")
    consecutive_failures: int = Field(default=0, ge=0, description="Failures since the last success")
    last_failure_at: Optional[datetime] = Field(None, description="When the last failure happened")
    last_success_at: Optional[datetime] = Field(None, description="When the last successful exchange happened")
    reconnect_attempts: int = Field(default=0, ge=0, description="Persistent reconnect attempts in this episode")

    degraded: bool = Field(default=False, description="Polling failure threshold reached")
    recovery_probes_attempted: int = Field(default=0, ge=0, description="Background recovery probes run")
    auto_recovery_exhausted: bool = Field(default=False, description="No more automatic recovery probes")
    fallback_reason: Optional[str] = Field(None, description="Reason for the last fallback to polling")
    fatal_error: Optional[str] = Field(None, description="Non-retryable error that ended the session")

    class Config:
        """Pydantic configuration."""

        validate_assignment = True

    @field_validator('mode')
    @classmethod
    def validate_concrete_mode(cls, v):
        """Runtime mode must be concrete."""
        if v == TransportMode.AUTO:
            raise ValueError("auto is a preference, not a runtime mode")
        return v

    @property
    def is_fatal(self) -> bool:
        """True once a non-retryable error ended the session."""
        return self.fatal_error is not None

    def record_success(self) -> None:
        """Reset the failure episode after a successful exchange."""
        self.consecutive_failures = 0
        self.last_success_at = _utcnow()

    def record_failure(self) -> None:
        """Count one failed exchange."""
        self.consecutive_failures += 1
        self.last_failure_at = _utcnow()

    def snapshot(self) -> "ConnectionState":
        """Detached copy for observers."""
        return self.model_copy()


class ModeChangeNotice(BaseModel):
    """Informational notification emitted when the transport mode changes."""

    from_mode: TransportMode
    to_mode: TransportMode
    kind: ModeChangeKind
    reason: str
    timestamp: datetime = Field(default_factory=_utcnow)
