"""Exception taxonomy for chat transport failures.

Transient errors are absorbed by the transports and turned into state
changes. Only ``AuthenticationError`` is fatal to a session.
"""

from typing import Optional


class ChatTransportError(Exception):
    """Base class for all chat transport errors."""

    retryable: bool = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientTransportError(ChatTransportError):
    """Connectivity failure that is retried automatically."""

    retryable = True


class TransportTimeoutError(TransientTransportError):
    """An operation did not complete within its deadline."""


class ConnectFailedError(TransientTransportError):
    """The persistent channel could not be established."""


class PollError(TransientTransportError):
    """A polling fetch failed."""


class SendError(TransientTransportError):
    """A message send failed."""


class AuthenticationError(ChatTransportError):
    """Credential rejected by the backend. Never retried."""


class RequestRejectedError(ChatTransportError):
    """The backend refused the request (4xx other than auth)."""


class SessionClosedError(ChatTransportError):
    """Operation attempted on a session that was already closed."""


def is_retryable(error: BaseException) -> bool:
    """Return True if the error should be retried automatically."""
    if isinstance(error, ChatTransportError):
        return error.retryable
    # Bare timeouts and OS-level resets coming from the network layer
    return isinstance(error, (TimeoutError, ConnectionError, OSError))
