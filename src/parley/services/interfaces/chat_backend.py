"""Abstract interfaces for the chat backend.

Defines IChatBackend and IPersistentChannel, the narrow seam between the
transport core and whatever serves chat messages (the HTTP/WebSocket API in
production, an in-memory fake in tests).
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict

from parley.models.exchange import PollingCursor, PollResponse, SendAck


class IPersistentChannel(ABC):
    """One open bidirectional channel for a chat session."""

    @abstractmethod
    async def send(self, frame: Dict[str, Any]) -> None:
        """Write one frame to the channel.

        Raises:
            TransientTransportError: if the channel is broken
        """
        pass

    @abstractmethod
    def frames(self) -> AsyncIterator[Dict[str, Any]]:
        """Iterate inbound frames.

        The iterator ends normally when the server closes the channel
        cleanly. An abnormal drop raises ``TransientTransportError``; a
        missed keepalive raises ``TransportTimeoutError``.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        pass


class IChatBackend(ABC):
    """Abstract interface for the chat backend API."""

    @abstractmethod
    async def send_message(
        self,
        session_id: str,
        content: str,
        client_message_id: str
    ) -> SendAck:
        """Send one user message.

        Args:
            session_id: Chat session identifier
            content: Message text
            client_message_id: Provisional client id, expected to be echoed

        Returns:
            SendAck with the server id, the echoed client id and any inline
            assistant reply

        Raises:
            AuthenticationError: credential rejected
            RequestRejectedError: request refused (not retried)
            SendError: transient failure
        """
        pass

    @abstractmethod
    async def fetch_messages_since(
        self,
        session_id: str,
        cursor: PollingCursor
    ) -> PollResponse:
        """Fetch messages newer than ``cursor``.

        Raises:
            AuthenticationError: credential rejected
            PollError: transient failure
        """
        pass

    @abstractmethod
    async def open_persistent_channel(self, session_id: str) -> IPersistentChannel:
        """Open a persistent channel and complete its handshake.

        Raises:
            AuthenticationError: credential rejected during the handshake
            ConnectFailedError: the channel could not be established
        """
        pass

    @abstractmethod
    async def aclose(self) -> None:
        """Release pooled connections."""
        pass
