"""Ordered, de-duplicated in-memory message list for one chat session."""

import bisect
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from parley.models.chat_message import ChatMessage, DeliveryStatus, MessageRole, is_provisional_id
from parley.models.exchange import PollingCursor


logger = logging.getLogger(__name__)


class MessageLog:
    """
    Messages of one session kept in ``created_at`` order.

    Every message is stored once. Server copies of optimistic messages are
    matched by echoed client id, then by id, then (for server copies returned
    without an echo) by identical content within ``reconcile_window_ms``.
    Public methods return detached copies; the stored objects never leave.
    """

    def __init__(self, reconcile_window_ms: int = 30000):
        self.reconcile_window = timedelta(milliseconds=reconcile_window_ms)
        self._messages: List[ChatMessage] = []
        self._by_key: Dict[str, ChatMessage] = {}
        self._by_id: Dict[str, ChatMessage] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not None

    def snapshot(self) -> List[ChatMessage]:
        """Copies of all messages in order."""
        return [m.model_copy() for m in self._messages]

    def get(self, key: str) -> Optional[ChatMessage]:
        """Copy of the message with this key or id."""
        message = self._lookup(key)
        return message.model_copy() if message else None

    def _lookup(self, key: str) -> Optional[ChatMessage]:
        return self._by_key.get(key) or self._by_id.get(key)

    # Ordering

    def _insert(self, message: ChatMessage) -> None:
        keys = [m.sort_key() for m in self._messages]
        self._messages.insert(bisect.bisect_right(keys, message.sort_key()), message)
        self._by_key[message.key] = message
        self._by_id[message.id] = message

    def _reposition(self, message: ChatMessage) -> None:
        self._messages.remove(message)
        keys = [m.sort_key() for m in self._messages]
        self._messages.insert(bisect.bisect_right(keys, message.sort_key()), message)

    # Mutations

    def add(self, message: ChatMessage) -> ChatMessage:
        """Append a new local message.

        Raises:
            ValueError: a message with the same key is already present
        """
        if self._lookup(message.key) is not None:
            raise ValueError(f"Message {message.key} already in log")
        stored = message.model_copy()
        self._insert(stored)
        return stored.model_copy()

    def merge(self, incoming: ChatMessage) -> Optional[ChatMessage]:
        """Merge a server-delivered message.

        Returns:
            Copy of the new or updated message, or None if nothing changed
        """
        existing = self._match(incoming)
        if existing is None:
            stored = incoming.model_copy()
            self._insert(stored)
            return stored.model_copy()

        changed = self._apply_confirmation(existing, incoming.id, incoming.created_at)
        if existing.content != incoming.content and existing.role != MessageRole.USER:
            # Assistant replies may be re-delivered with completed content
            existing.content = incoming.content
            changed = True
        if incoming.metadata and any(existing.metadata.get(k) != v for k, v in incoming.metadata.items()):
            existing.metadata = {**existing.metadata, **incoming.metadata}
            changed = True
        return existing.model_copy() if changed else None

    def _match(self, incoming: ChatMessage) -> Optional[ChatMessage]:
        if incoming.client_message_id and incoming.client_message_id in self._by_key:
            return self._by_key[incoming.client_message_id]
        existing = self._by_id.get(incoming.id) or self._by_key.get(incoming.id)
        if existing is not None:
            return existing
        if not incoming.client_message_id and incoming.role != MessageRole.SYSTEM:
            return self._match_by_content(incoming)
        return None

    @staticmethod
    def _awaits_server_copy(candidate: ChatMessage) -> bool:
        # Unconfirmed optimistic sends, or inline replies whose id was made up locally
        if candidate.role == MessageRole.USER:
            return not candidate.is_confirmed or is_provisional_id(candidate.id)
        return is_provisional_id(candidate.id)

    def _match_by_content(self, incoming: ChatMessage) -> Optional[ChatMessage]:
        best: Optional[ChatMessage] = None
        best_gap: Optional[timedelta] = None
        for candidate in self._messages:
            if candidate.role != incoming.role or not self._awaits_server_copy(candidate):
                continue
            if candidate.content != incoming.content:
                continue
            gap = abs(candidate.created_at - incoming.created_at)
            if gap > self.reconcile_window:
                continue
            if best_gap is None or gap < best_gap:
                best, best_gap = candidate, gap
        if best is not None:
            logger.warning(
                f"Server copy {incoming.id} matched local message {best.key} by content; "
                "the backend did not echo a client message id"
            )
        return best

    def _apply_confirmation(
        self,
        message: ChatMessage,
        server_message_id: Optional[str],
        created_at: Optional[datetime],
    ) -> bool:
        if server_message_id and server_message_id != message.id:
            owner = self._by_id.get(server_message_id)
            if owner is not None and owner is not message:
                logger.warning(f"Server id {server_message_id} already belongs to {owner.key}; keeping {message.id}")
                server_message_id = None

        before = (message.id, message.created_at, message.delivery_status)
        old_id = message.id
        message.confirm(server_message_id, created_at)
        after = (message.id, message.created_at, message.delivery_status)
        if before == after:
            return False

        if old_id != message.id:
            if self._by_id.get(old_id) is message:
                del self._by_id[old_id]
            self._by_id[message.id] = message
        self._by_key[message.key] = message
        self._reposition(message)
        return True

    def confirm(
        self,
        key: str,
        server_message_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[ChatMessage]:
        """Mark a local message delivered under its server id.

        Returns:
            Copy of the updated message, or None if unknown or unchanged
        """
        message = self._lookup(key)
        if message is None:
            return None
        if not self._apply_confirmation(message, server_message_id, created_at):
            return None
        return message.model_copy()

    def update_status(self, key: str, status: DeliveryStatus) -> Optional[ChatMessage]:
        """Move a message to ``status`` if the transition is allowed.

        Returns:
            Copy of the updated message, or None if unknown or rejected
        """
        message = self._lookup(key)
        if message is None or not message.transition_to(status):
            return None
        return message.model_copy()

    def pending(self) -> List[ChatMessage]:
        """Copies of local messages still awaiting delivery."""
        return [
            m.model_copy() for m in self._messages
            if m.delivery_status in (DeliveryStatus.SENDING, DeliveryStatus.SENT)
        ]

    def cursor(self) -> PollingCursor:
        """Cursor after the newest message known to the server."""
        for message in reversed(self._messages):
            if message.is_confirmed and not is_provisional_id(message.id):
                return PollingCursor(
                    last_seen_message_id=message.id,
                    last_seen_timestamp=message.created_at,
                )
        return PollingCursor()
