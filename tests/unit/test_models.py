"""
Unit tests for data models validation and serialization.

Tests the Parley data models for validation, delivery lifecycle rules
and the backend payload shapes.
"""

import pytest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from parley.models.chat_message import (
    ChatMessage,
    DeliveryStatus,
    MessageRole,
    is_provisional_id,
)
from parley.models.connection_state import ConnectionState, TransportMode
from parley.models.exchange import PollingCursor, SendAck


class TestChatMessage:
    """Test ChatMessage validation and delivery lifecycle."""

    def test_outgoing_message_is_optimistic(self):
        """Outgoing messages start in sending state with a provisional id."""
        message = ChatMessage.outgoing("session-1", "Hello")

        assert message.delivery_status == DeliveryStatus.SENDING
        assert message.role == MessageRole.USER
        assert message.id == message.client_message_id
        assert is_provisional_id(message.id)
        assert message.key == message.id
        assert message.created_at.tzinfo is not None

    def test_blank_content_rejected(self):
        """Whitespace-only content is not a message."""
        with pytest.raises(ValidationError):
            ChatMessage.outgoing("session-1", "   ")

    def test_oversized_content_rejected(self):
        with pytest.raises(ValueError, match="exceeds 10000"):
            ChatMessage.outgoing("session-1", "x" * 10001)

    def test_server_messages_are_not_length_capped(self):
        """Only user input is capped; assistant replies can be long."""
        message = ChatMessage.from_wire(
            {"id": "7", "type": "assistant", "content": "x" * 12000},
            session_id="session-1",
        )

        assert len(message.content) == 12000

    def test_session_id_required(self):
        with pytest.raises(ValidationError) as exc_info:
            ChatMessage(role=MessageRole.USER, content="hi")
        assert "session_id" in str(exc_info.value)

    def test_valid_status_transitions(self):
        message = ChatMessage.outgoing("session-1", "Hello")

        assert message.transition_to(DeliveryStatus.SENT)
        assert message.transition_to(DeliveryStatus.FAILED)
        assert message.transition_to(DeliveryStatus.SENDING)
        assert message.delivery_status == DeliveryStatus.SENDING

    def test_delivered_is_terminal(self):
        message = ChatMessage.outgoing("session-1", "Hello")
        message.confirm("srv-1")

        assert not message.transition_to(DeliveryStatus.FAILED)
        assert not message.transition_to(DeliveryStatus.SENDING)
        assert message.delivery_status == DeliveryStatus.DELIVERED

    def test_failed_cannot_jump_to_sent(self):
        message = ChatMessage.outgoing("session-1", "Hello")
        message.transition_to(DeliveryStatus.FAILED)

        assert not message.can_transition_to(DeliveryStatus.SENT)

    def test_confirm_adopts_server_id_and_keeps_key(self):
        """Server confirmation replaces the id but the key stays stable."""
        message = ChatMessage.outgoing("session-1", "Hello")
        client_id = message.id
        server_time = datetime(2026, 1, 1, tzinfo=timezone.utc)

        message.confirm("srv-42", server_time)

        assert message.id == "srv-42"
        assert message.client_message_id == client_id
        assert message.key == client_id
        assert message.created_at == server_time
        assert message.is_confirmed

    def test_confirm_with_same_id_only_marks_delivered(self):
        message = ChatMessage(id="srv-1", session_id="session-1", role=MessageRole.ASSISTANT,
                              content="Hi", delivery_status=DeliveryStatus.SENT)
        message.confirm("srv-1")

        assert message.client_message_id is None
        assert message.delivery_status == DeliveryStatus.DELIVERED

    def test_from_wire_accepts_backend_naming(self):
        message = ChatMessage.from_wire({
            "id": 17,
            "type": "assistant",
            "content": "Hi there",
            "timestamp": "2026-03-01T10:00:00",
        }, session_id="session-1")

        assert message.id == "17"
        assert message.role == MessageRole.ASSISTANT
        assert message.session_id == "session-1"
        assert message.delivery_status == DeliveryStatus.DELIVERED
        assert message.created_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_wire_round_trip_keeps_client_id(self):
        original = ChatMessage.outgoing("session-1", "Hello")
        original.confirm("srv-5")

        restored = ChatMessage.from_wire(original.to_wire())

        assert restored.id == "srv-5"
        assert restored.key == original.key
        assert restored.role == MessageRole.USER

    def test_sort_key_orders_by_time_then_id(self):
        now = datetime.now(timezone.utc)
        a = ChatMessage(id="b", session_id="s", role=MessageRole.USER, content="1", created_at=now)
        b = ChatMessage(id="a", session_id="s", role=MessageRole.USER, content="2", created_at=now)
        c = ChatMessage(id="c", session_id="s", role=MessageRole.USER, content="3", created_at=now - timedelta(seconds=1))

        assert [m.id for m in sorted([a, b, c], key=lambda m: m.sort_key())] == ["c", "a", "b"]


class TestConnectionState:
    """Test ConnectionState rules."""

    def test_auto_is_not_a_runtime_mode(self):
        with pytest.raises(ValidationError):
            ConnectionState(mode=TransportMode.AUTO)

    def test_failure_and_success_accounting(self):
        state = ConnectionState(mode=TransportMode.PERSISTENT)
        state.record_failure()
        state.record_failure()

        assert state.consecutive_failures == 2
        assert state.last_failure_at is not None

        state.record_success()
        assert state.consecutive_failures == 0
        assert state.last_success_at is not None

    def test_negative_failures_rejected(self):
        state = ConnectionState(mode=TransportMode.POLLING)
        with pytest.raises(ValidationError):
            state.consecutive_failures = -1

    def test_snapshot_is_detached(self):
        state = ConnectionState(mode=TransportMode.PERSISTENT)
        snapshot = state.snapshot()
        state.mode = TransportMode.POLLING

        assert snapshot.mode == TransportMode.PERSISTENT

    def test_fatal_flag(self):
        state = ConnectionState(mode=TransportMode.POLLING)
        assert not state.is_fatal
        state.fatal_error = "401 Unauthorized"
        assert state.is_fatal


class TestPollingCursor:
    """Test PollingCursor advancement."""

    def _message(self, message_id: str, offset: int) -> ChatMessage:
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        return ChatMessage(id=message_id, session_id="s", role=MessageRole.ASSISTANT,
                           content=message_id, created_at=base + timedelta(seconds=offset))

    def test_advance_to_newest(self):
        cursor = PollingCursor().advance([self._message("m2", 2), self._message("m1", 1)])

        assert cursor.last_seen_message_id == "m2"
        assert cursor.last_seen_timestamp.second == 2

    def test_advance_with_nothing_keeps_cursor(self):
        cursor = PollingCursor(last_seen_message_id="m1")
        assert cursor.advance([]) is cursor
        assert not cursor.is_empty
        assert PollingCursor().is_empty

    def test_never_moves_backwards(self):
        cursor = PollingCursor().advance([self._message("m5", 5)])
        assert cursor.advance([self._message("m3", 3)]).last_seen_message_id == "m5"


class TestSendAck:
    """Test SendAck parsing of send responses and ack frames."""

    def test_plain_ack(self):
        ack = SendAck.from_payload({"success": True, "message_id": 12, "client_message_id": "client-a"})

        assert ack.server_message_id == "12"
        assert ack.echoed_client_message_id == "client-a"
        assert ack.confirms_persistence
        assert ack.inline_reply("session-1") is None

    def test_assistant_response_is_inline_reply(self):
        ack = SendAck.from_payload({
            "success": True,
            "type": "assistant",
            "message_id": "srv-9",
            "content": "Hi, how can I help?",
            "user_message_id": "srv-8",
            "timestamp": "2026-01-01T00:00:01Z",
        })

        assert ack.server_message_id == "srv-8"
        reply = ack.inline_reply("session-1")
        assert reply.id == "srv-9"
        assert reply.role == MessageRole.ASSISTANT
        assert reply.content == "Hi, how can I help?"
        assert reply.delivery_status == DeliveryStatus.DELIVERED

    def test_nested_reply_object(self):
        ack = SendAck.from_payload({
            "message_id": "srv-1",
            "reply": {"id": "srv-2", "content": "Sure"},
        })

        assert ack.server_message_id == "srv-1"
        assert ack.inline_reply_id == "srv-2"

    def test_inline_reply_without_id_gets_provisional_id(self):
        ack = SendAck.from_payload({"type": "assistant", "content": "Hello!", "client_message_id": "client-x"})

        reply = ack.inline_reply("session-1")
        assert is_provisional_id(reply.id)
        assert ack.server_message_id is None
        assert not ack.confirms_persistence
