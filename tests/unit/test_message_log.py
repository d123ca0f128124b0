"""Unit tests for MessageLog ordering and reconciliation."""

import pytest
from datetime import datetime, timedelta, timezone

from parley.models.chat_message import ChatMessage, DeliveryStatus, MessageRole, is_provisional_id
from parley.models.exchange import SendAck
from parley.services.message_log import MessageLog


BASE = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def server_message(message_id, content, offset, role=MessageRole.ASSISTANT, client_message_id=None):
    return ChatMessage(
        id=message_id,
        client_message_id=client_message_id,
        session_id="session-1",
        role=role,
        content=content,
        created_at=BASE + timedelta(seconds=offset),
    )


def outgoing(content, offset):
    message = ChatMessage.outgoing("session-1", content)
    message.created_at = BASE + timedelta(seconds=offset)
    return message


@pytest.fixture
def log():
    return MessageLog(reconcile_window_ms=30000)


class TestOrdering:
    """Messages are kept in created_at order."""

    def test_out_of_order_arrival_is_sorted(self, log):
        log.merge(server_message("m3", "third", 3))
        log.merge(server_message("m1", "first", 1))
        log.merge(server_message("m2", "second", 2))

        assert [m.id for m in log.snapshot()] == ["m1", "m2", "m3"]

    def test_server_timestamp_repositions_optimistic_message(self, log):
        local = log.add(outgoing("Hello", 10))
        log.merge(server_message("m1", "earlier reply", 5))

        log.confirm(local.key, "srv-7", BASE + timedelta(seconds=1))

        assert [m.content for m in log.snapshot()] == ["Hello", "earlier reply"]

    def test_snapshot_is_detached(self, log):
        log.merge(server_message("m1", "hi", 1))
        log.snapshot()[0].content = "changed"

        assert log.get("m1").content == "hi"

    def test_duplicate_add_rejected(self, log):
        message = outgoing("Hello", 1)
        log.add(message)

        with pytest.raises(ValueError):
            log.add(message)


class TestReconciliation:
    """Server copies never duplicate local messages."""

    def test_match_by_echoed_client_id(self, log):
        local = log.add(outgoing("Hello", 1))

        updated = log.merge(server_message("srv-1", "Hello", 2, MessageRole.USER, client_message_id=local.key))

        assert len(log) == 1
        assert updated.id == "srv-1"
        assert updated.key == local.key
        assert updated.delivery_status == DeliveryStatus.DELIVERED

    def test_match_by_server_id(self, log):
        log.merge(server_message("m1", "partial", 1))

        updated = log.merge(server_message("m1", "partial and complete", 1))

        assert len(log) == 1
        assert updated.content == "partial and complete"

    def test_redelivery_without_change_is_silent(self, log):
        log.merge(server_message("m1", "hi", 1))
        assert log.merge(server_message("m1", "hi", 1)) is None

    def test_match_by_content_without_echo(self, log, caplog):
        local = log.add(outgoing("Hello", 1))

        updated = log.merge(server_message("srv-9", "Hello", 3, MessageRole.USER))

        assert len(log) == 1
        assert updated.key == local.key
        assert updated.id == "srv-9"
        assert "matched local message" in caplog.text

    def test_content_match_respects_window(self, log):
        log.add(outgoing("Hello", 1))

        log.merge(server_message("srv-9", "Hello", 120, MessageRole.USER))

        assert len(log) == 2

    def test_content_match_picks_closest_candidate(self, log):
        first = log.add(outgoing("ok", 1))
        second = log.add(outgoing("ok", 20))

        updated = log.merge(server_message("srv-2", "ok", 21, MessageRole.USER))

        assert updated.key == second.key
        assert log.get(first.key).delivery_status == DeliveryStatus.SENDING

    def test_confirmed_message_with_server_id_not_matched_by_content(self, log):
        local = log.add(outgoing("ok", 1))
        log.confirm(local.key, "srv-1")

        log.merge(server_message("srv-2", "ok", 2, MessageRole.USER))

        assert len(log) == 2

    def test_inline_reply_then_polled_copy(self, log):
        """An inline reply without a server id is replaced by its polled copy."""
        local = log.add(outgoing("Hello", 1))
        ack = SendAck(server_message_id="srv-1", echoed_client_message_id=local.key,
                      inline_reply_content="Hi, how can I help?")
        log.confirm(local.key, ack.server_message_id)
        reply = ack.inline_reply("session-1")
        reply.created_at = BASE + timedelta(seconds=2)
        log.merge(reply)
        assert is_provisional_id(reply.id)

        log.merge(server_message("srv-1", "Hello", 1, MessageRole.USER))
        log.merge(server_message("srv-2", "Hi, how can I help?", 2))

        assert [m.id for m in log.snapshot()] == ["srv-1", "srv-2"]

    def test_server_id_collision_keeps_local_id(self, log):
        log.merge(server_message("srv-1", "existing", 1))
        local = log.add(outgoing("Hello", 2))

        updated = log.confirm(local.key, "srv-1")

        assert updated.id == local.id
        assert updated.delivery_status == DeliveryStatus.DELIVERED
        assert len(log) == 2


class TestStatusAndCursor:
    """Status updates, pending list and cursor."""

    def test_update_status_rejects_invalid_transition(self, log):
        local = log.add(outgoing("Hello", 1))

        assert log.update_status(local.key, DeliveryStatus.FAILED).delivery_status == DeliveryStatus.FAILED
        assert log.update_status(local.key, DeliveryStatus.FAILED) is None
        assert log.update_status("unknown", DeliveryStatus.SENT) is None

    def test_pending(self, log):
        sending = log.add(outgoing("a", 1))
        sent = log.add(outgoing("b", 2))
        log.update_status(sent.key, DeliveryStatus.SENT)
        failed = log.add(outgoing("c", 3))
        log.update_status(failed.key, DeliveryStatus.FAILED)

        assert {m.key for m in log.pending()} == {sending.key, sent.key}

    def test_cursor_skips_provisional_ids(self, log):
        log.merge(server_message("m1", "hi", 1))
        local = log.add(outgoing("Hello", 2))
        log.confirm(local.key)

        cursor = log.cursor()

        assert cursor.last_seen_message_id == "m1"
        assert cursor.last_seen_timestamp == BASE + timedelta(seconds=1)

    def test_empty_cursor(self, log):
        assert log.cursor().is_empty
