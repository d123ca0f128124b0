"""Unit tests for ModeController transitions, queueing and fatal handling."""

import asyncio

import pytest

from parley.lib.errors import AuthenticationError, ConnectFailedError, PollError, SessionClosedError
from parley.models.chat_message import ChatMessage, MessageRole
from parley.models.connection_state import ModeChangeKind, TransportMode
from parley.models.exchange import PollingCursor
from parley.services.mode_controller import ModeController

from tests.fakes import HANG, FakeChatBackend, RecordingSleep, fast_config, wait_until


RECOVERY_INTERVAL_S = 60.0


@pytest.fixture
def backend():
    return FakeChatBackend()


class Recorder:
    """Collects everything a controller reports."""

    def __init__(self, controller: ModeController):
        self.states = []
        self.notices = []
        self.batches = []
        self.acks = []
        self.fatal = []
        controller.on_state_change(self.states.append)
        controller.on_mode_change(self.notices.append)
        controller.on_messages(self.batches.append)
        controller.on_ack(self.acks.append)
        controller.on_fatal(self.fatal.append)


def make_controller(backend, sleep=None, cursor=None, **overrides):
    controller = ModeController(
        "session-1",
        backend,
        fast_config(**overrides),
        cursor_provider=lambda: cursor or PollingCursor(),
        sleep=sleep or RecordingSleep(block=(RECOVERY_INTERVAL_S,)),
    )
    return controller, Recorder(controller)


async def fall_back_on_first_timeout(controller, backend):
    backend.connect_outcomes.append(HANG)
    await controller.start()
    assert controller.mode == TransportMode.POLLING


class TestStartup:
    """Initial mode selection and first connect."""

    @pytest.mark.asyncio
    async def test_auto_starts_persistent(self, backend):
        controller, events = make_controller(backend)

        await controller.start()

        assert controller.mode == TransportMode.PERSISTENT
        assert controller.probe.is_connected
        assert controller.state.consecutive_failures == 0
        assert events.notices == []
        await controller.close()

    @pytest.mark.asyncio
    async def test_forced_polling_never_connects(self, backend):
        controller, events = make_controller(backend, mode="polling")

        await controller.start()
        await wait_until(lambda: backend.fetch_calls)

        assert controller.mode == TransportMode.POLLING
        assert backend.connect_attempts == 0
        assert controller.polling.is_running
        await controller.close()

    @pytest.mark.asyncio
    async def test_first_connect_timeout_falls_back_immediately(self, backend):
        controller, events = make_controller(backend)

        await fall_back_on_first_timeout(controller, backend)

        assert backend.connect_attempts == 1
        assert [n.kind for n in events.notices] == [ModeChangeKind.FALLBACK]
        assert "timed out" in controller.state.fallback_reason
        assert controller.polling.is_running
        await controller.close()


class TestFallback:
    """Persistent failures lead to polling."""

    @pytest.mark.asyncio
    async def test_threshold_triggers_single_fallback(self, backend):
        sleep = RecordingSleep(block=(RECOVERY_INTERVAL_S,))
        cursor = PollingCursor(last_seen_message_id="srv-7")
        controller, events = make_controller(backend, sleep=sleep, cursor=cursor)
        backend.connect_default = ConnectFailedError("refused")

        await controller.start()
        await wait_until(lambda: controller.mode == TransportMode.POLLING)
        await wait_until(lambda: backend.fetch_calls)

        assert backend.connect_attempts == 3
        assert len(events.notices) == 1
        assert events.notices[0].from_mode == TransportMode.PERSISTENT
        assert backend.fetch_calls[0].last_seen_message_id == "srv-7"
        assert sleep.delays[:2] == [0.0, 0.0]
        await controller.close()

    @pytest.mark.asyncio
    async def test_drop_then_successful_reconnect_stays_persistent(self, backend):
        controller, events = make_controller(backend)
        await controller.start()

        backend.channel.drop()
        await wait_until(lambda: len(backend.channels) == 2 and controller.probe.is_connected)

        assert controller.mode == TransportMode.PERSISTENT
        assert controller.state.consecutive_failures == 0
        assert events.notices == []
        assert any(s.consecutive_failures == 1 for s in events.states)
        await controller.close()

    @pytest.mark.asyncio
    async def test_server_close_reconnects(self, backend):
        controller, events = make_controller(backend)
        await controller.start()

        backend.channel.end()
        await wait_until(lambda: len(backend.channels) == 2 and controller.probe.is_connected)

        assert controller.mode == TransportMode.PERSISTENT
        assert controller.state.consecutive_failures == 0
        assert events.notices == []
        await controller.close()


class TestFrames:
    """Inbound frame dispatch in persistent mode."""

    @pytest.mark.asyncio
    async def test_message_and_ack_frames(self, backend):
        controller, events = make_controller(backend)
        await controller.start()
        message = backend.add_server_message("Hi there")

        backend.channel.push(backend.message_frame(message))
        backend.channel.push({"type": "message", "message_id": "srv-9", "content": "flat frame"})
        backend.channel.push({"type": "ack", "client_message_id": "client-1", "message_id": "srv-3"})
        await wait_until(lambda: len(events.batches) == 2 and events.acks)

        assert events.batches[0][0].id == message.id
        assert events.batches[1][0].role == MessageRole.ASSISTANT
        assert events.batches[1][0].content == "flat frame"
        assert events.acks[0].server_message_id == "srv-3"
        assert events.acks[0].echoed_client_message_id == "client-1"
        await controller.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped(self, backend):
        controller, events = make_controller(backend)
        await controller.start()

        backend.channel.push({"type": "message", "message": {"id": "x"}})
        backend.channel.push({"type": "error", "error": "rate limited"})
        backend.channel.push({"type": "typing"})
        backend.channel.push({"type": "message", "message_id": "srv-1", "content": "after"})
        await wait_until(lambda: events.batches)

        assert [b[0].content for b in events.batches] == ["after"]
        await controller.close()


class TestSend:
    """Outbound routing and queueing."""

    @pytest.mark.asyncio
    async def test_persistent_send_writes_frame(self, backend):
        controller, _ = make_controller(backend)
        await controller.start()
        message = ChatMessage.outgoing("session-1", "Hello")

        ack = await controller.send(message)

        frame = backend.channel.sent[0]
        assert frame["type"] == "message"
        assert frame["client_message_id"] == message.key
        assert frame["content"] == "Hello"
        assert ack.via == TransportMode.PERSISTENT
        assert not ack.confirms_persistence
        await controller.close()

    @pytest.mark.asyncio
    async def test_polling_send_uses_http(self, backend):
        controller, _ = make_controller(backend, mode="polling")
        await controller.start()

        ack = await controller.send(ChatMessage.outgoing("session-1", "Hello"))

        assert ack.via == TransportMode.POLLING
        assert ack.confirms_persistence
        assert len(backend.send_calls) == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_send_while_reconnecting_is_queued_then_flushed(self, backend):
        controller, _ = make_controller(backend)
        await controller.start()
        backend.connect_outcomes.append(HANG)

        backend.channel.drop()
        await wait_until(lambda: not controller.probe.is_connected)
        message = ChatMessage.outgoing("session-1", "queued")
        send = asyncio.create_task(controller.send(message))
        await asyncio.sleep(0.01)
        assert not send.done()

        ack = await asyncio.wait_for(send, 2)

        assert ack.via == TransportMode.PERSISTENT
        assert backend.channel.sent[0]["client_message_id"] == message.key
        await controller.close()

    @pytest.mark.asyncio
    async def test_send_while_polling_degraded_waits_for_recovery(self, backend):
        controller, events = make_controller(backend, mode="polling", max_consecutive_poll_failures=2)
        backend.fetch_default = PollError("503")
        await controller.start()
        await wait_until(lambda: controller.state.degraded)

        send = asyncio.create_task(controller.send(ChatMessage.outgoing("session-1", "Hello")))
        await asyncio.sleep(0.02)
        assert backend.send_calls == []

        backend.fetch_default = None
        ack = await asyncio.wait_for(send, 2)

        assert ack.confirms_persistence
        assert not controller.state.degraded
        assert any(s.degraded for s in events.states)
        await controller.close()

    @pytest.mark.asyncio
    async def test_abandoned_queued_sends_are_pruned(self, backend):
        controller, _ = make_controller(backend, mode="polling", max_consecutive_poll_failures=2)
        backend.fetch_default = PollError("503")
        await controller.start()
        await wait_until(lambda: controller.state.degraded)

        abandoned = asyncio.create_task(controller.send(ChatMessage.outgoing("session-1", "first")))
        await asyncio.sleep(0.01)
        abandoned.cancel()
        await asyncio.gather(abandoned, return_exceptions=True)
        waiting = asyncio.create_task(controller.send(ChatMessage.outgoing("session-1", "second")))
        await asyncio.sleep(0.01)

        assert [m.content for m, _ in controller._outbound] == ["second"]

        backend.fetch_default = None
        await asyncio.wait_for(waiting, 2)
        assert [call[1] for call in backend.send_calls] == ["second"]
        await controller.close()


class TestRecovery:
    """Background recovery probes and manual retry."""

    @pytest.mark.asyncio
    async def test_failed_probe_is_silent(self, backend):
        controller, events = make_controller(backend)
        await fall_back_on_first_timeout(controller, backend)
        backend.connect_default = ConnectFailedError("still down")
        published = len(events.states)

        assert await controller.run_recovery_probe() is False

        assert controller.mode == TransportMode.POLLING
        assert controller.state.recovery_probes_attempted == 1
        assert len(events.notices) == 1
        assert all(s.mode == TransportMode.POLLING and s.fatal_error is None for s in events.states[published:])
        await controller.close()

    @pytest.mark.asyncio
    async def test_successful_probe_swaps_back(self, backend):
        controller, events = make_controller(backend)
        await fall_back_on_first_timeout(controller, backend)

        assert await controller.run_recovery_probe() is True

        assert controller.mode == TransportMode.PERSISTENT
        assert not controller.polling.is_running
        assert events.notices[-1].kind == ModeChangeKind.RECOVERED
        assert controller.state.fallback_reason is None
        await controller.close()

    @pytest.mark.asyncio
    async def test_recovery_stops_after_max_probes(self, backend):
        sleep = RecordingSleep()
        controller, events = make_controller(backend, sleep=sleep, max_recovery_probes=2)
        backend.connect_default = ConnectFailedError("down")

        await fall_back_on_first_timeout(controller, backend)
        await wait_until(lambda: controller.state.auto_recovery_exhausted)

        assert sleep.delays == [RECOVERY_INTERVAL_S, RECOVERY_INTERVAL_S]
        assert backend.connect_attempts == 3
        assert controller.mode == TransportMode.POLLING
        assert events.states[-1].auto_recovery_exhausted
        await controller.close()

    @pytest.mark.asyncio
    async def test_zero_probes_means_manual_only(self, backend):
        controller, _ = make_controller(backend, max_recovery_probes=0)

        await fall_back_on_first_timeout(controller, backend)

        assert controller.state.auto_recovery_exhausted
        assert backend.connect_attempts == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_manual_retry_success(self, backend):
        controller, events = make_controller(backend)
        await fall_back_on_first_timeout(controller, backend)

        assert await controller.request_persistent() is True

        assert controller.mode == TransportMode.PERSISTENT
        assert [n.kind for n in events.notices] == [ModeChangeKind.FALLBACK, ModeChangeKind.MANUAL]
        await controller.close()

    @pytest.mark.asyncio
    async def test_manual_retry_failure_keeps_polling(self, backend):
        controller, events = make_controller(backend)
        await fall_back_on_first_timeout(controller, backend)
        backend.connect_default = ConnectFailedError("down")

        assert await controller.request_persistent() is False

        assert controller.mode == TransportMode.POLLING
        assert controller.polling.is_running
        assert len(events.notices) == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_send_during_failed_manual_retry_goes_out_over_polling(self, backend):
        controller, _ = make_controller(backend)
        await fall_back_on_first_timeout(controller, backend)
        backend.connect_outcomes.append(HANG)

        retry = asyncio.create_task(controller.request_persistent())
        await wait_until(lambda: controller._swapping)
        send = asyncio.create_task(controller.send(ChatMessage.outgoing("session-1", "Hello")))
        await asyncio.sleep(0.01)
        assert not send.done()

        assert await retry is False
        ack = await asyncio.wait_for(send, 0.5)

        assert ack.via == TransportMode.POLLING
        assert len(backend.send_calls) == 1
        assert not controller._outbound
        assert controller.mode == TransportMode.POLLING
        await controller.close()

    @pytest.mark.asyncio
    async def test_concurrent_requests_coalesce(self, backend):
        controller, events = make_controller(backend)
        await fall_back_on_first_timeout(controller, backend)

        results = await asyncio.gather(controller.request_persistent(), controller.request_persistent())

        assert results == [True, True]
        assert backend.connect_attempts == 2
        assert [n.kind for n in events.notices] == [ModeChangeKind.FALLBACK, ModeChangeKind.MANUAL]
        await controller.close()

    @pytest.mark.asyncio
    async def test_manual_retry_while_persistent_and_connected(self, backend):
        controller, _ = make_controller(backend)
        await controller.start()

        assert await controller.request_persistent() is True
        assert backend.connect_attempts == 1
        await controller.close()


class TestFatalAndClose:
    """Authentication failures and teardown."""

    @pytest.mark.asyncio
    async def test_authentication_on_connect_is_fatal(self, backend):
        controller, events = make_controller(backend)
        backend.connect_outcomes.append(AuthenticationError("forbidden", status_code=403))

        await controller.start()

        assert controller.state.is_fatal
        assert len(events.fatal) == 1
        assert events.states[-1].fatal_error
        with pytest.raises(SessionClosedError):
            await controller.send(ChatMessage.outgoing("session-1", "Hello"))
        with pytest.raises(SessionClosedError):
            await controller.request_persistent()
        await controller.close()

    @pytest.mark.asyncio
    async def test_authentication_while_polling_is_fatal(self, backend):
        controller, events = make_controller(backend, mode="polling")
        backend.fetch_default = AuthenticationError("expired", status_code=401)

        await controller.start()
        await wait_until(lambda: events.fatal)

        assert controller.state.is_fatal
        await wait_until(lambda: not controller.polling.is_running)
        await controller.close()

    @pytest.mark.asyncio
    async def test_authentication_on_send_is_fatal(self, backend):
        controller, events = make_controller(backend, mode="polling")
        await controller.start()
        backend.send_outcomes.append(AuthenticationError("expired", status_code=401))

        with pytest.raises(AuthenticationError):
            await controller.send(ChatMessage.outgoing("session-1", "Hello"))

        assert len(events.fatal) == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, backend):
        controller, events = make_controller(backend)
        await controller.start()
        channel = backend.channel

        await controller.close()
        await controller.close()

        assert controller.closed
        assert channel.close_calls == 1
        assert not controller.probe.is_connected
        assert events.notices == []
        with pytest.raises(SessionClosedError):
            await controller.send(ChatMessage.outgoing("session-1", "Hello"))

    @pytest.mark.asyncio
    async def test_late_frames_after_close_are_discarded(self, backend):
        controller, events = make_controller(backend)
        await controller.start()
        channel = backend.channel

        await controller.close()
        channel.push(backend.message_frame(backend.add_server_message("late")))
        await asyncio.sleep(0.02)

        assert events.batches == []

    @pytest.mark.asyncio
    async def test_close_cancels_queued_sends(self, backend):
        controller, _ = make_controller(backend)
        backend.connect_outcomes.append(HANG)
        start = asyncio.create_task(controller.start())
        await asyncio.sleep(0)

        send = asyncio.create_task(controller.send(ChatMessage.outgoing("session-1", "Hello")))
        await asyncio.sleep(0.01)
        await controller.close()

        with pytest.raises(asyncio.CancelledError):
            await send
        await start
