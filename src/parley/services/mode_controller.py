"""
Transport mode state machine for one chat session.

Owns the ConnectionState and decides which transport carries traffic:
the persistent channel while it is healthy, HTTP polling after repeated
failures, and back to the persistent channel after a manual request or a
successful background recovery probe.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from parley.lib.config import ChatTransportConfig
from parley.lib.errors import AuthenticationError, SessionClosedError
from parley.lib.logging_config import get_audit_logger
from parley.lib.metrics import get_metrics_collector
from parley.lib.retry import backoff_delay
from parley.models.chat_message import ChatMessage
from parley.models.connection_state import (
    CloseReason,
    ConnectionState,
    ModeChangeKind,
    ModeChangeNotice,
    TransportMode,
)
from parley.models.exchange import ConnectResult, PollingCursor, SendAck
from parley.services.interfaces.chat_backend import IChatBackend
from parley.services.polling_transport import PollingTransport
from parley.services.transport_probe import TransportProbe


logger = logging.getLogger(__name__)

Transition = Tuple[TransportMode, ModeChangeKind, str]


class ModeController:
    """
    Persistent/polling state machine with fallback and recovery.

    Transport failures never end the session: they become state changes.
    Only a credential rejection is fatal. At most one mode transition runs
    at a time; requests arriving meanwhile coalesce and the latest wins.
    """

    def __init__(
        self,
        session_id: str,
        backend: IChatBackend,
        config: ChatTransportConfig,
        cursor_provider: Callable[[], PollingCursor] = PollingCursor,
        probe: Optional[TransportProbe] = None,
        polling: Optional[PollingTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the controller.

        Args:
            session_id: Chat session identifier
            backend: Chat backend used by both transports
            config: Transport tuning
            cursor_provider: Returns the cursor after the last known message
            probe: Persistent transport (built from ``backend`` if omitted)
            polling: Polling transport (built from ``backend`` if omitted)
            sleep: Awaitable sleep used for reconnect and recovery delays
            clock: Monotonic clock for polling activity windows
        """
        self.session_id = session_id
        self.config = config
        self.preference = TransportMode(config.mode)
        self.probe = probe or TransportProbe(backend, config.connect_timeout_ms, config.send_timeout_ms)
        self.polling = polling or PollingTransport(backend, session_id, config, clock=clock)
        self._cursor_provider = cursor_provider
        self._sleep = sleep

        initial = TransportMode.POLLING if self.preference == TransportMode.POLLING else TransportMode.PERSISTENT
        self.state = ConnectionState(mode=initial)
        self._had_persistent_success = False

        self._started = False
        self._closed = False
        self._swapping = False
        self._expect_close = False
        self._flushing = False
        self._inbound_buffer: List[Dict[str, Any]] = []
        self._outbound: Deque[Tuple[ChatMessage, asyncio.Future]] = deque()

        self._pending_transition: Optional[Transition] = None
        self._transitioning = False
        self._transition_idle = asyncio.Event()
        self._transition_idle.set()

        self._reconnect_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._message_handlers: List[Callable[[List[ChatMessage]], None]] = []
        self._ack_handlers: List[Callable[[SendAck], None]] = []
        self._state_handlers: List[Callable[[ConnectionState], None]] = []
        self._mode_handlers: List[Callable[[ModeChangeNotice], None]] = []
        self._fatal_handlers: List[Callable[[AuthenticationError], None]] = []

        self._audit = get_audit_logger()
        self._unsubscribe = [
            self.probe.on_message(self._on_frame),
            self.probe.on_close(self._on_probe_close),
            self.polling.on_messages(self._on_polled),
            self.polling.on_degraded(self._on_degraded),
            self.polling.on_result(self._on_poll_result),
            self.polling.on_fatal(self._fatal),
        ]

    # Handler registration

    def on_messages(self, handler: Callable[[List[ChatMessage]], None]) -> Callable[[], None]:
        """Messages received from either transport, sorted per batch."""
        return self._register(self._message_handlers, handler)

    def on_ack(self, handler: Callable[[SendAck], None]) -> Callable[[], None]:
        """Acks pushed over the persistent channel."""
        return self._register(self._ack_handlers, handler)

    def on_state_change(self, handler: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self._register(self._state_handlers, handler)

    def on_mode_change(self, handler: Callable[[ModeChangeNotice], None]) -> Callable[[], None]:
        return self._register(self._mode_handlers, handler)

    def on_fatal(self, handler: Callable[[AuthenticationError], None]) -> Callable[[], None]:
        return self._register(self._fatal_handlers, handler)

    @staticmethod
    def _register(handlers: list, handler) -> Callable[[], None]:
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    @staticmethod
    def _notify(handlers: list, *args) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Mode controller handler failed")

    def _publish_state(self) -> None:
        self._notify(self._state_handlers, self.state.snapshot())

    def _announce(self, from_mode: TransportMode, to_mode: TransportMode, kind: ModeChangeKind, reason: str) -> None:
        notice = ModeChangeNotice(from_mode=from_mode, to_mode=to_mode, kind=kind, reason=reason)
        logger.info(f"Session {self.session_id} switched {from_mode.value} -> {to_mode.value} ({kind.value}): {reason}")
        self._audit.log_mode_change(self.session_id, from_mode.value, to_mode.value, kind.value, reason)
        get_metrics_collector().record_mode_transition(from_mode.value, to_mode.value, kind.value)
        self._notify(self._mode_handlers, notice)

    def _emit_messages(self, messages: List[ChatMessage]) -> None:
        if self._closed or not messages:
            return
        self._notify(self._message_handlers, sorted(messages, key=lambda m: m.sort_key()))

    # Task bookkeeping

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # Lifecycle

    @property
    def mode(self) -> TransportMode:
        return self.state.mode

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Open the initial transport."""
        if self._started:
            return
        self._started = True
        get_metrics_collector().record_session_opened()

        if self.state.mode == TransportMode.POLLING:
            self.polling.start(self._cursor_provider())
            self._publish_state()
            return

        result = await self._attempt_connect()
        if result is None:
            return
        if result.connected:
            self._schedule_flush()
        elif self._should_fall_back(result):
            await self._request_transition(TransportMode.POLLING, ModeChangeKind.FALLBACK, self._fallback_reason(result))
        else:
            self._start_reconnect()

    async def close(self) -> None:
        """Tear down whichever transport is active. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribe:
            unsubscribe()

        pending = [t for t in (self._reconnect_task, self._recovery_task, *self._tasks) if t is not None]
        for task in pending:
            self._cancel(task)
        others = [t for t in pending if t is not asyncio.current_task()]
        if others:
            await asyncio.gather(*others, return_exceptions=True)

        await self._close_probe()
        await self.polling.stop()

        while self._outbound:
            _, future = self._outbound.popleft()
            future.cancel()
        self._inbound_buffer.clear()

        if self._started:
            get_metrics_collector().record_session_closed()
        logger.info(f"Mode controller closed for session {self.session_id}")

    # Persistent connection

    async def _connect_probe(self) -> Optional[ConnectResult]:
        try:
            return await self.probe.connect(self.session_id)
        except AuthenticationError as e:
            self._fatal(e)
            return None

    async def _close_probe(self) -> None:
        self._expect_close = True
        try:
            await self.probe.close()
        finally:
            self._expect_close = False

    async def _attempt_connect(self) -> Optional[ConnectResult]:
        result = await self._connect_probe()
        if result is None or self._closed:
            return result
        if result.connected:
            self.state.record_success()
            self.state.reconnect_attempts = 0
            self._had_persistent_success = True
        else:
            self.state.record_failure()
            self.state.reconnect_attempts += 1
        self._publish_state()
        return result

    def _should_fall_back(self, result: ConnectResult) -> bool:
        if self.state.consecutive_failures >= self.config.max_reconnect_attempts:
            return True
        return result.timed_out and not self._had_persistent_success

    def _fallback_reason(self, result: Optional[ConnectResult] = None) -> str:
        if result is not None and result.timed_out and not self._had_persistent_success:
            return f"Persistent connect timed out after {self.config.connect_timeout_ms}ms"
        return f"Persistent connection failed {self.state.consecutive_failures} times"

    def _start_reconnect(self) -> None:
        if self._closed or (self._reconnect_task is not None and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while (
            not self._closed
            and not self.state.is_fatal
            and self.state.mode == TransportMode.PERSISTENT
            and not self.probe.is_connected
        ):
            if self.state.consecutive_failures >= self.config.max_reconnect_attempts:
                await self._request_transition(TransportMode.POLLING, ModeChangeKind.FALLBACK, self._fallback_reason())
                return

            delay_ms = backoff_delay(
                max(self.state.reconnect_attempts, 1),
                self.config.reconnect_delay_ms,
                self.config.poll_backoff_max_ms,
            )
            await self._sleep(delay_ms / 1000)
            if self._closed or self.state.mode != TransportMode.PERSISTENT:
                return

            result = await self._attempt_connect()
            if result is None:
                return
            if result.connected:
                self._schedule_flush()
                return
            if self._should_fall_back(result):
                await self._request_transition(
                    TransportMode.POLLING, ModeChangeKind.FALLBACK, self._fallback_reason(result)
                )
                return

    def _on_probe_close(self, reason: CloseReason) -> None:
        if self._closed or self._expect_close:
            return
        if self.state.mode != TransportMode.PERSISTENT or self._swapping:
            # A recovery connection dropped before it was swapped in
            return
        if reason != CloseReason.NORMAL:
            self.state.record_failure()
        self._publish_state()
        self._start_reconnect()

    # Inbound frames

    def _on_frame(self, frame: Dict[str, Any]) -> None:
        if self._closed:
            return
        if self._swapping or self.state.mode != TransportMode.PERSISTENT:
            self._inbound_buffer.append(frame)
            return
        self._dispatch_frame(frame)

    def _release_inbound(self) -> None:
        frames, self._inbound_buffer = self._inbound_buffer, []
        for frame in frames:
            self._dispatch_frame(frame)

    def _dispatch_frame(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("type")
        if frame_type == "message":
            payload = frame.get("message")
            if not isinstance(payload, dict):
                payload = {
                    "id": frame.get("id") or frame.get("message_id"),
                    "client_message_id": frame.get("client_message_id"),
                    "role": frame.get("role") or "assistant",
                    "content": frame.get("content"),
                    "timestamp": frame.get("timestamp"),
                    "metadata": frame.get("metadata"),
                }
            try:
                message = ChatMessage.from_wire(payload, session_id=self.session_id)
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Dropping malformed message frame: {e}")
                return
            self._emit_messages([message])
        elif frame_type == "ack":
            try:
                ack = SendAck.from_payload(frame, TransportMode.PERSISTENT)
            except ValidationError as e:
                logger.warning(f"Dropping malformed ack frame: {e}")
                return
            self._notify(self._ack_handlers, ack)
        elif frame_type == "error":
            logger.warning(f"Server reported error on session {self.session_id}: {frame.get('error')}")
        else:
            logger.debug(f"Ignoring {frame_type} frame")

    # Polling callbacks

    def _on_polled(self, messages: List[ChatMessage]) -> None:
        self._emit_messages(messages)

    def _on_degraded(self, degraded: bool) -> None:
        if self._closed:
            return
        self.state.degraded = degraded
        self._publish_state()
        if not degraded:
            self._schedule_flush()

    def _on_poll_result(self, success: bool) -> None:
        if self._closed or self.state.mode != TransportMode.POLLING:
            return
        if success:
            if self.state.consecutive_failures:
                self.state.record_success()
                self._publish_state()
            else:
                self.state.last_success_at = datetime.now(timezone.utc)
        else:
            self.state.record_failure()
            self._publish_state()

    # Outbound

    def _must_queue(self) -> bool:
        if self._swapping:
            return True
        if self.state.mode == TransportMode.POLLING:
            return self.polling.degraded
        return not self.probe.is_connected

    async def send(self, message: ChatMessage) -> SendAck:
        """Send a message on the active transport.

        While a swap is in progress, while polling is degraded, or while the
        persistent channel is reconnecting, the message waits in the
        outbound queue and is sent first when connectivity returns.

        Raises:
            SessionClosedError: the session was closed or ended fatally
            AuthenticationError: credential rejected
            TransientTransportError: the send failed and may be retried
        """
        if self._closed or self.state.is_fatal:
            raise SessionClosedError("Chat session is closed")

        if self._must_queue():
            self._prune_outbound()
            future = asyncio.get_running_loop().create_future()
            self._outbound.append((message, future))
            logger.debug(f"Queued {message.key} until connectivity returns")
            return await future

        try:
            return await self._send_direct(message)
        except AuthenticationError as e:
            self._fatal(e)
            raise

    async def _send_direct(self, message: ChatMessage) -> SendAck:
        if self.state.mode == TransportMode.PERSISTENT:
            return await self._send_persistent(message)
        return await self.polling.send(message)

    async def _send_persistent(self, message: ChatMessage) -> SendAck:
        frame = {
            "type": "message",
            "message_id": message.key,
            "client_message_id": message.key,
            "session_id": self.session_id,
            "content": message.content,
            "timestamp": message.created_at.isoformat(),
        }
        await self.probe.send(frame)
        return SendAck(echoed_client_message_id=message.key, via=TransportMode.PERSISTENT)

    def _schedule_flush(self) -> None:
        if self._outbound and not self._flushing and not self._must_queue():
            self._spawn(self._drain_outbound(self._send_direct))

    def _prune_outbound(self) -> None:
        """Drop queued sends whose caller already gave up."""
        pending = [entry for entry in self._outbound if not entry[1].done()]
        if len(pending) != len(self._outbound):
            self._outbound = deque(pending)

    async def _drain_outbound(self, sender: Callable[[ChatMessage], Awaitable[SendAck]]) -> None:
        if self._flushing:
            return
        self._flushing = True
        try:
            while self._outbound:
                message, future = self._outbound.popleft()
                if future.done():
                    continue
                try:
                    ack = await sender(message)
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                    if isinstance(e, AuthenticationError):
                        self._fatal(e)
                        return
                else:
                    if not future.done():
                        future.set_result(ack)
        finally:
            self._flushing = False

    # Activity passthrough

    def note_typing(self) -> None:
        self.polling.note_typing()

    def note_message_sent(self) -> None:
        self.polling.note_message_sent()

    def note_activity(self) -> None:
        self.polling.note_activity()

    def set_visible(self, visible: bool) -> None:
        self.polling.set_visible(visible)

    # Transitions

    async def _request_transition(self, target: TransportMode, kind: ModeChangeKind, reason: str) -> None:
        self._pending_transition = (target, kind, reason)
        if self._transitioning:
            await self._transition_idle.wait()
            return

        self._transitioning = True
        self._transition_idle.clear()
        try:
            while self._pending_transition is not None and not self._closed and not self.state.is_fatal:
                target, kind, reason = self._pending_transition
                self._pending_transition = None
                if target == self.state.mode:
                    continue
                if target == TransportMode.POLLING:
                    await self._fall_back(kind, reason)
                else:
                    await self._swap_to_persistent(kind, reason)
        finally:
            self._transitioning = False
            self._transition_idle.set()

    def _superseded(self, target: TransportMode) -> bool:
        return self._pending_transition is not None and self._pending_transition[0] != target

    async def _fall_back(self, kind: ModeChangeKind, reason: str) -> None:
        self._cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._close_probe()

        from_mode = self.state.mode
        self.state.mode = TransportMode.POLLING
        self.state.fallback_reason = reason
        self.state.recovery_probes_attempted = 0
        self.state.auto_recovery_exhausted = False
        self.state.degraded = False
        self.polling.start(self._cursor_provider())

        self._publish_state()
        self._announce(from_mode, TransportMode.POLLING, kind, reason)
        self._inbound_buffer.clear()
        self._start_recovery()
        self._schedule_flush()

    async def _swap_to_persistent(self, kind: ModeChangeKind, reason: str) -> None:
        committed = False
        from_mode = self.state.mode
        self._swapping = True
        try:
            if not self.probe.is_connected:
                result = await self._connect_probe()
                if result is None or not result.connected:
                    logger.info(f"Could not reopen persistent channel for session {self.session_id}")
                    return
            if self._superseded(TransportMode.PERSISTENT) or self._closed:
                await self._close_probe()
                return

            self._cancel(self._recovery_task)
            await self.polling.stop()
            await self._catch_up()

            if self._superseded(TransportMode.PERSISTENT) or self._closed or self.state.is_fatal:
                await self._close_probe()
                if not self._closed and not self.state.is_fatal:
                    self.polling.start(self._cursor_provider())
                    self._start_recovery()
                return

            await self._drain_outbound(self._send_persistent)

            self.state.mode = TransportMode.PERSISTENT
            self.state.record_success()
            self.state.reconnect_attempts = 0
            self.state.degraded = False
            self.state.fallback_reason = None
            self.state.recovery_probes_attempted = 0
            self.state.auto_recovery_exhausted = False
            self._had_persistent_success = True
            committed = True
        finally:
            self._swapping = False
            if not committed:
                self._inbound_buffer.clear()
                if not self._closed and not self.state.is_fatal:
                    self._schedule_flush()

        self._release_inbound()
        self._publish_state()
        self._announce(from_mode, TransportMode.PERSISTENT, kind, reason)
        if not self.probe.is_connected:
            self.state.record_failure()
            self._publish_state()
            self._start_reconnect()
        else:
            self._schedule_flush()

    async def _catch_up(self) -> None:
        """One last poll so nothing between the last poll and the swap is missed."""
        try:
            response = await self.polling.poll(self.polling.cursor)
        except AuthenticationError as e:
            self._fatal(e)
            return
        except Exception as e:
            logger.debug(f"Catch-up poll before swap failed: {e}")
            return
        self.polling.cursor = response.cursor
        self._emit_messages(response.messages)

    # Recovery

    def _start_recovery(self) -> None:
        if self.preference == TransportMode.POLLING or self._closed:
            return
        if self.config.max_recovery_probes == 0:
            self.state.auto_recovery_exhausted = True
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        self._recovery_task = asyncio.create_task(self._recovery_loop())

    async def _recovery_loop(self) -> None:
        while (
            not self._closed
            and self.state.mode == TransportMode.POLLING
            and self.state.recovery_probes_attempted < self.config.max_recovery_probes
        ):
            await self._sleep(self.config.recovery_probe_interval_ms / 1000)
            if await self.run_recovery_probe():
                return

        if not self._closed and not self.state.is_fatal and self.state.mode == TransportMode.POLLING:
            self.state.auto_recovery_exhausted = True
            logger.info(f"Automatic recovery exhausted for session {self.session_id}; manual retry only")
            self._publish_state()

    async def run_recovery_probe(self) -> bool:
        """Run one silent background attempt to return to the persistent channel.

        A failed probe changes nothing the user can see; polling continues.

        Returns:
            True if the session swapped back to the persistent channel
        """
        if self._closed or self.state.is_fatal or self.state.mode != TransportMode.POLLING or self._transitioning:
            return False

        self.state.recovery_probes_attempted += 1
        result = await self._connect_probe()
        if result is None or not result.connected:
            logger.debug(
                f"Recovery probe {self.state.recovery_probes_attempted}/{self.config.max_recovery_probes} "
                f"failed for session {self.session_id}"
            )
            return False

        await self._request_transition(TransportMode.PERSISTENT, ModeChangeKind.RECOVERED, "Recovery probe succeeded")
        return self.state.mode == TransportMode.PERSISTENT

    async def request_persistent(self) -> bool:
        """Manual request to return to the persistent channel.

        Returns:
            True if the persistent channel is active afterwards

        Raises:
            SessionClosedError: the session was closed or ended fatally
        """
        if self._closed or self.state.is_fatal:
            raise SessionClosedError("Chat session is closed")

        if self.state.mode == TransportMode.PERSISTENT and not self._transitioning:
            if self.probe.is_connected:
                return True
            result = await self._attempt_connect()
            if result is not None and result.connected:
                self._schedule_flush()
                return True
            return False

        await self._request_transition(TransportMode.PERSISTENT, ModeChangeKind.MANUAL, "Manual retry requested")
        return self.state.mode == TransportMode.PERSISTENT and self.probe.is_connected

    # Fatal errors

    def _fatal(self, error: AuthenticationError) -> None:
        if self.state.is_fatal or self._closed:
            return
        self.state.fatal_error = str(error)
        logger.error(f"Session {self.session_id} ended: {error}")
        self._audit.log_authentication_failure(self.session_id, self.state.mode.value, str(error))

        self._cancel(self._reconnect_task)
        self._cancel(self._recovery_task)
        while self._outbound:
            _, future = self._outbound.popleft()
            if not future.done():
                future.set_exception(SessionClosedError(f"Session ended: {error}"))
        self._spawn(self._stop_transports())

        self._publish_state()
        self._notify(self._fatal_handlers, error)

    async def _stop_transports(self) -> None:
        await self._close_probe()
        await self.polling.stop()
