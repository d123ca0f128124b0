"""
Public chat session API.

ChatSessionClient is what a UI talks to: it sends messages optimistically,
retries delivery, reconciles server copies, and exposes messages and
connection state as async iterators regardless of the transport in use.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from parley.lib.config import ChatTransportConfig
from parley.lib.errors import (
    AuthenticationError,
    RequestRejectedError,
    SessionClosedError,
    TransportTimeoutError,
)
from parley.lib.logging_config import get_audit_logger
from parley.lib.metrics import get_metrics_collector
from parley.lib.retry import RetryConfig, RetryError, RetryHandler
from parley.lib.streams import Broadcast
from parley.models.chat_message import ChatMessage, DeliveryStatus
from parley.models.connection_state import ConnectionState, ModeChangeNotice, TransportMode
from parley.models.exchange import SendAck
from parley.services.interfaces.chat_backend import IChatBackend
from parley.services.message_log import MessageLog
from parley.services.mode_controller import ModeController


logger = logging.getLogger(__name__)


class ChatSessionClient:
    """
    One chat session as seen by the UI.

    ``send_message`` never raises for transport trouble: delivery problems
    show up as message status changes and connection problems as
    ConnectionState changes. Only a rejected credential reaches the
    ``on_fatal_error`` handlers.

    Usage:
        async with ChatSessionClient(session_id, backend, config) as client:
            client.send_message("Hello")
            async for message in client.observe_messages():
                ...
    """

    def __init__(
        self,
        session_id: str,
        backend: IChatBackend,
        config: Optional[ChatTransportConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the session client.

        Args:
            session_id: Chat session identifier
            backend: Chat backend shared by both transports
            config: Transport tuning; defaults apply when omitted
            sleep: Awaitable sleep for retry, reconnect and recovery delays
            clock: Monotonic clock for polling activity windows
        """
        self.session_id = session_id
        self.config = config or ChatTransportConfig()
        self._sleep = sleep

        self._log = MessageLog(self.config.reconcile_window_ms)
        self.controller = ModeController(
            session_id,
            backend,
            self.config,
            cursor_provider=self._log.cursor,
            sleep=sleep,
            clock=clock,
        )
        self._message_stream: Broadcast[ChatMessage] = Broadcast(self._log.snapshot)
        self._state_stream: Broadcast[ConnectionState] = Broadcast(lambda: [self.controller.state.snapshot()])

        self._deliveries: Dict[str, asyncio.Task] = {}
        self._fatal_handlers: List[Callable[[AuthenticationError], None]] = []
        self._started = False
        self._closed = False
        self._audit = get_audit_logger()

        self._unsubscribe = [
            self.controller.on_messages(self._ingest),
            self.controller.on_ack(self._on_pushed_ack),
            self.controller.on_state_change(self._state_stream.publish),
            self.controller.on_fatal(self._on_fatal),
        ]

    async def __aenter__(self) -> "ChatSessionClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Lifecycle

    async def start(self) -> None:
        """Open the initial transport."""
        if self._closed:
            raise SessionClosedError("Chat session is closed")
        if self._started:
            return
        self._started = True
        logger.info(f"Starting chat session {self.session_id} (preference: {self.config.mode})")
        await self.controller.start()

    async def close(self) -> None:
        """End the session. Pending deliveries are cancelled; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribe:
            unsubscribe()

        tasks = list(self._deliveries.values())
        self._deliveries.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.controller.close()
        self._message_stream.close()
        self._state_stream.close()
        self._fatal_handlers.clear()
        logger.info(f"Chat session {self.session_id} closed")

    # Read side

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def messages(self) -> List[ChatMessage]:
        """Current message history in order."""
        return self._log.snapshot()

    @property
    def connection_state(self) -> ConnectionState:
        return self.controller.state.snapshot()

    @property
    def mode(self) -> TransportMode:
        return self.controller.mode

    def get_message(self, key: str) -> Optional[ChatMessage]:
        return self._log.get(key)

    def observe_messages(self) -> AsyncIterator[ChatMessage]:
        """Current history in order, then every added or updated message."""
        return self._message_stream.subscribe()

    def observe_connection_state(self) -> AsyncIterator[ConnectionState]:
        """Current connection state, then every change."""
        return self._state_stream.subscribe()

    def on_fatal_error(self, handler: Callable[[AuthenticationError], None]) -> Callable[[], None]:
        """Register a handler for the session-ending authentication error."""
        self._fatal_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._fatal_handlers:
                self._fatal_handlers.remove(handler)

        return unsubscribe

    def on_mode_change(self, handler: Callable[[ModeChangeNotice], None]) -> Callable[[], None]:
        """Register a handler for informational mode change notices."""
        return self.controller.on_mode_change(handler)

    # Write side

    def send_message(self, content: str) -> ChatMessage:
        """Append a message optimistically and deliver it in the background.

        Returns:
            Copy of the new message in ``sending`` state

        Raises:
            SessionClosedError: the session is closed
            ValueError: empty or oversized content
        """
        if self._closed or self.controller.state.is_fatal:
            raise SessionClosedError("Chat session is closed")

        message = self._log.add(ChatMessage.outgoing(self.session_id, content))
        self._message_stream.publish(message)
        self.controller.note_message_sent()
        self._start_delivery(message.key)
        return message

    def retry_message(self, key: str) -> bool:
        """Manually retry a failed message; the backoff schedule starts over.

        Returns:
            True if the message was failed and is being sent again
        """
        if self._closed or self.controller.state.is_fatal:
            raise SessionClosedError("Chat session is closed")

        updated = self._log.update_status(key, DeliveryStatus.SENDING)
        if updated is None:
            logger.debug(f"Ignoring retry for {key}: not in failed state")
            return False
        self._message_stream.publish(updated)
        self.controller.note_message_sent()
        self._start_delivery(updated.key)
        return True

    async def retry_persistent(self) -> bool:
        """Ask to return to the persistent channel now."""
        return await self.controller.request_persistent()

    def note_typing(self) -> None:
        self.controller.note_typing()

    def note_activity(self) -> None:
        self.controller.note_activity()

    def set_visible(self, visible: bool) -> None:
        self.controller.set_visible(visible)

    # Delivery

    def _start_delivery(self, key: str) -> None:
        task = asyncio.create_task(self._deliver(key))
        self._deliveries[key] = task

        def _forget(done: asyncio.Task) -> None:
            if self._deliveries.get(key) is done:
                del self._deliveries[key]

        task.add_done_callback(_forget)

    def _record_attempt(self, attempt: int, error: Optional[BaseException]) -> None:
        get_metrics_collector().record_send_attempt(self.controller.mode.value, error is None, attempt)

    async def _deliver(self, key: str) -> None:
        retry_config = RetryConfig.from_milliseconds(
            self.config.send_max_retries + 1,
            self.config.send_retry_base_ms,
            self.config.send_retry_max_ms,
        )
        handler = RetryHandler(retry_config, sleep=self._sleep, on_attempt=self._record_attempt)

        try:
            ack = await handler.call(lambda: self._attempt_send(key), operation_name=f"send {key}")
        except RetryError as e:
            logger.warning(f"Giving up on {key} after {e.attempts} attempts: {e.last_exception}")
            self._audit.log_delivery_failure(self.session_id, key, e.attempts, str(e.last_exception))
            get_metrics_collector().record_retry_exhausted(self.controller.mode.value)
            self._mark_failed(key)
            return
        except (RequestRejectedError, AuthenticationError) as e:
            logger.warning(f"Message {key} rejected: {e}")
            self._mark_failed(key)
            return
        except SessionClosedError:
            if self.controller.state.is_fatal:
                self._mark_failed(key)
            return

        if ack is not None and not self._closed:
            self._apply_ack(key, ack)

    async def _attempt_send(self, key: str) -> Optional[SendAck]:
        message = self._log.get(key)
        if message is None or message.is_confirmed:
            return None
        try:
            return await asyncio.wait_for(
                self.controller.send(message),
                timeout=self.config.send_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise TransportTimeoutError(f"Send of {key} exceeded {self.config.send_timeout_ms}ms")

    def _mark_failed(self, key: str) -> None:
        updated = self._log.update_status(key, DeliveryStatus.FAILED)
        if updated is not None:
            self._message_stream.publish(updated)

    def _apply_ack(self, key: str, ack: SendAck) -> None:
        # A 2xx send response means the server stored the message; a frame
        # written to the channel only means it left the client.
        if ack.confirms_persistence or ack.via == TransportMode.POLLING:
            updated = self._log.confirm(key, ack.server_message_id, ack.created_at)
        else:
            updated = self._log.update_status(key, DeliveryStatus.SENT)
        if updated is not None:
            self._message_stream.publish(updated)

        try:
            reply = ack.inline_reply(self.session_id)
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Dropping malformed inline reply to {key}: {e}")
            return
        if reply is not None:
            self._ingest([reply])

    def _on_pushed_ack(self, ack: SendAck) -> None:
        if self._closed or not ack.echoed_client_message_id:
            return
        if ack.echoed_client_message_id not in self._log:
            logger.debug(f"Ack for unknown message {ack.echoed_client_message_id}")
            return
        self._apply_ack(ack.echoed_client_message_id, ack)

    def _ingest(self, messages: List[ChatMessage]) -> None:
        if self._closed:
            return
        for message in sorted(messages, key=lambda m: m.sort_key()):
            updated = self._log.merge(message)
            if updated is not None:
                self._message_stream.publish(updated)

    def _on_fatal(self, error: AuthenticationError) -> None:
        logger.error(f"Chat session {self.session_id} ended by the backend: {error}")
        for handler in list(self._fatal_handlers):
            try:
                handler(error)
            except Exception:
                logger.exception("Fatal error handler failed")
