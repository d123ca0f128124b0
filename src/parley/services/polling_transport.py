"""HTTP polling transport with adaptive interval and failure backoff."""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from parley.lib.config import ChatTransportConfig
from parley.lib.errors import (
    AuthenticationError,
    PollError,
    RequestRejectedError,
    SendError,
    TransientTransportError,
)
from parley.lib.metrics import time_poll
from parley.lib.observability import transport_span
from parley.lib.retry import backoff_delay
from parley.models.chat_message import ChatMessage
from parley.models.connection_state import TransportMode
from parley.models.exchange import PollingCursor, PollResponse, SendAck
from parley.services.interfaces.chat_backend import IChatBackend


logger = logging.getLogger(__name__)

MessagesHandler = Callable[[List[ChatMessage]], None]
DegradedHandler = Callable[[bool], None]
ResultHandler = Callable[[bool], None]
FatalHandler = Callable[[AuthenticationError], None]


class PollingTransport:
    """
    Fetches new messages on a timer and sends messages with discrete calls.

    The polling loop never gives up while running: after
    ``max_consecutive_poll_failures`` it reports degraded and keeps retrying
    with exponential backoff. Only a credential rejection stops it.
    """

    def __init__(
        self,
        backend: IChatBackend,
        session_id: str,
        config: ChatTransportConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the polling transport.

        Args:
            backend: Chat backend for fetch and send calls
            session_id: Chat session identifier
            config: Transport tuning (intervals, thresholds, timeouts)
            clock: Monotonic clock in seconds used for activity windows
        """
        self._backend = backend
        self.session_id = session_id
        self.config = config
        self._clock = clock

        self.cursor = PollingCursor()
        self.consecutive_failures = 0
        self.degraded = False
        self.visible = True

        now = clock()
        self._last_interaction = now
        self._last_typing: Optional[float] = None
        self._last_sent: Optional[float] = None

        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._poll_immediately = False

        self._messages_handlers: List[MessagesHandler] = []
        self._degraded_handlers: List[DegradedHandler] = []
        self._result_handlers: List[ResultHandler] = []
        self._fatal_handlers: List[FatalHandler] = []

    # Handlers

    def on_messages(self, handler: MessagesHandler) -> Callable[[], None]:
        self._messages_handlers.append(handler)
        return lambda: self._remove(self._messages_handlers, handler)

    def on_degraded(self, handler: DegradedHandler) -> Callable[[], None]:
        self._degraded_handlers.append(handler)
        return lambda: self._remove(self._degraded_handlers, handler)

    def on_result(self, handler: ResultHandler) -> Callable[[], None]:
        """Register a handler called with True/False after every poll or send."""
        self._result_handlers.append(handler)
        return lambda: self._remove(self._result_handlers, handler)

    def on_fatal(self, handler: FatalHandler) -> Callable[[], None]:
        self._fatal_handlers.append(handler)
        return lambda: self._remove(self._fatal_handlers, handler)

    @staticmethod
    def _remove(handlers: list, handler) -> None:
        if handler in handlers:
            handlers.remove(handler)

    @staticmethod
    def _notify(handlers: list, *args) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Polling handler failed")

    # Activity and visibility

    def note_typing(self) -> None:
        """The user is typing: poll at the active interval."""
        now = self._clock()
        self._last_typing = now
        self._last_interaction = now
        self._wake.set()

    def note_message_sent(self) -> None:
        """The user sent a message: poll at the active interval for a while."""
        now = self._clock()
        self._last_sent = now
        self._last_interaction = now
        self._wake.set()

    def note_activity(self) -> None:
        """Any other user interaction: leave the idle interval."""
        self._last_interaction = self._clock()
        self._wake.set()

    def set_visible(self, visible: bool) -> None:
        """Pause polling while hidden; poll immediately when shown again."""
        if visible == self.visible:
            return
        self.visible = visible
        if visible:
            self._last_interaction = self._clock()
            self._poll_immediately = True
        self._wake.set()

    def current_interval_ms(self) -> int:
        """Polling interval for the current activity level."""
        now = self._clock()
        cfg = self.config
        if self._last_typing is not None and (now - self._last_typing) * 1000 <= cfg.typing_window_ms:
            return cfg.active_poll_interval_ms
        if self._last_sent is not None and (now - self._last_sent) * 1000 <= cfg.active_window_ms:
            return cfg.active_poll_interval_ms
        if (now - self._last_interaction) * 1000 >= cfg.idle_after_ms:
            return cfg.idle_poll_interval_ms
        return cfg.base_poll_interval_ms

    def next_delay_ms(self) -> int:
        """Delay before the next poll: backoff after failures, else the activity interval."""
        if self.consecutive_failures > 0:
            return int(backoff_delay(
                self.consecutive_failures,
                self.config.poll_backoff_base_ms,
                self.config.poll_backoff_max_ms,
            ))
        return self.current_interval_ms()

    def poll_timeout_ms(self) -> int:
        """Half the current interval, never below the configured minimum."""
        return max(self.current_interval_ms() // 2, self.config.min_poll_timeout_ms)

    # Single calls

    async def poll(self, cursor: PollingCursor) -> PollResponse:
        """Fetch messages newer than ``cursor``.

        Raises:
            PollError: the fetch failed or timed out
            AuthenticationError: credential rejected
        """
        timeout_ms = self.poll_timeout_ms()
        with transport_span("poll", self.session_id, TransportMode.POLLING.value) as span, \
                time_poll(self.session_id) as timer:
            try:
                response = await asyncio.wait_for(
                    self._backend.fetch_messages_since(self.session_id, cursor),
                    timeout=timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                raise PollError(f"Poll exceeded {timeout_ms}ms")
            except PollError:
                raise
            except (TransientTransportError, RequestRejectedError) as e:
                raise PollError(str(e), status_code=e.status_code)
            except AuthenticationError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected poll failure for session {self.session_id}")
                raise PollError(f"Poll failed: {e}")
            timer.message_count = len(response.messages)
            span.set_attribute("chat.message_count", len(response.messages))
        return response

    async def send(self, message: ChatMessage) -> SendAck:
        """Send one message over HTTP.

        Raises:
            SendError: transient failure
            RequestRejectedError: the backend refused the message
            AuthenticationError: credential rejected
        """
        timeout_s = self.config.send_timeout_ms / 1000
        with transport_span("send", self.session_id, TransportMode.POLLING.value):
            try:
                ack = await asyncio.wait_for(
                    self._backend.send_message(self.session_id, message.content, message.key),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError:
                self._record_failure()
                raise SendError(f"Send exceeded {self.config.send_timeout_ms}ms")
            except SendError:
                self._record_failure()
                raise
            except TransientTransportError as e:
                self._record_failure()
                raise SendError(str(e), status_code=e.status_code)
            except OSError as e:
                self._record_failure()
                raise SendError(f"Send failed: {e}")
        self._record_success()
        self.note_message_sent()
        return ack

    # Failure accounting

    def _record_failure(self) -> None:
        self.consecutive_failures += 1
        self._notify(self._result_handlers, False)
        if not self.degraded and self.consecutive_failures >= self.config.max_consecutive_poll_failures:
            self.degraded = True
            logger.warning(
                f"Polling degraded for session {self.session_id} after {self.consecutive_failures} failures"
            )
            self._notify(self._degraded_handlers, True)

    def _record_success(self) -> None:
        self.consecutive_failures = 0
        self._notify(self._result_handlers, True)
        if self.degraded:
            self.degraded = False
            logger.info(f"Polling recovered for session {self.session_id}")
            self._notify(self._degraded_handlers, False)

    # Loop

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, cursor: Optional[PollingCursor] = None, immediate: bool = True) -> None:
        """Start the polling loop from ``cursor``."""
        if self.is_running:
            return
        if cursor is not None:
            self.cursor = cursor
        self.consecutive_failures = 0
        self.degraded = False
        self._poll_immediately = immediate
        self._task = asyncio.create_task(self._run())
        logger.info(f"Polling started for session {self.session_id} from {self.cursor.last_seen_message_id}")

    async def stop(self) -> None:
        """Stop the polling loop. Safe to call when not running."""
        task = self._task
        self._task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info(f"Polling stopped for session {self.session_id}")

    async def _wait_until_due(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            if not self.visible:
                self._wake.clear()
                await self._wake.wait()
                continue
            if self._poll_immediately:
                self._poll_immediately = False
                return
            remaining = started + self.next_delay_ms() / 1000 - loop.time()
            if remaining <= 0:
                return
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

    async def _run(self) -> None:
        while True:
            await self._wait_until_due()
            try:
                response = await self.poll(self.cursor)
            except AuthenticationError as e:
                logger.error(f"Polling stopped for session {self.session_id}: {e}")
                self._task = None
                self._notify(self._fatal_handlers, e)
                return
            except PollError as e:
                self._record_failure()
                logger.debug(f"Poll failed ({self.consecutive_failures}): {e}")
                continue

            self.cursor = response.cursor
            self._record_success()
            if response.messages:
                self._notify(self._messages_handlers, list(response.messages))
            if response.has_more:
                self._poll_immediately = True

