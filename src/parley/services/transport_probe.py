"""Persistent channel probe: connect, deliver frames, report closes."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from parley.lib.errors import (
    AuthenticationError,
    ChatTransportError,
    SendError,
    TransportTimeoutError,
)
from parley.lib.logging_config import get_audit_logger
from parley.lib.metrics import get_metrics_collector
from parley.lib.observability import transport_span
from parley.models.connection_state import CloseReason, TransportMode
from parley.models.exchange import ConnectResult
from parley.services.interfaces.chat_backend import IChatBackend, IPersistentChannel


logger = logging.getLogger(__name__)

FrameHandler = Callable[[Dict[str, Any]], None]
CloseHandler = Callable[[CloseReason], None]


class TransportProbe:
    """
    Holds at most one persistent channel for a chat session.

    The probe never retries; it reports outcomes and leaves retry policy to
    its owner. ``on_close`` handlers run exactly once per connection.
    """

    def __init__(
        self,
        backend: IChatBackend,
        connect_timeout_ms: int = 10000,
        send_timeout_ms: int = 10000,
    ):
        """Initialize the probe.

        Args:
            backend: Chat backend that opens persistent channels
            connect_timeout_ms: Deadline for the whole connect handshake
            send_timeout_ms: Deadline for writing one frame
        """
        self._backend = backend
        self.connect_timeout_ms = connect_timeout_ms
        self.send_timeout_ms = send_timeout_ms
        self.session_id: Optional[str] = None

        self._channel: Optional[IPersistentChannel] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._close_emitted = True
        self._message_handlers: List[FrameHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._audit = get_audit_logger()

    @property
    def is_connected(self) -> bool:
        return self._channel is not None

    def on_message(self, handler: FrameHandler) -> Callable[[], None]:
        """Register a handler for inbound frames. Returns an unsubscribe callable."""
        self._message_handlers.append(handler)
        return lambda: self._remove(self._message_handlers, handler)

    def on_close(self, handler: CloseHandler) -> Callable[[], None]:
        """Register a handler for connection close. Returns an unsubscribe callable."""
        self._close_handlers.append(handler)
        return lambda: self._remove(self._close_handlers, handler)

    @staticmethod
    def _remove(handlers: list, handler) -> None:
        if handler in handlers:
            handlers.remove(handler)

    async def connect(self, session_id: str) -> ConnectResult:
        """Attempt to open the persistent channel.

        Returns:
            ConnectResult; timeouts and resets are reported, not raised

        Raises:
            AuthenticationError: credential rejected during the handshake
        """
        if self._channel is not None:
            return ConnectResult(connected=True, latency_ms=0)

        self.session_id = session_id
        start = time.monotonic()
        result: ConnectResult
        channel: Optional[IPersistentChannel] = None

        with transport_span("connect", session_id, TransportMode.PERSISTENT.value) as span:
            try:
                channel = await asyncio.wait_for(
                    self._backend.open_persistent_channel(session_id),
                    timeout=self.connect_timeout_ms / 1000,
                )
            except AuthenticationError as e:
                self._audit.log_authentication_failure(session_id, TransportMode.PERSISTENT.value, str(e))
                get_metrics_collector().record_connect(False, reason="auth")
                raise
            except (asyncio.TimeoutError, TransportTimeoutError):
                result = ConnectResult(
                    connected=False,
                    reason=CloseReason.TIMEOUT,
                    error=f"No handshake within {self.connect_timeout_ms}ms",
                )
            except (ChatTransportError, OSError) as e:
                result = ConnectResult(connected=False, reason=CloseReason.ERROR, error=str(e))
            else:
                latency_ms = int((time.monotonic() - start) * 1000)
                result = ConnectResult(connected=True, latency_ms=latency_ms)
            span.set_attribute("chat.connected", result.connected)

        get_metrics_collector().record_connect(
            result.connected,
            latency_ms=result.latency_ms,
            reason=result.reason.value if result.reason else None,
        )
        self._audit.log_connection_event(
            "connect",
            session_id,
            TransportMode.PERSISTENT.value,
            "success" if result.connected else (result.reason.value if result.reason else "error"),
            latency_ms=result.latency_ms,
        )

        if not result.connected:
            logger.info(f"Persistent connect failed for session {session_id}: {result.error}")
            return result

        self._channel = channel
        self._close_emitted = False
        self._reader_task = asyncio.create_task(self._read_loop(channel))
        logger.info(f"Persistent channel open for session {session_id} ({result.latency_ms}ms)")
        return result

    async def _read_loop(self, channel: IPersistentChannel) -> None:
        reason = CloseReason.SERVER_CLOSED
        try:
            async for frame in channel.frames():
                for handler in list(self._message_handlers):
                    try:
                        handler(frame)
                    except Exception:
                        logger.exception("Frame handler failed")
        except TransportTimeoutError as e:
            logger.warning(f"Persistent channel timed out: {e}")
            reason = CloseReason.TIMEOUT
        except ChatTransportError as e:
            logger.warning(f"Persistent channel dropped: {e}")
            reason = CloseReason.ERROR
        except OSError as e:
            logger.warning(f"Persistent channel reset: {e}")
            reason = CloseReason.ERROR

        if channel is not self._channel:
            return
        self._channel = None
        self._reader_task = None
        try:
            await channel.close()
        except (ChatTransportError, OSError) as e:
            logger.debug(f"Ignoring error while closing dropped channel: {e}")
        self._emit_close(reason)

    def _emit_close(self, reason: CloseReason) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        logger.info(f"Persistent channel closed ({reason.value}) for session {self.session_id}")
        for handler in list(self._close_handlers):
            try:
                handler(reason)
            except Exception:
                logger.exception("Close handler failed")

    async def send(self, frame: Dict[str, Any]) -> None:
        """Write one frame to the open channel.

        Raises:
            SendError: no channel is open or the write failed
            TransportTimeoutError: the write did not finish in time
        """
        channel = self._channel
        if channel is None:
            raise SendError("Persistent channel is not connected")
        try:
            await asyncio.wait_for(channel.send(frame), timeout=self.send_timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TransportTimeoutError(f"Frame write exceeded {self.send_timeout_ms}ms")

    async def close(self) -> None:
        """Close the channel. A second call is a no-op."""
        channel = self._channel
        if channel is None:
            return
        self._channel = None
        task = self._reader_task
        self._reader_task = None

        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._emit_close(CloseReason.NORMAL)

        try:
            await channel.close()
        except (ChatTransportError, OSError) as e:
            logger.debug(f"Ignoring error while closing channel: {e}")

        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
