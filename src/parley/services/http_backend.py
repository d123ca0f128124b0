"""HTTP/WebSocket implementation of the chat backend interface.

Messages are sent and fetched over the admin chat REST API with httpx; the
persistent channel is a WebSocket opened with the websockets library.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Type
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
)

from parley.lib.config import BackendConfig
from parley.lib.errors import (
    AuthenticationError,
    ConnectFailedError,
    PollError,
    RequestRejectedError,
    SendError,
    TransientTransportError,
    TransportTimeoutError,
)
from parley.models.chat_message import ChatMessage
from parley.models.exchange import PollingCursor, PollResponse, SendAck
from parley.models.connection_state import TransportMode
from parley.services.interfaces.chat_backend import IChatBackend, IPersistentChannel


logger = logging.getLogger(__name__)

# Close code websockets uses when a keepalive ping goes unanswered
KEEPALIVE_CLOSE_CODE = 1011


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase


def raise_for_status(response: httpx.Response, transient: Type[TransientTransportError]) -> None:
    """Map an HTTP error status onto the transport error taxonomy.

    Args:
        response: Response to check
        transient: Error class raised for retryable statuses

    Raises:
        AuthenticationError: 401 or 403
        TransientTransportError: 429 or 5xx (as ``transient``)
        RequestRejectedError: any other 4xx
    """
    status = response.status_code
    if status < 400:
        return
    detail = _error_detail(response)
    if status in (401, 403):
        raise AuthenticationError(f"Credential rejected ({status}): {detail}", status_code=status)
    if status == 429 or status >= 500:
        raise transient(f"Backend unavailable ({status}): {detail}", status_code=status)
    raise RequestRejectedError(f"Request rejected ({status}): {detail}", status_code=status)


def _websocket_url(config: BackendConfig, session_id: str) -> str:
    base = config.base_url
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    else:
        base = "ws://" + base[len("http://"):]
    return f"{base}{config.websocket_path}?{urlencode({'session_id': session_id})}"


class WebSocketChannel(IPersistentChannel):
    """Persistent chat channel over one WebSocket connection."""

    def __init__(self, connection: ClientConnection, session_id: str):
        self._ws = connection
        self.session_id = session_id
        self._pending: List[Dict[str, Any]] = []
        self._closed = False

    @classmethod
    async def open(
        cls,
        url: str,
        session_id: str,
        headers: Dict[str, str],
        ping_interval: float,
        ping_timeout: float,
    ) -> "WebSocketChannel":
        """Connect and wait for the server's ``connected`` frame.

        The caller bounds the whole handshake with its connect timeout.
        """
        try:
            connection = await connect(
                url,
                additional_headers=headers,
                open_timeout=None,
                ping_interval=ping_interval,
                ping_timeout=ping_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthenticationError(f"WebSocket handshake rejected ({status})", status_code=status)
            raise ConnectFailedError(f"WebSocket handshake failed ({status})", status_code=status)
        except (InvalidHandshake, OSError) as e:
            raise ConnectFailedError(f"WebSocket connect failed: {e}")

        channel = cls(connection, session_id)
        try:
            await channel._await_connected()
        except BaseException:
            await connection.close()
            raise
        return channel

    async def _await_connected(self) -> None:
        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as e:
                raise ConnectFailedError(f"Channel closed during handshake: {e}")
            frame = self._decode(raw)
            if frame is None:
                continue
            frame_type = frame.get("type")
            if frame_type == "connected":
                logger.debug(f"Persistent channel ready for session {self.session_id}")
                return
            if frame_type == "ping":
                await self._pong()
            elif frame_type == "error":
                raise ConnectFailedError(f"Server refused channel: {frame.get('error', 'unknown error')}")
            else:
                self._pending.append(frame)

    def _decode(self, raw: Any) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Dropping malformed frame on session {self.session_id}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Dropping non-object frame on session {self.session_id}")
            return None

        if "type" in data:
            return data

        # Untyped chat responses carry a message envelope
        if data.get("success") is False:
            message = data.get("message") or {}
            return {"type": "error", "error": data.get("error", "chat error"), "message_id": message.get("id")}
        if isinstance(data.get("message"), dict):
            return {"type": "message", "message": data["message"]}

        logger.warning(f"Dropping unrecognized frame on session {self.session_id}")
        return None

    async def _pong(self) -> None:
        await self.send({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})

    async def send(self, frame: Dict[str, Any]) -> None:
        if self._closed:
            raise SendError("Persistent channel is closed")
        try:
            await self._ws.send(json.dumps(frame, default=str))
        except ConnectionClosed as e:
            raise SendError(f"Persistent channel dropped during send: {e}")

    async def frames(self) -> AsyncIterator[Dict[str, Any]]:
        while self._pending:
            yield self._pending.pop(0)

        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosedOK:
                return
            except ConnectionClosedError as e:
                if e.sent is not None and e.sent.code == KEEPALIVE_CLOSE_CODE:
                    raise TransportTimeoutError("Keepalive ping timed out")
                raise TransientTransportError(f"Persistent channel dropped: {e}")

            frame = self._decode(raw)
            if frame is None:
                continue
            if frame.get("type") == "ping":
                await self._pong()
                continue
            if frame.get("type") == "pong":
                continue
            yield frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()


class HttpChatBackend(IChatBackend):
    """Chat backend reached over the admin chat REST API and WebSocket."""

    def __init__(
        self,
        config: BackendConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the backend client.

        Args:
            config: Backend endpoint configuration
            transport: Optional httpx transport (e.g. ``httpx.MockTransport``)
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=self._auth_headers(),
            timeout=httpx.Timeout(config.request_timeout_s),
            transport=transport,
        )
        self._etags: Dict[str, str] = {}

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        return headers

    async def send_message(self, session_id: str, content: str, client_message_id: str) -> SendAck:
        payload = {
            "content": content,
            "session_id": session_id,
            "client_message_id": client_message_id,
        }
        try:
            response = await self._client.post(self.config.messages_path, json=payload)
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"Send timed out: {e}")
        except httpx.RequestError as e:
            raise SendError(f"Send failed: {e}")

        raise_for_status(response, SendError)
        body = self._json_body(response, SendError)
        if not body.get("success", True):
            raise RequestRejectedError(f"Send refused: {body.get('error', 'unknown error')}", status_code=response.status_code)

        return SendAck.from_payload(body, TransportMode.POLLING)

    async def fetch_messages_since(self, session_id: str, cursor: PollingCursor) -> PollResponse:
        params: Dict[str, Any] = {"session_id": session_id, "limit": self.config.page_limit}
        if cursor.last_seen_message_id:
            params["since"] = cursor.last_seen_message_id
        elif cursor.last_seen_timestamp:
            params["since"] = cursor.last_seen_timestamp.isoformat()

        headers = {}
        etag = self._etags.get(session_id)
        if etag:
            headers["If-None-Match"] = etag

        try:
            response = await self._client.get(self.config.messages_path, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"Poll timed out: {e}")
        except httpx.RequestError as e:
            raise PollError(f"Poll failed: {e}")

        if response.status_code == 304:
            return PollResponse(messages=[], cursor=cursor, has_more=False)

        raise_for_status(response, PollError)
        body = self._json_body(response, PollError)
        if not body.get("success", True):
            raise PollError(f"Poll refused: {body.get('error', 'unknown error')}")

        if response.headers.get("ETag"):
            self._etags[session_id] = response.headers["ETag"]

        messages = []
        for item in body.get("messages") or []:
            try:
                message = ChatMessage.from_wire(item, session_id=session_id)
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping malformed message in poll for session {session_id}: {e}")
                continue
            if message.id == cursor.last_seen_message_id:
                continue
            messages.append(message)
        messages.sort(key=lambda m: m.sort_key())

        return PollResponse(
            messages=messages,
            cursor=cursor.advance(messages),
            has_more=bool(body.get("has_more", False)),
        )

    async def open_persistent_channel(self, session_id: str) -> WebSocketChannel:
        return await WebSocketChannel.open(
            _websocket_url(self.config, session_id),
            session_id,
            headers=self._auth_headers(),
            ping_interval=self.config.websocket_ping_interval_s,
            ping_timeout=self.config.websocket_ping_timeout_s,
        )

    @staticmethod
    def _json_body(response: httpx.Response, error_cls: Type[TransientTransportError]) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise error_cls(f"Backend returned invalid JSON ({response.status_code})", status_code=response.status_code)
        if not isinstance(body, dict):
            raise error_cls("Backend returned an unexpected payload", status_code=response.status_code)
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
