"""Async chat client for one two-party conversation.

``ChatClient`` is the counterpart of the ``/ws/chat`` endpoint. It holds one
connection for one (local user, peer) pair:

    idle → connecting → open → closed

    - The connection is opened once a credential, the local user ID and the
      peer ID are all known, and closed (with the local message list cleared)
      as soon as any of them goes away or the peer changes.
    - ``join`` is sent when the server confirms authentication.
    - Outgoing messages are not echoed locally; they come back through the
      room broadcast like everybody else's.
    - After a server-initiated close the client reconnects once. Closes the
      client asked for, and authentication failures, never reconnect.

Usage:
    async with ChatClient("ws://localhost:4000", on_message=print) as chat:
        await chat.update_context(credential=token, local_user_id=me, peer_id=landlord)
        await chat.send("Is the flat still available?")
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .conversation import derive_key
from .errors import InvalidParticipant
from .schemas import ChatMessage, InboundType, OutboundType

logger = logging.getLogger(__name__)

# Automatic reconnects allowed after a server-initiated close
MAX_AUTO_RECONNECTS = 1

ConnectFn = Callable[[str], Awaitable[Any]]


class ClientState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class ChatClient:
    """Client-side controller of one conversation view.

    Args:
        server_url: Base WebSocket URL, e.g. ``ws://localhost:4000``.
        connect: Transport factory; defaults to ``websockets.connect``.
        on_history: Called with the replayed message list after each join.
        on_message: Called with each live message of the current conversation.
        on_error: Called with ``(code, reason)`` for every reported failure.
    """

    def __init__(
        self,
        server_url: str,
        *,
        connect: Optional[ConnectFn] = None,
        on_history: Optional[Callable[[List[ChatMessage]], None]] = None,
        on_message: Optional[Callable[[ChatMessage], None]] = None,
        on_error: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self._connect = connect or websockets.connect
        self._on_history = on_history
        self._on_message = on_message
        self._on_error = on_error

        self.state = ClientState.IDLE
        self.messages: List[ChatMessage] = []
        self.conversation_key: Optional[str] = None
        self.user_id: Optional[str] = None

        self._credential: Optional[str] = None
        self._local_user_id: Optional[str] = None
        self._peer_id: Optional[str] = None

        self._connection: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self._auth_failed = False
        self._reconnects_left = MAX_AUTO_RECONNECTS

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def update_context(
        self,
        *,
        credential: Optional[str],
        local_user_id: Optional[str],
        peer_id: Optional[str],
    ) -> None:
        """Reconcile the connection with the current login and peer.

        Opens a connection when all three values are present, closes it when
        any is missing, and reopens it when one of them changed.
        """
        context = (credential, local_user_id, peer_id)
        changed = context != (self._credential, self._local_user_id, self._peer_id)
        self._credential, self._local_user_id, self._peer_id = context

        if not all(context):
            await self.close()
            return

        if changed or self.state == ClientState.IDLE:
            await self.close()
            await self._open()

    async def close(self) -> None:
        """Close the connection and clear local conversation state."""
        self._closing = True

        reader, self._reader = self._reader, None
        connection, self._connection = self._connection, None

        try:
            if reader is not None and reader is not asyncio.current_task():
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning(f"Chat reader ended with an error: {e!r}")
        finally:
            if connection is not None:
                try:
                    await connection.close()
                except (OSError, WebSocketException) as e:
                    logger.debug(f"Error while closing chat connection: {e}")

            self.messages = []
            self.conversation_key = None
            if self.state != ClientState.IDLE:
                self.state = ClientState.CLOSED

    async def _open(self) -> None:
        try:
            self.conversation_key = derive_key(self._local_user_id, self._peer_id)
        except InvalidParticipant as e:
            self._report(e.code, e.reason)
            self.state = ClientState.CLOSED
            return

        self.messages = []
        self._closing = False
        self._auth_failed = False
        self._reconnects_left = MAX_AUTO_RECONNECTS
        await self._establish()

    async def _establish(self) -> None:
        """Open the transport and start reading from it."""
        self.state = ClientState.CONNECTING
        url = f"{self.server_url}/ws/chat?{urlencode({'token': self._credential})}"
        try:
            connection = await self._connect(url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning(f"Chat connection failed: {e}")
            self.state = ClientState.CLOSED
            self._report("connection_failed", "Could not connect to chat server.")
            return

        if self._closing:
            await connection.close()
            return

        self._connection = connection
        self._reader = asyncio.create_task(self._read_loop(connection))

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for raw in connection:
                try:
                    await self._dispatch(raw)
                except Exception as e:
                    logger.exception(f"Failed to handle chat frame: {e}")
                    self._report("client_error", "Could not process a message from the chat server.")
        except ConnectionClosed as e:
            logger.info(f"Chat connection closed by server: {e}")

        if connection is self._connection:
            await self._handle_server_close()

    async def _handle_server_close(self) -> None:
        self._connection = None
        if self._closing:
            return

        if self._auth_failed or self._reconnects_left <= 0:
            self.state = ClientState.CLOSED
            if not self._auth_failed:
                self._report("connection_closed", "Chat connection lost.")
            return

        self._reconnects_left -= 1
        logger.info(f"Reconnecting to conversation {self.conversation_key}")
        await self._establish()

    # =========================================================================
    # Incoming frames
    # =========================================================================

    async def _dispatch(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Ignoring non-JSON frame from chat server")
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object frame from chat server")
            return

        frame_type = data.get("type")

        if frame_type == OutboundType.CONNECTED.value:
            self.user_id = data.get("userId")
            self.state = ClientState.OPEN
            await self._send_frame({
                "type": InboundType.JOIN.value,
                "conversationKey": self.conversation_key,
            })

        elif frame_type == OutboundType.HISTORY.value:
            if data.get("conversationKey") != self.conversation_key:
                return
            self.messages = [ChatMessage.model_validate(m) for m in data.get("messages", [])]
            # A session that made it back to history earns a fresh reconnect.
            self._reconnects_left = MAX_AUTO_RECONNECTS
            if self._on_history:
                self._on_history(list(self.messages))

        elif frame_type == OutboundType.MESSAGE_APPENDED.value:
            message = ChatMessage.model_validate(data["message"])
            if message.conversationKey != self.conversation_key:
                return
            self.messages.append(message)
            if self._on_message:
                self._on_message(message)

        elif frame_type == OutboundType.AUTHENTICATION_FAILED.value:
            self._auth_failed = True
            self._report(data.get("code", "authentication_error"), data.get("reason", ""))

        elif frame_type == OutboundType.OPERATION_FAILED.value:
            self._report(data.get("code", "operation_failed"), data.get("reason", ""))

        else:
            logger.debug(f"Ignoring unknown frame type {frame_type!r}")

    # =========================================================================
    # Outgoing
    # =========================================================================

    def can_send(self, text: Optional[str]) -> bool:
        """Whether ``text`` could be sent right now."""
        return (
            bool((text or "").strip())
            and self.state == ClientState.OPEN
            and self._connection is not None
            and self.conversation_key is not None
        )

    async def send(self, text: Optional[str]) -> bool:
        """Send a message to the current conversation.

        Returns:
            True if the frame was handed to the transport, False if sending
            is not possible (empty text, no connection, no conversation).
        """
        if not self.can_send(text):
            return False
        return await self._send_frame({
            "type": InboundType.SEND.value,
            "conversationKey": self.conversation_key,
            "content": text.strip(),
        })

    async def _send_frame(self, frame: dict) -> bool:
        connection = self._connection
        if connection is None:
            return False
        try:
            await connection.send(json.dumps(frame))
            return True
        except ConnectionClosed:
            self._report("connection_closed", "Chat connection lost.")
            return False

    def _report(self, code: str, reason: str) -> None:
        logger.info(f"Chat error {code}: {reason}")
        if self._on_error:
            try:
                self._on_error(code, reason)
            except Exception as e:
                logger.exception(f"on_error callback failed: {e}")
