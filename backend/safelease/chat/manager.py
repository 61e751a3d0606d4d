"""WebSocket session manager for two-party conversation rooms.

This module owns every live chat connection: it authenticates sockets,
tracks which conversation room each socket has joined, replays history on
join and fans new messages out to the room.

Connection lifecycle:
    connecting → authenticated → in_room(key) → closed

    - Authentication happens once, right after the socket is accepted. A
      failure sends ``authentication_failed`` and closes the socket (1008).
    - A socket is a member of at most one room. Joining a room removes it
      from the previous one.
    - Disconnect removes the socket from its room before anything else can
      be broadcast.

Room state:
    ``rooms`` maps a conversation key to the set of sessions joined to it.
    Sends to a room are serialised with a per-room ``asyncio.Lock`` held
    across persist → snapshot members → fan-out, so every member sees the
    room's messages in the order they were persisted. Join takes the same
    lock, so a joining socket receives its history before any live message.
    Membership removal never awaits, which makes it atomic with respect to
    the event loop.

Thread Safety:
    Designed for a single event loop in a single process. Rooms are not
    shared across processes.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set

from fastapi import WebSocket

from safelease.auth.service import TokenVerifier
from safelease.users.service import UserDirectory

from .conversation import is_participant
from .errors import (
    AuthenticationError,
    EmptyContent,
    HistoryUnavailable,
    InvalidCredential,
    NotInRoom,
    NotParticipant,
    PersistenceError,
    PersistenceFailed,
    Unauthenticated,
)
from .schemas import (
    ChatMessage,
    OutboundType,
    SenderSummary,
    authentication_failed_frame,
    history_frame,
    message_appended_frame,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

# WebSocket close code sent after an authentication failure (policy violation)
AUTH_FAILURE_CLOSE_CODE = 1008

# Close code sent when the user directory cannot be read at connect (internal error)
STORE_FAILURE_CLOSE_CODE = 1011

UNKNOWN_SENDER_NAME = "Unknown user"


class SessionState(str, Enum):
    """Lifecycle state of one chat connection."""
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    IN_ROOM = "in_room"
    CLOSED = "closed"


@dataclass(eq=False)
class Session:
    """Server-side state of one live connection.

    Attributes:
        websocket: The underlying transport.
        user_id: Authenticated user ID (None until authenticated).
        sender: Sender summary resolved once at connect time.
        state: Current lifecycle state.
        room: Conversation key of the joined room, if any.
    """
    websocket: WebSocket
    user_id: Optional[str] = None
    sender: Optional[SenderSummary] = None
    state: SessionState = SessionState.CONNECTING
    room: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.state in (SessionState.AUTHENTICATED, SessionState.IN_ROOM)


class ConnectionManager:
    """Tracks chat sessions and conversation room membership.

    Collaborators default to the process-wide singletons and are looked up on
    every use, so tests can swap them with ``reset_instance``.
    """

    def __init__(
        self,
        store: Optional[MessageStore] = None,
        users: Optional[UserDirectory] = None,
        verifier: Optional[TokenVerifier] = None,
    ) -> None:
        self._store = store
        self._users = users
        self._verifier = verifier

        # conversation key -> sessions currently joined to that room
        self.rooms: Dict[str, Set[Session]] = {}

        # conversation key -> lock serialising sends/joins on that room
        self._room_locks: Dict[str, asyncio.Lock] = {}

        # websocket -> session, for every authenticated connection
        self.sessions: Dict[WebSocket, Session] = {}

    @property
    def store(self) -> MessageStore:
        return self._store or MessageStore.get_instance()

    @property
    def users(self) -> UserDirectory:
        return self._users or UserDirectory.get_instance()

    @property
    def verifier(self) -> TokenVerifier:
        return self._verifier or TokenVerifier.from_config()

    # =========================================================================
    # Connect / Disconnect
    # =========================================================================

    async def connect(self, websocket: WebSocket, token: Optional[str]) -> Session:
        """Accept a socket and authenticate it with its bearer token.

        On success the client receives ``{type: "connected", userId, displayName}``.

        Raises:
            AuthenticationError: The token was missing, invalid or expired, or
                its user does not exist. The client has already been sent
                ``authentication_failed`` and the socket is closed (1008).
            PersistenceError: The user directory could not be read. The client
                has been sent ``authentication_failed`` carrying the store's
                error code and the socket is closed (1011).
        """
        await websocket.accept()
        session = Session(websocket=websocket)

        try:
            user_id = self.verifier.resolve_credential(token)
            sender = self.users.get_summary(user_id)
            if sender is None:
                raise InvalidCredential("Unknown user.")
        except (AuthenticationError, PersistenceError) as e:
            logger.warning(f"[WS] Authentication failed: {e.code}")
            session.state = SessionState.CLOSED
            await self._safe_send(session, authentication_failed_frame(e.code, e.reason))
            close_code = (
                AUTH_FAILURE_CLOSE_CODE if isinstance(e, AuthenticationError)
                else STORE_FAILURE_CLOSE_CODE
            )
            try:
                await websocket.close(code=close_code)
            except Exception as close_error:
                logger.debug(f"[WS] Close after auth failure failed: {close_error}")
            raise

        session.user_id = user_id
        session.sender = sender
        session.state = SessionState.AUTHENTICATED
        self.sessions[websocket] = session
        logger.info(f"[Manager] User {user_id} authenticated")

        await self._safe_send(session, {
            "type": OutboundType.CONNECTED.value,
            "userId": user_id,
            "displayName": sender.displayName,
        })
        return session

    def disconnect(self, session: Session) -> None:
        """Forget a session and remove it from its room.

        Never awaits, so no broadcast computed after this call can include
        the session.
        """
        self._leave_room(session)
        self.sessions.pop(session.websocket, None)
        session.state = SessionState.CLOSED
        logger.info(f"[Manager] User {session.user_id} disconnected")

    # =========================================================================
    # Join
    # =========================================================================

    async def join(self, session: Session, conversation_key: str) -> List[ChatMessage]:
        """Move a session into a conversation room and replay its history.

        The history frame is delivered to the joining socket only.

        Returns:
            The replayed messages, oldest first.

        Raises:
            Unauthenticated: The session is not authenticated.
            NotParticipant: The user is not one of the conversation's two users.
            HistoryUnavailable: History could not be loaded; the session is
                left outside any room and may retry.
        """
        if not session.is_authenticated:
            raise Unauthenticated()
        if not is_participant(conversation_key, session.user_id):
            raise NotParticipant()

        async with self._lock_for(conversation_key):
            self._leave_room(session)
            self.rooms.setdefault(conversation_key, set()).add(session)
            session.room = conversation_key
            session.state = SessionState.IN_ROOM

            try:
                history = self._load_history(conversation_key)
            except PersistenceError as e:
                self._leave_room(session)
                raise HistoryUnavailable() from e

            await self._safe_send(session, history_frame(conversation_key, history))

        logger.info(
            f"[Manager] User {session.user_id} joined {conversation_key} "
            f"({len(history)} messages replayed, {self.get_room_size(conversation_key)} in room)"
        )
        return history

    # =========================================================================
    # Send
    # =========================================================================

    async def send(self, session: Session, conversation_key: str, content: Optional[str]) -> ChatMessage:
        """Persist a message and broadcast it to every member of the room.

        The sender receives its own message through the broadcast.

        Raises:
            Unauthenticated: The session is not authenticated.
            EmptyContent: Content is empty after trimming (nothing is stored).
            NotInRoom: The session has not joined ``conversation_key``.
            PersistenceFailed: The store rejected the append (nothing is broadcast).
        """
        if not session.is_authenticated:
            raise Unauthenticated()
        content = (content or "").strip()
        if not content:
            raise EmptyContent()
        if session.room != conversation_key:
            raise NotInRoom()

        async with self._lock_for(conversation_key):
            try:
                stored = self.store.append(conversation_key, session.user_id, content)
            except PersistenceError as e:
                logger.error(f"[Manager] Persist failed in {conversation_key}: {e}")
                raise PersistenceFailed() from e

            message = ChatMessage.from_stored(stored, session.sender)
            logger.info(
                f"[Manager] Message {message.id} from {session.user_id} in {conversation_key}: "
                f"{content[:50]}"
            )
            await self.broadcast(message_appended_frame(message), conversation_key)

        return message

    # =========================================================================
    # Broadcast
    # =========================================================================

    async def broadcast(self, frame: dict, conversation_key: str) -> None:
        """Send a frame to every session currently in a room, concurrently.

        Sessions whose transport fails are disconnected.
        """
        members = list(self.rooms.get(conversation_key, ()))
        if not members:
            return

        results = await asyncio.gather(
            *[self._safe_send(member, frame) for member in members],
            return_exceptions=True,
        )

        for member, success in zip(members, results):
            if success is not True:
                logger.debug(f"Removing dead connection of {member.user_id} from {conversation_key}")
                self.disconnect(member)

    async def _safe_send(self, session: Session, frame: dict) -> bool:
        """Send a frame to one socket.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await session.websocket.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    async def notify(self, session: Session, frame: dict) -> bool:
        """Send a frame to a single session (errors, acknowledgements)."""
        return await self._safe_send(session, frame)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_for(self, conversation_key: str) -> asyncio.Lock:
        lock = self._room_locks.get(conversation_key)
        if lock is None:
            lock = self._room_locks[conversation_key] = asyncio.Lock()
        return lock

    def _leave_room(self, session: Session) -> None:
        room = session.room
        if room is None:
            return
        members = self.rooms.get(room)
        if members is not None:
            members.discard(session)
            # The room's lock outlives its members: a released lock may still
            # have a woken waiter that has not yet re-acquired it.
            if not members:
                del self.rooms[room]
        session.room = None
        if session.state == SessionState.IN_ROOM:
            session.state = SessionState.AUTHENTICATED

    def _load_history(self, conversation_key: str) -> List[ChatMessage]:
        """Read a conversation's history and resolve every sender."""
        stored = self.store.list_by_conversation(conversation_key)
        senders: Dict[str, SenderSummary] = {}
        history = []
        for item in stored:
            sender = senders.get(item.senderId)
            if sender is None:
                sender = self.users.get_summary(item.senderId) or SenderSummary(
                    id=item.senderId, displayName=UNKNOWN_SENDER_NAME
                )
                senders[item.senderId] = sender
            history.append(ChatMessage.from_stored(item, sender))
        return history

    def get_history(self, conversation_key: str) -> List[ChatMessage]:
        """Resolved history of a conversation (used by the HTTP API)."""
        return self._load_history(conversation_key)

    def get_room_size(self, conversation_key: str) -> int:
        """Get the number of sessions joined to a room."""
        return len(self.rooms.get(conversation_key, ()))

    def members(self, conversation_key: str) -> Set[Session]:
        """Snapshot of the sessions joined to a room."""
        return set(self.rooms.get(conversation_key, ()))

    def clear(self) -> None:
        """Drop all sessions and rooms (used by tests)."""
        self.rooms.clear()
        self._room_locks.clear()
        self.sessions.clear()


# Global singleton instance used by all WebSocket handlers
manager = ConnectionManager()
