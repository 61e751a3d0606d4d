"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time two-party chat
    - GET /chat/conversations/{peer_id}/key: Conversation key for the caller and a peer
    - GET /chat/conversations/{conversation_key}/history: Full message history

Protocol Flow:
    1. Client connects with ?token=<jwt>
       → Server sends: {type: "connected", userId, displayName}
       → or {type: "authentication_failed", code, reason} and closes (1008)
    2. Client sends: {type: "join", conversationKey}
       → Server sends (to this client only): {type: "history", conversationKey, messages}
    3. Client sends: {type: "send", conversationKey, content}
       → Server broadcasts to the room: {type: "message_appended", message}
    4. Any rejected operation
       → Server sends (to this client only): {type: "operation_failed", code, reason}
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from safelease.auth.dependencies import bearer_token, get_current_user_id

from .conversation import derive_key, is_participant
from .errors import AuthenticationError, ChatError, InvalidParticipant, MalformedFrame, PersistenceError
from .manager import Session, manager
from .schemas import InboundFrame, InboundType, operation_failed_frame

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code sent when the receive loop fails unexpectedly (internal error)
UNEXPECTED_ERROR_CLOSE_CODE = 1011


def parse_frame(raw: Optional[str]) -> InboundFrame:
    """Decode and validate one client frame.

    Raises:
        MalformedFrame: Binary or non-JSON payload, unknown type, or missing
            conversationKey.
    """
    if not isinstance(raw, str):
        raise MalformedFrame("Binary frames are not supported.")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedFrame() from e
    if not isinstance(data, dict):
        raise MalformedFrame()
    try:
        return InboundFrame.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedFrame(f"Invalid message format: {e.errors()[0]['msg']}") from e


async def handle_frame(session: Session, raw: Optional[str]) -> None:
    """Dispatch one client frame; failures are reported to this client only."""
    try:
        frame = parse_frame(raw)
        logger.debug("[WS] %s sent: type=%s", session.user_id, frame.type.value)

        if frame.type == InboundType.JOIN:
            await manager.join(session, frame.conversationKey)
        elif frame.type == InboundType.SEND:
            await manager.send(session, frame.conversationKey, frame.content)
    except ChatError as e:
        logger.info(f"[WS] Operation rejected for {session.user_id}: {e.code}")
        await manager.notify(session, operation_failed_frame(e.code, e.reason))


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token"),
) -> None:
    """WebSocket endpoint for real-time chat.

    One connection is authenticated once, then may join one conversation at a
    time and send messages to it.

    Args:
        websocket: The WebSocket connection.
        token: Access token. The Authorization header is used if absent.
    """
    token = token or bearer_token(websocket.headers.get("authorization"))
    logger.info("[WS] New chat connection")

    try:
        session = await manager.connect(websocket, token)
    except (AuthenticationError, PersistenceError):
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"[WS] {session.user_id} closed the connection")
                break
            await handle_frame(session, message.get("text"))
    except WebSocketDisconnect:
        logger.info(f"[WS] {session.user_id} closed the connection")
    except Exception as e:
        logger.exception(f"[WS] Unexpected error on connection of {session.user_id}: {e}")
        try:
            await websocket.close(code=UNEXPECTED_ERROR_CLOSE_CODE)
        except Exception as close_error:
            logger.debug(f"[WS] Close after unexpected error failed: {close_error}")
    finally:
        manager.disconnect(session)


@router.get("/chat/conversations/{peer_id}/key")
async def get_conversation_key(
    peer_id: str,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Derive the conversation key between the caller and ``peer_id``."""
    try:
        return {"conversationKey": derive_key(user_id, peer_id)}
    except InvalidParticipant as e:
        raise HTTPException(status_code=400, detail=e.reason)


@router.get("/chat/conversations/{conversation_key}/history")
async def get_conversation_history(
    conversation_key: str,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Full message history of a conversation, oldest first.

    Only the two participants of the conversation may read it.
    """
    if not is_participant(conversation_key, user_id):
        raise HTTPException(status_code=403, detail="Not a participant of this conversation")
    try:
        messages = manager.get_history(conversation_key)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=e.reason)
    return {"messages": [m.model_dump(mode="json") for m in messages]}
