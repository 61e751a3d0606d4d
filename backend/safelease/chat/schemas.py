"""Data models for the realtime chat layer.

Wire format uses camelCase field names; every model that leaves the server is
serialised with ``model_dump(mode="json")``.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SenderSummary(BaseModel):
    """Public identity of a message sender.

    Always built by the server from the authenticated user record, never from
    client input.

    Attributes:
        id: User ID.
        displayName: Name shown next to the message.
        profilePic: Optional avatar URL.
    """
    id: str = Field(..., description="User ID")
    displayName: str = Field(..., description="Display name shown in UI")
    profilePic: Optional[str] = Field(default=None, description="Avatar URL")


class StoredMessage(BaseModel):
    """A chat message as persisted by the message store.

    Attributes:
        id: Store-assigned sequence number, increasing in append order.
        conversationKey: Conversation this message belongs to.
        senderId: User ID of the sender.
        content: Trimmed, non-empty message text.
        timestamp: Server time of the append (UTC).
        read: Storage-compatibility flag; never updated.
    """
    id: int
    conversationKey: str
    senderId: str
    content: str
    timestamp: datetime
    read: bool = False


class ChatMessage(BaseModel):
    """A chat message with its sender resolved, as delivered to clients."""
    id: int
    conversationKey: str
    sender: SenderSummary
    content: str
    timestamp: datetime
    read: bool = False

    @classmethod
    def from_stored(cls, stored: StoredMessage, sender: SenderSummary) -> "ChatMessage":
        return cls(
            id=stored.id,
            conversationKey=stored.conversationKey,
            sender=sender,
            content=stored.content,
            timestamp=stored.timestamp,
            read=stored.read,
        )


# =============================================================================
# Protocol frames
# =============================================================================


class InboundType(str, Enum):
    """Frame types a client may send."""
    JOIN = "join"
    SEND = "send"


class OutboundType(str, Enum):
    """Frame types the server sends."""
    CONNECTED = "connected"
    AUTHENTICATION_FAILED = "authentication_failed"
    HISTORY = "history"
    MESSAGE_APPENDED = "message_appended"
    OPERATION_FAILED = "operation_failed"


class InboundFrame(BaseModel):
    """Client → server frame."""
    type: InboundType
    conversationKey: str = Field(..., min_length=1)
    content: Optional[str] = None


def history_frame(conversation_key: str, messages: List[ChatMessage]) -> dict:
    return {
        "type": OutboundType.HISTORY.value,
        "conversationKey": conversation_key,
        "messages": [m.model_dump(mode="json") for m in messages],
    }


def message_appended_frame(message: ChatMessage) -> dict:
    return {
        "type": OutboundType.MESSAGE_APPENDED.value,
        "message": message.model_dump(mode="json"),
    }


def operation_failed_frame(code: str, reason: str) -> dict:
    return {
        "type": OutboundType.OPERATION_FAILED.value,
        "code": code,
        "reason": reason,
    }


def authentication_failed_frame(code: str, reason: str) -> dict:
    return {
        "type": OutboundType.AUTHENTICATION_FAILED.value,
        "code": code,
        "reason": reason,
    }
