"""Error taxonomy for the realtime chat layer.

Four families, each with a different effect on the connection:

    AuthenticationError  connection is notified and terminated
    ValidationError      operation rejected, connection stays open
    PersistenceError     operation rejected, connection stays open, retry allowed
    ProtocolError        operation attempted in the wrong state, connection stays open

Every error carries a stable ``code`` that is sent to clients verbatim and a
human readable ``reason``.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all errors reported back to a chat connection."""

    code = "chat_error"
    default_reason = "Chat operation failed"

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def to_dict(self) -> dict:
        return {"code": self.code, "reason": self.reason}


# =============================================================================
# Authentication
# =============================================================================


class AuthenticationError(ChatError):
    code = "authentication_error"
    default_reason = "Authentication failed."


class MissingCredential(AuthenticationError):
    code = "missing_credential"
    default_reason = "No authentication token provided."


class InvalidCredential(AuthenticationError):
    code = "invalid_credential"
    default_reason = "Authentication failed."


class ExpiredCredential(AuthenticationError):
    code = "expired_credential"
    default_reason = "Authentication token has expired."


# =============================================================================
# Validation
# =============================================================================


class ValidationError(ChatError):
    code = "validation_error"
    default_reason = "Invalid request."


class EmptyContent(ValidationError):
    code = "empty_content"
    default_reason = "Message content is required."


class InvalidParticipant(ValidationError):
    code = "invalid_participant"
    default_reason = "Both conversation participants are required."


class MalformedFrame(ValidationError):
    code = "malformed_frame"
    default_reason = "Invalid message format."


# =============================================================================
# Persistence
# =============================================================================


class PersistenceError(ChatError):
    code = "persistence_error"
    default_reason = "Message store error."


class StoreUnavailable(PersistenceError):
    code = "store_unavailable"
    default_reason = "Message store is unavailable."


class PersistenceFailed(PersistenceError):
    code = "persistence_failed"
    default_reason = "Message could not be saved. Please resend."


class HistoryUnavailable(PersistenceError):
    code = "history_unavailable"
    default_reason = "Conversation history could not be loaded."


# =============================================================================
# Protocol
# =============================================================================


class ProtocolError(ChatError):
    code = "protocol_error"
    default_reason = "Operation not allowed in the current state."


class Unauthenticated(ProtocolError):
    code = "unauthenticated"
    default_reason = "Connection is not authenticated."


class NotInRoom(ProtocolError):
    code = "not_in_room"
    default_reason = "Join the conversation before sending messages."


class NotParticipant(ProtocolError):
    code = "not_participant"
    default_reason = "You are not a participant of this conversation."
