"""Conversation key derivation.

A conversation between two users is identified by a key computed from their
two user IDs. The key does not depend on argument order and contains no
random or time component, so both participants (and the server, across
restarts) always arrive at the same key.
"""
from typing import Optional, Tuple

from .errors import InvalidParticipant

# Separator between the two sorted user IDs. IDs containing it are rejected,
# which keeps distinct pairs from ever mapping to the same key.
KEY_SEPARATOR = "_"


def _check_participant(user_id: Optional[str]) -> str:
    if user_id is None or not str(user_id).strip():
        raise InvalidParticipant()
    user_id = str(user_id)
    if KEY_SEPARATOR in user_id:
        raise InvalidParticipant(
            f"User ID must not contain '{KEY_SEPARATOR}': {user_id!r}"
        )
    return user_id


def derive_key(user_a: Optional[str], user_b: Optional[str]) -> str:
    """Return the canonical conversation key for two users.

    Args:
        user_a: One participant's user ID.
        user_b: The other participant's user ID.

    Returns:
        ``"<smaller id>_<larger id>"`` using plain string ordering.

    Raises:
        InvalidParticipant: If either ID is missing, blank, or contains the
            key separator.
    """
    first, second = sorted((_check_participant(user_a), _check_participant(user_b)))
    return f"{first}{KEY_SEPARATOR}{second}"


def split_key(conversation_key: str) -> Tuple[str, str]:
    """Return the two participant IDs encoded in a conversation key."""
    parts = conversation_key.split(KEY_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise InvalidParticipant(f"Not a conversation key: {conversation_key!r}")
    return parts[0], parts[1]


def is_participant(conversation_key: str, user_id: str) -> bool:
    """Check whether ``user_id`` is one of the two users of a conversation."""
    try:
        return user_id in split_key(conversation_key)
    except InvalidParticipant:
        return False
