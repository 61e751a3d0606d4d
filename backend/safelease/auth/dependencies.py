"""FastAPI dependencies for bearer-token authentication on HTTP routes."""
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from safelease.chat.errors import AuthenticationError

from .service import TokenVerifier

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` value."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_user_id(
    authorization: Optional[str] = Header(None, description="Bearer token"),
) -> str:
    """Resolve the calling user from the Authorization header.

    Raises:
        HTTPException: 401 if the token is missing, malformed, invalid or expired.
    """
    try:
        return TokenVerifier.from_config().resolve_credential(bearer_token(authorization))
    except AuthenticationError as e:
        logger.warning(f"HTTP authentication failed: {e.code}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.reason,
            headers={"WWW-Authenticate": "Bearer"},
        )
