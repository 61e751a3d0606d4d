"""JWT credential verification.

SafeLease issues HS256 tokens whose payload carries ``userId`` and ``role``.
Both the HTTP API and the realtime chat layer resolve a bearer token to a
user ID through ``TokenVerifier``.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from safelease.chat.errors import ExpiredCredential, InvalidCredential, MissingCredential
from safelease.config import get_config

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Resolves SafeLease access tokens to user IDs."""

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    @classmethod
    def from_config(cls) -> "TokenVerifier":
        jwt_cfg = get_config().secrets.jwt
        return cls(secret_key=jwt_cfg.secret_key, algorithm=jwt_cfg.algorithm)

    def resolve_credential(self, token: Optional[str]) -> str:
        """Validate a token and return the user ID it was issued for.

        Raises:
            MissingCredential: No token was supplied.
            ExpiredCredential: The token's ``exp`` is in the past.
            InvalidCredential: Bad signature, malformed token, or no ``userId``.
        """
        if not token or not token.strip():
            raise MissingCredential()

        try:
            payload = jwt.decode(token.strip(), self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            raise ExpiredCredential() from e
        except jwt.InvalidTokenError as e:
            logger.debug(f"Token validation error: {e}")
            raise InvalidCredential() from e

        user_id = payload.get("userId")
        if not user_id:
            raise InvalidCredential("Token does not contain a user ID.")
        return str(user_id)


def create_access_token(
    user_id: str,
    role: str = "user",
    expires_in: Optional[timedelta] = None,
) -> str:
    """Issue a token carrying the ``{userId, role}`` payload.

    Args:
        user_id: The user the token is issued for.
        role: SafeLease role (user, tenant, landlord, admin).
        expires_in: Token lifetime; defaults to ``auth.token_expire_hours``.
    """
    config = get_config()
    if expires_in is None:
        expires_in = timedelta(hours=config.auth.token_expire_hours)
    payload = {
        "userId": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(
        payload,
        config.secrets.jwt.secret_key,
        algorithm=config.secrets.jwt.algorithm,
    )
