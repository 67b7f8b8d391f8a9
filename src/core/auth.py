"""
Bearer token handling for realtime connections.

Tokens are issued by the account service; this module only needs to read them (creating one is kept for tooling and tests).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt

from src.core.config import Settings
from src.core.exceptions import AuthenticationError

ACCESS_TOKEN_EXPIRE_HOURS = 24 * 7  # 1 week


def create_access_token(
    user_id: UUID, settings: Settings, expires_delta: Optional[timedelta] = None
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    )
    claims = {"sub": str(user_id), "exp": expire}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def user_id_from_token(token: Optional[str], settings: Settings) -> UUID:
    """Verify the token and return the user it was issued to."""
    if not token:
        raise AuthenticationError("Missing credentials.")
    if token.lower().startswith("bearer "):
        token = token[len("bearer ") :]

    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise AuthenticationError("Invalid or expired token.") from e

    try:
        return UUID(claims["sub"])
    except (KeyError, TypeError, ValueError) as e:
        raise AuthenticationError("Token does not identify a user.") from e
