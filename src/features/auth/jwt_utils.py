"""JWT utilities for first-party sessions and other HS256 tickets."""

from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from jwt.exceptions import InvalidTokenError

from src.config.settings import settings

SESSION_TOKEN_TYPE = "session"


def create_token(data: dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
    """Create a signed HS256 token of the given type.

    Args:
        data: Payload data to encode in the token
        token_type: Value of the ``type`` claim
        expires_delta: Lifetime of the token

    Returns:
        Encoded JWT token string

    """
    now = datetime.now(UTC)
    to_encode = data.copy()
    to_encode.update({"exp": now + expires_delta, "iat": now, "type": token_type})

    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def create_session_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a first-party session token.

    Args:
        data: Payload data to encode in the token
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token string

    """
    return create_token(
        data,
        SESSION_TOKEN_TYPE,
        expires_delta or timedelta(minutes=settings.session_token_expire_minutes),
    )


def decode_token(token: str) -> dict[str, Any]:
    """Decode and verify an HS256 token.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload

    Raises:
        InvalidTokenError: If token is invalid or expired

    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return payload
    except InvalidTokenError:
        raise


def verify_token_type(payload: dict[str, Any], expected_type: str) -> bool:
    """Verify the token type matches expected.

    Args:
        payload: Decoded token payload
        expected_type: Expected token type ('session', 'consent', ...)

    Returns:
        True if type matches, False otherwise

    """
    return payload.get("type") == expected_type
