"""Authentication dependencies for FastAPI."""

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session
from src.features.user.models import User, UserRole
from src.features.user.service import UserService

from .exceptions import (
    InsufficientRoleException,
    InvalidTokenException,
    UserInactiveException,
    UserLockedException,
)
from .jwt_utils import SESSION_TOKEN_TYPE, decode_token, verify_token_type

security = HTTPBearer(auto_error=False)


def _session_token(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str | None:
    """Session token from the Authorization header, falling back to the session cookie."""
    if credentials is not None:
        return credentials.credentials
    return request.cookies.get(settings.session_cookie_name)


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = Depends(get_db_session),
) -> User:
    """Get the current authenticated user from the session token.

    The decoded claims are kept on ``request.state.session_claims`` so the
    authorization endpoint can read ``auth_time``.

    Args:
        request: Incoming request (cookie source)
        credentials: HTTP authorization credentials with bearer token
        session: Database session

    Returns:
        User object

    Raises:
        InvalidTokenException: If token is missing, invalid or user not found

    """
    token = _session_token(request, credentials)
    if not token:
        raise InvalidTokenException(detail="Not authenticated")

    try:
        payload = decode_token(token)

        if not verify_token_type(payload, SESSION_TOKEN_TYPE):
            raise InvalidTokenException(detail="Invalid token type")

        user_id_raw = payload.get("sub")
        if user_id_raw is None:
            raise InvalidTokenException(detail="Invalid token payload")
        user_id = int(user_id_raw)

    except (InvalidTokenError, ValueError) as err:
        raise InvalidTokenException() from err

    user = await UserService.get_user(session, user_id)

    if user is None:
        raise InvalidTokenException(detail="User not found")

    if not user.is_active:
        raise UserInactiveException()

    if user.is_locked():
        raise UserLockedException()

    request.state.session_claims = payload
    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    """Get current active user (convenience wrapper).

    Args:
        current_user: Current user from get_current_user

    Returns:
        Active user

    """
    return current_user


def require_role(*required_roles: UserRole):
    """Dependency factory to require specific roles.

    Usage:
        Depends(require_role(UserRole.ADMIN))
    """

    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if not any(role.value in current_user.roles for role in required_roles):
            raise InsufficientRoleException([r.value for r in required_roles])
        return current_user

    return role_checker


async def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = Depends(get_db_session),
) -> User | None:
    """Get current user if a session is present, otherwise return None.

    Used by the authorization endpoint, which redirects to login instead of failing.

    Args:
        request: Incoming request
        credentials: Optional HTTP authorization credentials
        session: Database session

    Returns:
        User object if authenticated, None otherwise

    """
    if credentials is None and not request.cookies.get(settings.session_cookie_name):
        return None

    try:
        return await get_current_user(request, credentials, session)
    except (InvalidTokenException, UserInactiveException, UserLockedException):
        return None
