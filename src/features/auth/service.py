"""Authentication service layer."""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.features.user.models import User, UserStatus

from .jwt_utils import create_session_token
from .schemas import SessionResponse

logger = logging.getLogger(__name__)

MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 30


class AuthService:
    """Service for first-party login sessions."""

    @staticmethod
    async def authenticate_user(session: AsyncSession, credential: str, password: str) -> User | None:
        """Authenticate a user with either username or email and password.

        Args:
            session: Database session
            credential: Username or email address
            password: Plain text password

        Returns:
            User object if authentication successful, None otherwise

        """
        stmt = select(User).where(or_(User.username == credential, User.email == credential))
        result = await session.execute(stmt)
        user = result.scalar_one_or_none()

        if not user:
            return None

        if user.is_locked():
            logger.warning(f"Login attempt for locked account: {credential}")
            return None

        if user.status == UserStatus.LOCKED.value:
            # Lock window elapsed
            user.status = UserStatus.ACTIVE.value

        if not user.is_active:
            logger.warning(f"Login attempt for inactive account: {credential}")
            return None

        if not user.verify_password(password):
            user.failed_login_attempts += 1

            if user.failed_login_attempts >= MAX_FAILED_LOGINS:
                user.locked_until = datetime.now(UTC) + timedelta(minutes=LOCKOUT_MINUTES)
                user.status = UserStatus.LOCKED.value
                logger.warning(f"Account locked due to failed attempts: {credential}")

            return None

        user.failed_login_attempts = 0
        user.last_login_at = datetime.now(UTC)
        user.locked_until = None

        return user

    @staticmethod
    def create_session(user: User, return_to: str | None = None) -> SessionResponse:
        """Issue a session token for a freshly authenticated user.

        Args:
            user: Authenticated user
            return_to: Requested post-login destination

        Returns:
            SessionResponse with the token and the safe redirect target, if any

        """
        auth_time = int(datetime.now(UTC).timestamp())
        token = create_session_token({"sub": user.subject, "username": user.username, "auth_time": auth_time})

        return SessionResponse(
            access_token=token,
            expires_in=settings.session_token_expire_minutes * 60,
            redirect_to=AuthService.safe_return_to(return_to),
        )

    @staticmethod
    def safe_return_to(return_to: str | None) -> str | None:
        """Only same-origin relative paths may be resumed after login."""
        if not return_to or not return_to.startswith("/") or return_to.startswith("//") or "\\" in return_to:
            return None
        return return_to
