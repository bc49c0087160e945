"""Authentication router (first-party session endpoints)."""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session

from .exceptions import InvalidCredentialsException
from .schemas import SessionResponse, UserLoginRequest
from .service import AuthService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/login", response_model=SessionResponse)
async def login(data: UserLoginRequest, response: Response, session: AsyncSession = Depends(get_db_session)):
    """Login and start a session.

    - **username**: Username (optional, either username or email required)
    - **email**: Email address (optional, either username or email required)
    - **password**: Password
    - **return_to**: Optional relative URL (e.g. the pending `/oauth/authorize` request)

    The session token is returned in the body and set as an HttpOnly cookie. When
    `return_to` is a safe relative path it is echoed back as `redirect_to`.
    """
    user = await AuthService.authenticate_user(session, data.credential, data.password)

    if not user:
        # Failed-attempt counters must survive the 401
        await session.commit()
        raise InvalidCredentialsException()

    result = AuthService.create_session(user, data.return_to)
    await session.commit()

    response.set_cookie(
        settings.session_cookie_name,
        result.access_token,
        max_age=result.expires_in,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )

    logger.info(f"User logged in: {user.username}")
    return result


@router.post("/logout")
async def logout(response: Response):
    """Logout by clearing the session cookie."""
    response.delete_cookie(settings.session_cookie_name)
    return {"message": "Successfully logged out"}
