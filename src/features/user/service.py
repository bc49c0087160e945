"""User service layer."""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import User

logger = logging.getLogger(__name__)


class UserService:
    """Service for user lookups and identity claims."""

    @staticmethod
    async def get_user(session: AsyncSession, user_id: int) -> User | None:
        """Get user by ID."""
        stmt = select(User).where(User.id == user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active_user(session: AsyncSession, user_id: int | str) -> User | None:
        """Get a user that may still take part in OAuth grants.

        Args:
            session: Database session
            user_id: User ID (the OIDC ``sub`` is accepted as a string)

        Returns:
            The user, or None if unknown, inactive or locked

        """
        try:
            user = await UserService.get_user(session, int(user_id))
        except ValueError:
            return None

        if user is None or not user.is_active or user.is_locked():
            return None
        return user

    @staticmethod
    def build_claims(user: User, scopes: list[str] | set[str]) -> dict[str, Any]:
        """Build OpenID Connect standard claims released for the granted scopes.

        - ``openid``: sub
        - ``profile``: name, preferred_username, picture, updated_at
        - ``email``: email, email_verified

        Args:
            user: User the claims describe
            scopes: Granted scopes

        Returns:
            Claim dictionary (always includes ``sub``)

        """
        claims: dict[str, Any] = {"sub": user.subject}

        if "profile" in scopes:
            claims["name"] = user.full_name
            claims["preferred_username"] = user.username
            if user.picture:
                claims["picture"] = user.picture
            if user.updated_at:
                claims["updated_at"] = int(user.updated_at.timestamp())

        if "email" in scopes:
            claims["email"] = user.email
            claims["email_verified"] = user.email_verified

        return claims
