"""Authorization code issuance and single-use redemption."""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings

from .crypto import generate_authorization_code
from .models import AuthorizationCode

logger = logging.getLogger(__name__)

USED_CODE_RETENTION = timedelta(minutes=1)


class AuthorizationCodeService:
    """Service for authorization codes."""

    @staticmethod
    async def issue_code(
        session: AsyncSession,
        *,
        user_id: int,
        client_id: str,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: str | None,
        code_challenge_method: str | None,
        nonce: str | None = None,
        state: str | None = None,
        auth_time: datetime | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthorizationCode:
        """Create a new authorization code valid for the configured lifetime.

        Args:
            session: Database session
            user_id: Resource owner
            client_id: Client the code is bound to
            redirect_uri: Exact redirect URI used in the request
            scopes: Granted scopes
            code_challenge: PKCE challenge (S256)
            code_challenge_method: PKCE method
            nonce: OIDC nonce to echo in the ID token
            state: Client state (kept for diagnostics only)
            auth_time: When the user authenticated
            ip_address: Requester's IP address
            user_agent: Requester's User-Agent header

        Returns:
            The stored AuthorizationCode

        """
        now = datetime.now(UTC)
        code = AuthorizationCode(
            code=generate_authorization_code(),
            user_id=user_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=" ".join(scopes),
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            nonce=nonce,
            state=state,
            auth_time=auth_time or now,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            issued_at=now,
            expires_at=now + timedelta(seconds=settings.oauth_auth_code_lifetime),
            is_used=False,
        )
        session.add(code)
        await session.flush()

        logger.info(f"Authorization code issued for user {user_id} and client {client_id}")
        return code

    @staticmethod
    async def consume_code(
        session: AsyncSession,
        code: str,
        client_id: str,
        redirect_uri: str,
        ip_address: str | None = None,
    ) -> AuthorizationCode | None:
        """Atomically claim an unused, unexpired code for this client and redirect URI.

        The lookup and the ``is_used`` flip are one conditional UPDATE, so among
        concurrent callers presenting the same code at most one gets it back.

        Args:
            session: Database session
            code: Presented authorization code
            client_id: Authenticated client
            redirect_uri: Redirect URI presented at the token endpoint
            ip_address: Requester's IP address

        Returns:
            The claimed code (now marked used), or None if no matching live code exists

        """
        now = datetime.now(UTC)
        stmt = (
            update(AuthorizationCode)
            .where(
                AuthorizationCode.code == code,
                AuthorizationCode.client_id == client_id,
                AuthorizationCode.redirect_uri == redirect_uri,
                AuthorizationCode.is_used.is_(False),
                AuthorizationCode.expires_at > now,
            )
            .values(is_used=True, used_at=now, used_from_ip=ip_address)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(f"Authorization code rejected for client {client_id}: unknown, used, expired or mismatched")
            return None

        claimed = await session.execute(
            select(AuthorizationCode)
            .where(AuthorizationCode.code == code)
            .execution_options(populate_existing=True)
        )
        return claimed.scalar_one()

    @staticmethod
    async def invalidate_client_codes(session: AsyncSession, client_id: str, user_id: int | None = None) -> int:
        """Mark every outstanding code of a client as used, or only one user's codes. Returns the count."""
        now = datetime.now(UTC)
        conditions = [AuthorizationCode.client_id == client_id, AuthorizationCode.is_used.is_(False)]
        if user_id is not None:
            conditions.append(AuthorizationCode.user_id == user_id)
        stmt = (
            update(AuthorizationCode)
            .where(*conditions)
            .values(is_used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount

    @staticmethod
    async def purge_expired_codes(session: AsyncSession) -> int:
        """Delete expired codes and codes used more than a minute ago."""
        now = datetime.now(UTC)
        stmt = delete(AuthorizationCode).where(
            or_(
                AuthorizationCode.expires_at <= now,
                (AuthorizationCode.is_used.is_(True)) & (AuthorizationCode.used_at < now - USED_CODE_RETENTION),
            )
        ).execution_options(synchronize_session=False)
        result = await session.execute(stmt)
        return result.rowcount
