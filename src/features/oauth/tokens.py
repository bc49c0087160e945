"""Token issuer: signed access/ID tokens and rotating refresh token families."""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.features.user.models import User
from src.features.user.service import UserService
from src.shared.audit.audit import AuditEvent, AuditSeverity, record_audit_event

from .crypto import compute_at_hash, generate_family_id, generate_refresh_token, hash_token
from .keys import MalformedTokenError, get_key_manager
from .models import RefreshToken, RevocationReason

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access_token"
EXPIRED_REFRESH_RETENTION = timedelta(days=7)


class TokenService:
    """Service for minting, rotating and revoking tokens."""

    # Signed tokens

    @staticmethod
    def create_access_token(user: User, client_id: str, scopes: list[str]) -> str:
        """Mint a short-lived RS256 access token.

        Claims: iss, sub, aud (the client), exp, iat, jti, scope, client_id, token_type.
        """
        now = int(datetime.now(UTC).timestamp())
        claims = {
            "iss": settings.oauth_issuer,
            "sub": user.subject,
            "aud": client_id,
            "exp": now + settings.oauth_access_token_lifetime,
            "iat": now,
            "jti": uuid.uuid4().hex,
            "scope": " ".join(scopes),
            "client_id": client_id,
            "token_type": ACCESS_TOKEN_TYPE,
        }
        return get_key_manager().sign(claims)

    @staticmethod
    def create_id_token(
        user: User,
        client_id: str,
        scopes: list[str],
        access_token: str,
        nonce: str | None = None,
        auth_time: datetime | None = None,
    ) -> str:
        """Mint an OpenID Connect ID token.

        Args:
            user: Authenticated user
            client_id: Audience
            scopes: Granted scopes; profile/email select the released claims
            access_token: Access token issued alongside (for ``at_hash``)
            nonce: Nonce from the authorization request
            auth_time: When the user authenticated

        Returns:
            Compact RS256 JWT

        """
        now = int(datetime.now(UTC).timestamp())
        claims: dict[str, Any] = UserService.build_claims(user, scopes)
        claims.update(
            {
                "iss": settings.oauth_issuer,
                "sub": user.subject,
                "aud": client_id,
                "exp": now + settings.oauth_id_token_lifetime,
                "iat": now,
                "auth_time": int(auth_time.timestamp()) if auth_time else now,
                "at_hash": compute_at_hash(access_token),
            }
        )
        if nonce:
            claims["nonce"] = nonce
        return get_key_manager().sign(claims)

    @staticmethod
    def verify_access_token(token: str, audience: str | None = None) -> dict[str, Any]:
        """Verify an access token without touching storage.

        Raises:
            TokenVerificationError: Any signature, expiry, issuer, audience or type failure

        """
        claims = get_key_manager().verify(token, issuer=settings.oauth_issuer, audience=audience)
        if claims.get("token_type") != ACCESS_TOKEN_TYPE:
            raise MalformedTokenError("Not an access token")
        return claims

    # Refresh tokens

    @staticmethod
    async def issue_refresh_token(
        session: AsyncSession,
        *,
        user_id: int,
        client_id: str,
        scopes: list[str],
        family_id: str,
        generation: int = 1,
        previous_token_hash: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[str, RefreshToken]:
        """Store a new refresh token and return its plaintext value once."""
        now = datetime.now(UTC)
        value = generate_refresh_token()
        record = RefreshToken(
            token_hash=hash_token(value),
            family_id=family_id,
            generation=generation,
            previous_token_hash=previous_token_hash,
            client_id=client_id,
            user_id=user_id,
            scope=" ".join(scopes),
            issued_at=now,
            expires_at=now + timedelta(seconds=settings.oauth_refresh_token_lifetime),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.add(record)
        await session.flush()
        return value, record

    @staticmethod
    async def create_family(
        session: AsyncSession,
        *,
        user_id: int,
        client_id: str,
        scopes: list[str],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[str, RefreshToken]:
        """Start a new token family (generation 1), evicting the oldest families over the limit.

        The owner row is locked (FOR UPDATE; SQLite serializes writers anyway) and the
        overflow is counted after the insert, so concurrent grants stay within the limit.
        """
        await session.execute(select(User.id).where(User.id == user_id).with_for_update())
        value, record = await TokenService.issue_refresh_token(
            session,
            user_id=user_id,
            client_id=client_id,
            scopes=scopes,
            family_id=generate_family_id(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await TokenService.enforce_family_limit(session, client_id, user_id, keep_family_id=record.family_id)
        return value, record

    @staticmethod
    async def enforce_family_limit(
        session: AsyncSession, client_id: str, user_id: int, keep_family_id: str | None = None
    ) -> int:
        """Revoke the oldest live families beyond the limit, never ``keep_family_id``.

        Returns:
            Number of families evicted

        """
        now = datetime.now(UTC)
        stmt = (
            select(RefreshToken.family_id)
            .where(
                RefreshToken.client_id == client_id,
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked.is_(False),
                RefreshToken.superseded_at.is_(None),
                RefreshToken.expires_at > now,
            )
            .order_by(RefreshToken.issued_at.asc(), RefreshToken.id.asc())
        )
        live_families = list(dict.fromkeys((await session.execute(stmt)).scalars().all()))

        overflow = len(live_families) - settings.oauth_max_active_families
        if overflow <= 0:
            return 0

        evicted = [f for f in live_families if f != keep_family_id][:overflow]
        for family_id in evicted:
            await TokenService.revoke_family(session, family_id, RevocationReason.FAMILY_LIMIT)
            await record_audit_event(
                session,
                AuditEvent.TOKEN_FAMILY_EVICTED,
                actor_id=user_id,
                client_id=client_id,
                family_id=family_id,
            )
        return len(evicted)

    @staticmethod
    async def get_refresh_token(session: AsyncSession, token: str) -> RefreshToken | None:
        """Look up a refresh token by the hash of its presented value."""
        stmt = (
            select(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(token))
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def rotate_refresh_token(
        session: AsyncSession,
        record: RefreshToken,
        scopes: list[str] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[str, RefreshToken] | None:
        """Supersede ``record`` and mint the next generation in its family.

        The supersede is a conditional UPDATE on the token still being live, so two
        concurrent rotations of the same token cannot both succeed.

        Returns:
            (plaintext, new record), or None if the token was no longer live

        """
        now = datetime.now(UTC)
        stmt = (
            update(RefreshToken)
            .where(
                RefreshToken.id == record.id,
                RefreshToken.is_revoked.is_(False),
                RefreshToken.superseded_at.is_(None),
                RefreshToken.expires_at > now,
            )
            .values(superseded_at=now, last_used_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            return None

        return await TokenService.issue_refresh_token(
            session,
            user_id=record.user_id,
            client_id=record.client_id,
            scopes=scopes or record.scopes,
            family_id=record.family_id,
            generation=record.generation + 1,
            previous_token_hash=record.token_hash,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @staticmethod
    async def touch_refresh_token(session: AsyncSession, record: RefreshToken) -> None:
        """Record use of a refresh token that is returned unchanged (rotation disabled)."""
        await session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == record.id)
            .values(last_used_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def revoke_family(session: AsyncSession, family_id: str, reason: RevocationReason) -> int:
        """Revoke every token of a family in one statement. Returns the count newly revoked."""
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.family_id == family_id, RefreshToken.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=datetime.now(UTC), revocation_reason=reason.value)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount

    @staticmethod
    async def handle_reuse(
        session: AsyncSession,
        record: RefreshToken,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """React to a revoked or superseded refresh token being presented again.

        The whole family is revoked (when enabled) and a critical audit event is staged.
        The caller must commit before reporting ``invalid_grant``.

        Returns:
            Number of tokens revoked

        """
        revoked = 0
        if settings.oauth_revoke_on_reuse:
            revoked = await TokenService.revoke_family(session, record.family_id, RevocationReason.TOKEN_REUSE)

        await record_audit_event(
            session,
            AuditEvent.REFRESH_TOKEN_REUSE_DETECTED,
            severity=AuditSeverity.CRITICAL,
            actor_id=record.user_id,
            client_id=record.client_id,
            family_id=record.family_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"generation": record.generation, "revoked_tokens": revoked},
        )
        return revoked

    @staticmethod
    async def revoke_refresh_token(session: AsyncSession, record: RefreshToken, reason: RevocationReason) -> bool:
        """Revoke a single refresh token; the rest of its family is untouched."""
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.id == record.id, RefreshToken.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=datetime.now(UTC), revocation_reason=reason.value)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    async def revoke_client_tokens(
        session: AsyncSession, client_id: str, reason: RevocationReason, user_id: int | None = None
    ) -> int:
        """Revoke every live refresh token of a client, optionally only for one user."""
        conditions = [RefreshToken.client_id == client_id, RefreshToken.is_revoked.is_(False)]
        if user_id is not None:
            conditions.append(RefreshToken.user_id == user_id)

        stmt = (
            update(RefreshToken)
            .where(*conditions)
            .values(is_revoked=True, revoked_at=datetime.now(UTC), revocation_reason=reason.value)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        logger.info(f"Revoked {result.rowcount} refresh token(s) for client {client_id} ({reason.value})")
        return result.rowcount

    @staticmethod
    async def count_live_families(session: AsyncSession, client_id: str, user_id: int) -> int:
        now = datetime.now(UTC)
        stmt = select(func.count(func.distinct(RefreshToken.family_id))).where(
            RefreshToken.client_id == client_id,
            RefreshToken.user_id == user_id,
            RefreshToken.is_revoked.is_(False),
            RefreshToken.superseded_at.is_(None),
            RefreshToken.expires_at > now,
        )
        return (await session.execute(stmt)).scalar_one()

    @staticmethod
    async def purge_expired_refresh_tokens(session: AsyncSession) -> int:
        """Delete refresh tokens that expired more than a week ago."""
        cutoff = datetime.now(UTC) - EXPIRED_REFRESH_RETENTION
        stmt = (
            delete(RefreshToken)
            .where(RefreshToken.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount
