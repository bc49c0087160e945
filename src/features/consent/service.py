"""Consent store service layer."""

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.features.clients.models import OAuthClient
from src.features.oauth.codes import AuthorizationCodeService
from src.features.oauth.models import RevocationReason
from src.features.oauth.tokens import TokenService
from src.shared.audit.audit import AuditEvent, record_audit_event

from .models import ConsentAction, ConsentEvent, UserConsent

logger = logging.getLogger(__name__)

SCOPE_DESCRIPTIONS: dict[str, dict[str, str]] = {
    "openid": {"name": "OpenID Connect", "description": "Verify your identity", "icon": "key"},
    "profile": {
        "name": "Profile Information",
        "description": "Access your name, username, and profile picture",
        "icon": "user",
    },
    "email": {
        "name": "Email Address",
        "description": "Access your email address and verification status",
        "icon": "mail",
    },
    "offline_access": {
        "name": "Offline Access",
        "description": "Access your data when you're not using the app",
        "icon": "refresh",
    },
}

HISTORY_PREVIEW_LENGTH = 10


def describe_scopes(scopes: list[str]) -> list[dict[str, str]]:
    """Human-readable scope descriptions for consent screens."""
    described = []
    for scope in scopes:
        info = SCOPE_DESCRIPTIONS.get(scope, {"name": scope, "description": f"Access to {scope}", "icon": "lock"})
        described.append({"scope": scope, **info})
    return described


class ConsentService:
    """Service for per-(user, client) consent records."""

    @staticmethod
    async def get_consent(session: AsyncSession, user_id: int, client_id: str) -> UserConsent | None:
        stmt = select(UserConsent).where(UserConsent.user_id == user_id, UserConsent.client_id == client_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def missing_scopes(session: AsyncSession, user_id: int, client_id: str, scopes: list[str]) -> list[str]:
        """Scopes of the request the user has not granted to this client yet."""
        consent = await ConsentService.get_consent(session, user_id, client_id)
        if consent is None:
            return list(scopes)
        return consent.missing_scopes(scopes)

    @staticmethod
    async def _append_event(
        session: AsyncSession,
        consent: UserConsent,
        action: ConsentAction,
        scopes: list[str],
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        session.add(
            ConsentEvent(
                consent_id=consent.id,
                action=action.value,
                scopes=list(scopes),
                ip_address=ip_address,
                user_agent=user_agent[:500] if user_agent else None,
            )
        )

    @staticmethod
    async def grant_consent(
        session: AsyncSession,
        user_id: int,
        client_id: str,
        scopes: list[str],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserConsent:
        """Record that the user granted ``scopes`` to the client.

        New scopes are merged into any existing grant; a revoked record is reactivated.

        Args:
            session: Database session
            user_id: Granting user
            client_id: Client receiving the grant
            scopes: Scopes approved on the consent screen
            ip_address: Requester's IP address
            user_agent: Requester's User-Agent header

        Returns:
            The up-to-date consent record

        """
        consent = await ConsentService.get_consent(session, user_id, client_id)

        if consent is None:
            consent = UserConsent(
                user_id=user_id,
                client_id=client_id,
                granted_scopes=list(dict.fromkeys(scopes)),
                is_active=True,
                initial_ip_address=ip_address,
                initial_user_agent=user_agent[:500] if user_agent else None,
            )
            session.add(consent)
            await session.flush()
            action = ConsentAction.GRANTED
        else:
            action = ConsentAction.UPDATED if consent.is_active else ConsentAction.GRANTED
            current = consent.granted_scopes if consent.is_active else []
            consent.granted_scopes = list(dict.fromkeys([*current, *scopes]))
            consent.is_active = bool(consent.granted_scopes)
            consent.revoked_at = None

        await ConsentService._append_event(session, consent, action, scopes, ip_address, user_agent)
        await record_audit_event(
            session,
            AuditEvent.CONSENT_GRANTED,
            actor_id=user_id,
            client_id=client_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"scopes": list(scopes)},
        )
        await session.flush()
        return consent

    @staticmethod
    async def revoke_scopes(
        session: AsyncSession,
        user_id: int,
        client_id: str,
        scopes: list[str],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserConsent | None:
        """Withdraw some scopes; the record goes inactive when none remain."""
        consent = await ConsentService.get_consent(session, user_id, client_id)
        if consent is None:
            return None

        remaining = [s for s in consent.granted_scopes if s not in scopes]
        consent.granted_scopes = remaining
        consent.is_active = bool(remaining)
        if not remaining:
            consent.revoked_at = datetime.now(UTC)

        await ConsentService._append_event(session, consent, ConsentAction.REVOKED, scopes, ip_address, user_agent)
        await record_audit_event(
            session,
            AuditEvent.CONSENT_REVOKED,
            actor_id=user_id,
            client_id=client_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"scopes": list(scopes), "remaining": remaining},
        )
        await session.flush()
        return consent

    @staticmethod
    async def revoke_authorization(
        session: AsyncSession,
        user_id: int,
        client_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Revoke the user's whole grant to a client, with its refresh tokens and unredeemed codes.

        Returns:
            False if the user never authorized the client

        """
        consent = await ConsentService.get_consent(session, user_id, client_id)
        if consent is None:
            return False

        await ConsentService.revoke_scopes(
            session, user_id, client_id, list(consent.granted_scopes), ip_address, user_agent
        )
        await TokenService.revoke_client_tokens(session, client_id, RevocationReason.USER_REVOKED, user_id=user_id)
        await AuthorizationCodeService.invalidate_client_codes(session, client_id, user_id=user_id)
        logger.info(f"User {user_id} revoked authorization for client {client_id}")
        return True

    @staticmethod
    async def revoke_client_consents(session: AsyncSession, client_id: str) -> int:
        """Deactivate every active consent for a client (client deletion)."""
        stmt = select(UserConsent).where(UserConsent.client_id == client_id, UserConsent.is_active.is_(True))
        consents = (await session.execute(stmt)).scalars().all()

        now = datetime.now(UTC)
        for consent in consents:
            scopes = list(consent.granted_scopes)
            consent.granted_scopes = []
            consent.is_active = False
            consent.revoked_at = now
            await ConsentService._append_event(session, consent, ConsentAction.REVOKED, scopes, None, None)

        await session.flush()
        return len(consents)

    @staticmethod
    async def list_user_authorizations(session: AsyncSession, user_id: int) -> list[tuple[UserConsent, OAuthClient]]:
        """Active consents of a user, with their clients, most recent first."""
        stmt = (
            select(UserConsent, OAuthClient)
            .join(OAuthClient, OAuthClient.client_id == UserConsent.client_id)
            .where(UserConsent.user_id == user_id, UserConsent.is_active.is_(True))
            .order_by(UserConsent.updated_at.desc())
        )
        result = await session.execute(stmt)
        return [(consent, client) for consent, client in result.all()]

    @staticmethod
    async def get_history(session: AsyncSession, consent: UserConsent, limit: int = HISTORY_PREVIEW_LENGTH):
        """Most recent history events of a consent, newest first."""
        stmt = (
            select(ConsentEvent)
            .where(ConsentEvent.consent_id == consent.id)
            .order_by(ConsentEvent.timestamp.desc(), ConsentEvent.id.desc())
            .limit(limit)
        )
        return list((await session.execute(stmt)).scalars().all())
