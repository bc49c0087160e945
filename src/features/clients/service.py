"""Client registry service layer."""

import logging
from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.features.consent.service import ConsentService
from src.features.oauth.codes import AuthorizationCodeService
from src.features.oauth.crypto import (
    generate_client_id,
    generate_client_secret,
    hash_client_secret,
    verify_client_secret,
)
from src.features.oauth.exceptions import InvalidClientException, InvalidRedirectUriException
from src.features.oauth.models import RevocationReason
from src.features.oauth.tokens import TokenService
from src.features.user.models import User, UserRole
from src.shared.audit.audit import AuditEvent, AuditSeverity, record_audit_event
from src.shared.pagination.pagination import PaginationParams
from src.shared.validators.redirect_uri import validate_redirect_uri

from .exceptions import (
    ClientAccessDenied,
    ClientNotFound,
    InvalidClientMetadata,
    InvalidClientTransition,
    RedirectUrisLocked,
)
from .models import ClientStatus, OAuthClient
from .schemas import ClientRegisterRequest, ClientUpdateRequest

logger = logging.getLogger(__name__)


def _is_admin(user: User) -> bool:
    return user.has_role(UserRole.ADMIN)


def _validate_redirect_uris(uris: list[str]) -> list[str]:
    validated: list[str] = []
    for uri in uris:
        try:
            validated.append(validate_redirect_uri(uri))
        except ValueError as err:
            raise InvalidRedirectUriException(str(err)) from err
    if len(set(validated)) != len(validated):
        raise InvalidRedirectUriException("Redirect URIs must be unique")
    return validated


def _validate_scopes(scopes: list[str]) -> list[str]:
    supported = settings.supported_scopes
    unknown = [s for s in scopes if s not in supported]
    if unknown:
        raise InvalidClientMetadata(f"Unsupported scope(s): {', '.join(unknown)}")
    if "openid" not in scopes:
        raise InvalidClientMetadata("Scopes must include 'openid'")
    # Keep the order stable, drop duplicates
    return list(dict.fromkeys(scopes))


class ClientService:
    """Service for OAuth client registration and lifecycle management."""

    @staticmethod
    async def register_client(
        session: AsyncSession, owner: User, data: ClientRegisterRequest
    ) -> tuple[OAuthClient, str]:
        """Register a new client in ``pending`` state.

        Args:
            session: Database session
            owner: Registering user
            data: Registration metadata

        Returns:
            Tuple of (client, plaintext secret). The secret is not recoverable later.

        Raises:
            InvalidRedirectUriException: If a redirect URI is unacceptable
            InvalidClientMetadata: If requested scopes are unsupported

        """
        redirect_uris = _validate_redirect_uris(data.redirect_uris)
        scopes = _validate_scopes(data.scopes)
        for label, uri in (("homepage_uri", data.homepage_uri), ("logo_uri", data.logo_uri)):
            if uri is not None and not uri.startswith("https://"):
                raise InvalidClientMetadata(f"{label} must be an https URL")

        client_secret = generate_client_secret()
        client = OAuthClient(
            client_id=generate_client_id(),
            client_secret_hash=hash_client_secret(client_secret),
            name=data.name.strip(),
            description=data.description,
            homepage_uri=data.homepage_uri,
            logo_uri=data.logo_uri,
            contacts=[str(c) for c in data.contacts],
            application_type=data.application_type.value,
            redirect_uris=redirect_uris,
            requested_scopes=scopes,
            allowed_scopes=[],
            status=ClientStatus.PENDING.value,
            owner_id=owner.id,
        )
        session.add(client)
        await session.flush()

        await record_audit_event(
            session,
            AuditEvent.CLIENT_REGISTERED,
            actor_id=owner.id,
            client_id=client.client_id,
            details={"name": client.name, "redirect_uris": redirect_uris},
        )
        return client, client_secret

    @staticmethod
    async def get_client(session: AsyncSession, client_id: str) -> OAuthClient | None:
        """Get a client by its public identifier, whatever its status."""
        stmt = select(OAuthClient).where(OAuthClient.client_id == client_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_approved_client(session: AsyncSession, client_id: str) -> OAuthClient | None:
        """Get a client only if it may currently take part in authorization requests."""
        client = await ClientService.get_client(session, client_id)
        if client is None or not client.is_approved:
            return None
        return client

    @staticmethod
    async def get_public_info(session: AsyncSession, client_id: str) -> OAuthClient:
        """Get an approved client for display on a consent screen.

        Raises:
            ClientNotFound: If the client does not exist or is not approved

        """
        client = await ClientService.get_approved_client(session, client_id)
        if client is None:
            raise ClientNotFound()
        return client

    @staticmethod
    async def get_client_for(session: AsyncSession, client_id: str, requester: User) -> OAuthClient:
        """Get a client the requester is allowed to see (its owner or an admin).

        Raises:
            ClientNotFound: If the client does not exist (or is deleted, for non-admins)
            ClientAccessDenied: If the requester is neither owner nor admin

        """
        client = await ClientService.get_client(session, client_id)
        if client is None:
            raise ClientNotFound()
        if _is_admin(requester):
            return client
        if client.status == ClientStatus.DELETED.value:
            raise ClientNotFound()
        if client.owner_id != requester.id:
            raise ClientAccessDenied()
        return client

    @staticmethod
    async def list_own_clients(
        session: AsyncSession, owner: User, pagination: PaginationParams
    ) -> tuple[list[OAuthClient], int]:
        """List the requester's clients (deleted ones excluded)."""
        conditions = [OAuthClient.owner_id == owner.id, OAuthClient.status != ClientStatus.DELETED.value]
        return await ClientService._paginate(session, conditions, pagination)

    @staticmethod
    async def list_clients(
        session: AsyncSession, pagination: PaginationParams, status: ClientStatus | None = None
    ) -> tuple[list[OAuthClient], int]:
        """List all clients, optionally filtered by status (admin)."""
        conditions = [OAuthClient.status == status.value] if status else []
        return await ClientService._paginate(session, conditions, pagination)

    @staticmethod
    async def _paginate(session: AsyncSession, conditions: list, pagination: PaginationParams):
        count_stmt = select(func.count()).select_from(OAuthClient).where(*conditions)
        total = (await session.execute(count_stmt)).scalar_one()

        stmt = select(OAuthClient).where(*conditions).order_by(OAuthClient.created_at.desc(), OAuthClient.id.desc())
        if pagination.is_paginated:
            stmt = stmt.offset(pagination.skip).limit(pagination.limit)

        result = await session.execute(stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def get_stats(session: AsyncSession) -> dict[str, int]:
        """Count clients per status (every status present, zero when empty)."""
        stmt = select(OAuthClient.status, func.count()).group_by(OAuthClient.status)
        result = await session.execute(stmt)
        counts = {s.value: 0 for s in ClientStatus}
        for status, count in result.all():
            counts[str(status)] = count
        return counts

    @staticmethod
    async def update_client(
        session: AsyncSession, client_id: str, requester: User, data: ClientUpdateRequest
    ) -> OAuthClient:
        """Update display metadata (owner or admin).

        Raises:
            RedirectUrisLocked: If redirect URIs change after the client left ``pending``

        """
        client = await ClientService.get_client_for(session, client_id, requester)
        if client.status == ClientStatus.DELETED.value:
            raise ClientNotFound()

        if data.redirect_uris is not None and data.redirect_uris != client.redirect_uris:
            if client.status != ClientStatus.PENDING.value:
                raise RedirectUrisLocked()
            client.redirect_uris = _validate_redirect_uris(data.redirect_uris)

        if data.name is not None:
            client.name = data.name.strip()
        if data.description is not None:
            client.description = data.description
        for field in ("homepage_uri", "logo_uri"):
            value = getattr(data, field)
            if value is not None:
                if not value.startswith("https://"):
                    raise InvalidClientMetadata(f"{field} must be an https URL")
                setattr(client, field, value)

        await session.flush()
        return client

    @staticmethod
    async def rotate_secret(session: AsyncSession, client_id: str, requester: User) -> tuple[OAuthClient, str]:
        """Replace the client secret and return the new plaintext once."""
        client = await ClientService.get_client_for(session, client_id, requester)
        if client.status in (ClientStatus.DELETED.value, ClientStatus.REJECTED.value):
            raise InvalidClientTransition(client.status, "secret rotation")

        client_secret = generate_client_secret()
        client.client_secret_hash = hash_client_secret(client_secret)
        await session.flush()

        await record_audit_event(
            session, AuditEvent.CLIENT_SECRET_ROTATED, actor_id=requester.id, client_id=client.client_id
        )
        return client, client_secret

    @staticmethod
    async def _transition(
        session: AsyncSession,
        client_id: str,
        target: ClientStatus,
        admin: User,
        notes: str | None = None,
        **values,
    ) -> OAuthClient:
        """Move a client to ``target`` with a conditional update on its current status.

        Concurrent transitions from the same status cannot both succeed.

        Raises:
            ClientNotFound: If the client does not exist
            InvalidClientTransition: If the move is not allowed or lost a race

        """
        client = await ClientService.get_client(session, client_id)
        if client is None:
            raise ClientNotFound()

        current = client.status
        if not client.can_transition(target):
            raise InvalidClientTransition(current, target.value)

        now = datetime.now(UTC)
        stmt = (
            update(OAuthClient)
            .where(OAuthClient.client_id == client_id, OAuthClient.status == current)
            .values(
                status=target.value,
                reviewed_by=admin.id,
                reviewed_at=now,
                review_notes=notes,
                updated_at=now,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise InvalidClientTransition(current, target.value)

        await session.refresh(client)
        logger.info(f"Client {client_id} moved from {current} to {target.value} by admin {admin.username}")
        return client

    @staticmethod
    async def approve_client(
        session: AsyncSession,
        admin: User,
        client_id: str,
        allowed_scopes: list[str] | None = None,
        notes: str | None = None,
    ) -> OAuthClient:
        """Approve a pending client and fix the scopes it may ever be granted.

        Args:
            session: Database session
            admin: Approving admin
            client_id: Client identifier
            allowed_scopes: Scopes the client may request; defaults to its requested scopes
            notes: Optional review notes

        Returns:
            The approved client

        """
        client = await ClientService.get_client(session, client_id)
        if client is None:
            raise ClientNotFound()
        if client.status != ClientStatus.PENDING.value:
            raise InvalidClientTransition(client.status, ClientStatus.APPROVED.value)

        scopes = _validate_scopes(allowed_scopes if allowed_scopes is not None else client.requested_scopes)

        client = await ClientService._transition(
            session, client_id, ClientStatus.APPROVED, admin, notes, allowed_scopes=scopes
        )

        await record_audit_event(
            session,
            AuditEvent.CLIENT_APPROVED,
            actor_id=admin.id,
            client_id=client_id,
            details={"allowed_scopes": scopes},
        )
        return client

    @staticmethod
    async def reject_client(session: AsyncSession, admin: User, client_id: str, reason: str) -> OAuthClient:
        """Reject a pending client."""
        client = await ClientService._transition(session, client_id, ClientStatus.REJECTED, admin, reason)
        await record_audit_event(
            session, AuditEvent.CLIENT_REJECTED, actor_id=admin.id, client_id=client_id, details={"reason": reason}
        )
        return client

    @staticmethod
    async def suspend_client(session: AsyncSession, admin: User, client_id: str, reason: str) -> OAuthClient:
        """Suspend an approved client and cut off everything it holds.

        Every refresh token family is revoked and every outstanding authorization code
        is marked used, in the same transaction as the status change.
        """
        client = await ClientService._transition(session, client_id, ClientStatus.SUSPENDED, admin, reason)

        revoked = await TokenService.revoke_client_tokens(session, client_id, RevocationReason.CLIENT_SUSPENDED)
        voided = await AuthorizationCodeService.invalidate_client_codes(session, client_id)

        await record_audit_event(
            session,
            AuditEvent.CLIENT_SUSPENDED,
            severity=AuditSeverity.WARNING,
            actor_id=admin.id,
            client_id=client_id,
            details={"reason": reason, "revoked_tokens": revoked, "voided_codes": voided},
        )
        return client

    @staticmethod
    async def reactivate_client(session: AsyncSession, admin: User, client_id: str) -> OAuthClient:
        """Move a suspended client back to approved. Revoked tokens stay revoked."""
        client = await ClientService._transition(session, client_id, ClientStatus.APPROVED, admin, "Reactivated")
        await record_audit_event(session, AuditEvent.CLIENT_REACTIVATED, actor_id=admin.id, client_id=client_id)
        return client

    @staticmethod
    async def delete_client(session: AsyncSession, client_id: str, requester: User) -> bool:
        """Delete a client.

        A pending client removed by its creator is hard-deleted. Every other deletion
        is admin-only and soft: the status flips to ``deleted`` and all tokens, codes
        and consents of the client are revoked.

        Returns:
            True if the row was removed, False if it was soft-deleted

        """
        client = await ClientService.get_client_for(session, client_id, requester)

        if client.status == ClientStatus.PENDING.value and client.owner_id == requester.id:
            await session.execute(delete(OAuthClient).where(OAuthClient.client_id == client_id))
            await record_audit_event(
                session, AuditEvent.CLIENT_DELETED, actor_id=requester.id, client_id=client_id, details={"hard": True}
            )
            logger.info(f"Pending client {client_id} removed by its owner {requester.username}")
            return True

        if not _is_admin(requester):
            raise ClientAccessDenied("Only an admin may delete a client that has left review")

        await ClientService._transition(session, client_id, ClientStatus.DELETED, requester, "Deleted")
        revoked = await TokenService.revoke_client_tokens(session, client_id, RevocationReason.CLIENT_DELETED)
        voided = await AuthorizationCodeService.invalidate_client_codes(session, client_id)
        consents = await ConsentService.revoke_client_consents(session, client_id)

        await record_audit_event(
            session,
            AuditEvent.CLIENT_DELETED,
            severity=AuditSeverity.WARNING,
            actor_id=requester.id,
            client_id=client_id,
            details={"hard": False, "revoked_tokens": revoked, "voided_codes": voided, "revoked_consents": consents},
        )
        return False

    @staticmethod
    async def authenticate_client(
        session: AsyncSession, client_id: str | None, client_secret: str | None
    ) -> OAuthClient:
        """Authenticate a client at the token, introspection or revocation endpoint.

        Confidential clients must present a valid secret. Public clients may omit it,
        but a presented secret must still verify. Suspended clients authenticate so
        their grants can fail with ``invalid_grant``.

        Raises:
            InvalidClientException: Unknown, pending, rejected or deleted client, or bad secret

        """
        if not client_id:
            raise InvalidClientException("Client authentication required")

        client = await ClientService.get_client(session, client_id)
        if client is None or client.status not in (ClientStatus.APPROVED.value, ClientStatus.SUSPENDED.value):
            logger.warning(f"Client authentication failed for unknown or inactive client {client_id}")
            raise InvalidClientException()

        if client_secret is None:
            if client.is_confidential:
                raise InvalidClientException()
            return client

        if not verify_client_secret(client_secret, client.client_secret_hash):
            logger.warning(f"Client authentication failed: bad secret for {client_id}")
            raise InvalidClientException()
        return client
