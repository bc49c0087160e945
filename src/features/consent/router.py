"""User-facing authorization management endpoints."""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.dependencies import get_db_session
from src.features.auth.dependencies import get_current_active_user
from src.features.clients.models import OAuthClient
from src.features.clients.service import ClientService
from src.features.user.models import User

from .exceptions import ConsentNotFoundException
from .models import UserConsent
from .schemas import (
    AuthorizationDetailResponse,
    AuthorizationListResponse,
    AuthorizedClientResponse,
    ConsentEventResponse,
    ScopeDescription,
)
from .service import ConsentService, describe_scopes

router = APIRouter(prefix="/oauth/user/authorizations", tags=["Authorizations"])


def _authorized_client(consent: UserConsent, client: OAuthClient | None) -> dict:
    return {
        "client_id": consent.client_id,
        "client_name": client.name if client else consent.client_id,
        "homepage_uri": client.homepage_uri if client else None,
        "logo_uri": client.logo_uri if client else None,
        "scopes": [ScopeDescription(**s) for s in describe_scopes(consent.granted_scopes)],
        "first_granted_at": consent.first_granted_at,
        "updated_at": consent.updated_at,
    }


@router.get("", response_model=AuthorizationListResponse)
async def list_authorizations(
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """List the clients the current user has granted access to."""
    rows = await ConsentService.list_user_authorizations(session, current_user.id)
    items = [AuthorizedClientResponse(**_authorized_client(consent, client)) for consent, client in rows]
    return AuthorizationListResponse(authorizations=items, total=len(items))


@router.get("/{client_id}", response_model=AuthorizationDetailResponse)
async def get_authorization(
    client_id: str,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get one authorization with its last consent events."""
    consent = await ConsentService.get_consent(session, current_user.id, client_id)
    if consent is None:
        raise ConsentNotFoundException()

    client = await ClientService.get_client(session, client_id)
    history = await ConsentService.get_history(session, consent)
    return AuthorizationDetailResponse(
        **_authorized_client(consent, client),
        is_active=consent.is_active,
        history=[ConsentEventResponse.model_validate(event) for event in history],
    )


@router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_authorization(
    client_id: str,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Revoke all consent given to a client and every refresh token it holds for the user."""
    revoked = await ConsentService.revoke_authorization(
        session,
        current_user.id,
        client_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    if not revoked:
        raise ConsentNotFoundException()
    await session.commit()
