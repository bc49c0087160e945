"""Client registry router (owner and admin endpoints)."""

import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session
from src.features.auth.dependencies import get_current_active_user, require_role
from src.features.user.models import User, UserRole
from src.shared.pagination.pagination import PaginationParams
from src.shared.rate_limit.limiter import limiter

from .models import ClientStatus, OAuthClient
from .schemas import (
    ClientApproveRequest,
    ClientCredentialsResponse,
    ClientListResponse,
    ClientPublicInfo,
    ClientReasonRequest,
    ClientRegisterRequest,
    ClientResponse,
    ClientStatsResponse,
    ClientUpdateRequest,
)
from .service import ClientService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth/clients", tags=["OAuth Clients"])
admin_router = APIRouter(
    prefix="/oauth/admin/clients",
    tags=["OAuth Clients (admin)"],
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)


def _with_secret(client: OAuthClient, client_secret: str) -> ClientCredentialsResponse:
    return ClientCredentialsResponse(
        **ClientResponse.model_validate(client).model_dump(),
        client_secret=client_secret,
    )


def _list_response(clients: list[OAuthClient], total: int, pagination: PaginationParams) -> ClientListResponse:
    return ClientListResponse(
        clients=[ClientResponse.model_validate(c) for c in clients],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


# Owner endpoints
@router.post("", response_model=ClientCredentialsResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.oauth_registration_rate_limit)
async def register_client(
    request: Request,
    data: ClientRegisterRequest,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Register a new OAuth client.

    The client starts in `pending` state and cannot be used until an admin approves it.
    The `client_secret` is returned **only in this response**; store it safely.
    """
    client, client_secret = await ClientService.register_client(session, current_user, data)
    await session.commit()
    await session.refresh(client)

    logger.info(f"Client {client.client_id} registered by {current_user.username}")
    return _with_secret(client, client_secret)


@router.get("", response_model=ClientListResponse)
async def list_my_clients(
    pagination: PaginationParams = Depends(),
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """List the clients registered by the current user."""
    clients, total = await ClientService.list_own_clients(session, current_user, pagination)
    return _list_response(clients, total, pagination)


@router.get("/{client_id}", response_model=ClientResponse)
async def get_client(
    client_id: str,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a client (owner or admin)."""
    client = await ClientService.get_client_for(session, client_id, current_user)
    return ClientResponse.model_validate(client)


@router.patch("/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: str,
    data: ClientUpdateRequest,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Update client metadata (owner or admin).

    Redirect URIs can only be changed while the client is pending review.
    """
    client = await ClientService.update_client(session, client_id, current_user, data)
    await session.commit()
    await session.refresh(client)
    return ClientResponse.model_validate(client)


@router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_client(
    client_id: str,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Delete a client.

    The owner may remove a client still pending review. Any other deletion is
    admin-only and revokes every token, code and consent of the client.
    """
    await ClientService.delete_client(session, client_id, current_user)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{client_id}/rotate-secret", response_model=ClientCredentialsResponse)
async def rotate_client_secret(
    client_id: str,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Generate a new client secret. The previous secret stops working immediately."""
    client, client_secret = await ClientService.rotate_secret(session, client_id, current_user)
    await session.commit()
    await session.refresh(client)
    return _with_secret(client, client_secret)


@router.get("/{client_id}/info", response_model=ClientPublicInfo)
async def get_client_info(
    client_id: str,
    _: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Public information about an approved client (for consent screens)."""
    client = await ClientService.get_public_info(session, client_id)
    return ClientPublicInfo.model_validate(client)


# Admin endpoints
@admin_router.get("", response_model=ClientListResponse)
async def list_all_clients(
    status_filter: ClientStatus | None = Query(None, alias="status"),
    pagination: PaginationParams = Depends(),
    session: AsyncSession = Depends(get_db_session),
):
    """List all clients, optionally filtered by status (admin only)."""
    clients, total = await ClientService.list_clients(session, pagination, status_filter)
    return _list_response(clients, total, pagination)


@admin_router.get("/pending", response_model=ClientListResponse)
async def list_pending_clients(
    pagination: PaginationParams = Depends(),
    session: AsyncSession = Depends(get_db_session),
):
    """List clients awaiting review (admin only)."""
    clients, total = await ClientService.list_clients(session, pagination, ClientStatus.PENDING)
    return _list_response(clients, total, pagination)


@admin_router.get("/stats", response_model=ClientStatsResponse)
async def get_client_stats(session: AsyncSession = Depends(get_db_session)):
    """Client counts per status (admin only)."""
    by_status = await ClientService.get_stats(session)
    return ClientStatsResponse(total=sum(by_status.values()), by_status=by_status)


@admin_router.post("/{client_id}/approve", response_model=ClientResponse)
async def approve_client(
    client_id: str,
    data: ClientApproveRequest,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Approve a pending client (admin only).

    `allowed_scopes` defaults to the scopes requested at registration and must include `openid`.
    """
    client = await ClientService.approve_client(session, current_user, client_id, data.allowed_scopes, data.notes)
    await session.commit()
    return ClientResponse.model_validate(client)


@admin_router.post("/{client_id}/reject", response_model=ClientResponse)
async def reject_client(
    client_id: str,
    data: ClientReasonRequest,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Reject a pending client (admin only)."""
    client = await ClientService.reject_client(session, current_user, client_id, data.reason)
    await session.commit()
    return ClientResponse.model_validate(client)


@admin_router.post("/{client_id}/suspend", response_model=ClientResponse)
async def suspend_client(
    client_id: str,
    data: ClientReasonRequest,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Suspend an approved client and revoke all its tokens and codes (admin only)."""
    client = await ClientService.suspend_client(session, current_user, client_id, data.reason)
    await session.commit()
    return ClientResponse.model_validate(client)


@admin_router.post("/{client_id}/reactivate", response_model=ClientResponse)
async def reactivate_client(
    client_id: str,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Reactivate a suspended client (admin only). Previously revoked tokens stay revoked."""
    client = await ClientService.reactivate_client(session, current_user, client_id)
    await session.commit()
    return ClientResponse.model_validate(client)
