"""OAuth 2.1 / OpenID Connect protocol endpoints."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Form, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session
from src.features.auth.dependencies import get_current_active_user, get_optional_user
from src.features.clients.models import OAuthClient
from src.features.user.models import User
from src.shared.rate_limit.limiter import limiter

from .dependencies import get_access_token_claims, get_authenticated_client
from .discovery import get_openid_configuration
from .exceptions import NO_STORE_HEADERS
from .keys import get_key_manager
from .schemas import (
    AuthorizeRequest,
    AuthorizeValidateResponse,
    ConsentDecisionRequest,
    ConsentDenyRequest,
    ConsentRequiredResponse,
    IntrospectionResponse,
    TokenResponse,
)
from .service import OAuthService, RequestOrigin, build_login_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["OAuth"])
well_known_router = APIRouter(prefix="/.well-known", tags=["Discovery"])

DISCOVERY_CACHE_CONTROL = "public, max-age=3600"
JWKS_CACHE_CONTROL = "public, max-age=900"


def _origin(request: Request) -> RequestOrigin:
    return RequestOrigin(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _session_auth_time(request: Request) -> datetime | None:
    claims = getattr(request.state, "session_claims", None) or {}
    auth_time = claims.get("auth_time")
    return datetime.fromtimestamp(auth_time, UTC) if auth_time else None


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=302, headers=NO_STORE_HEADERS)


# Authorization endpoint
@router.get(
    "/authorize",
    response_model=ConsentRequiredResponse,
    responses={302: {"description": "Redirect to the client, or to the login page"}},
)
@limiter.limit(settings.oauth_authorize_rate_limit)
async def authorize(
    request: Request,
    params: AuthorizeRequest = Depends(),
    user: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_db_session),
):
    """OAuth 2.1 authorization endpoint (authorization code + PKCE).

    - Invalid requests get a JSON 400 error and are never redirected.
    - Without a session the browser is sent to the login page with `return_to`.
    - When consent already covers the request a code is issued immediately.
    - Otherwise a `consent_ticket` is returned for the consent screen.
    """
    context = await OAuthService.validate_authorization_request(session, params)
    auth_time = _session_auth_time(request)

    if OAuthService.needs_login(context, user, auth_time):
        if "none" in context.prompt:
            return _redirect(OAuthService.error_redirect(context, "login_required", "User authentication is required"))
        return_to = f"{request.url.path}?{request.url.query}"
        return _redirect(build_login_url(return_to))

    outcome = await OAuthService.authorize(session, context, user, auth_time, _origin(request))
    await session.commit()

    if outcome.redirect_url:
        logger.info(f"Authorization code issued to client {context.client.client_id} for user {user.id}")
        return _redirect(outcome.redirect_url)
    return JSONResponse(outcome.consent.model_dump(mode="json"), headers=NO_STORE_HEADERS)


@router.get("/authorize/validate", response_model=AuthorizeValidateResponse)
async def validate_authorization(
    params: AuthorizeRequest = Depends(),
    session: AsyncSession = Depends(get_db_session),
):
    """Validate an authorization request for the consent screen without issuing anything."""
    context = await OAuthService.validate_authorization_request(session, params)
    return OAuthService.describe_request(context)


@router.post("/authorize/consent", responses={302: {"description": "Redirect to the client with a code"}})
async def approve_consent(
    request: Request,
    data: ConsentDecisionRequest,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Submit the user's consent decision.

    `approved=false` behaves like a denial. `scopes` may narrow the request but must keep `openid`.
    """
    if not data.approved:
        redirect_url = await OAuthService.deny_consent(session, current_user, data.consent_ticket, _origin(request))
    else:
        redirect_url = await OAuthService.approve_consent(
            session, current_user, data.consent_ticket, data.scopes, _origin(request)
        )
    await session.commit()
    return _redirect(redirect_url)


@router.post("/authorize/deny", responses={302: {"description": "Redirect to the client with access_denied"}})
async def deny_consent(
    request: Request,
    data: ConsentDenyRequest,
    current_user: User = Depends(get_current_active_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Deny the authorization request; the client receives `error=access_denied`."""
    redirect_url = await OAuthService.deny_consent(session, current_user, data.consent_ticket, _origin(request))
    await session.commit()
    return _redirect(redirect_url)


# Token endpoint
@router.post("/token", response_model=TokenResponse, response_model_exclude_none=True)
@limiter.limit(settings.oauth_token_rate_limit)
async def token(
    request: Request,
    response: Response,
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    scope: str | None = Form(None),
    client: OAuthClient = Depends(get_authenticated_client),
    session: AsyncSession = Depends(get_db_session),
):
    """Exchange an authorization code or a refresh token for tokens.

    Client authentication: `client_secret_basic` or `client_secret_post`.
    """
    form = {
        "grant_type": grant_type,
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
        "refresh_token": refresh_token,
        "scope": scope,
    }
    result = await OAuthService.exchange_token(session, client, form, _origin(request))
    await session.commit()

    response.headers.update(NO_STORE_HEADERS)
    logger.info(f"Tokens issued to client {client.client_id} ({grant_type})")
    return result


# Introspection and revocation
@router.post("/introspect", response_model=IntrospectionResponse, response_model_exclude_none=True)
async def introspect(
    response: Response,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client: OAuthClient = Depends(get_authenticated_client),
    session: AsyncSession = Depends(get_db_session),
):
    """Token introspection (RFC 7662). Any failure is reported as `{"active": false}`."""
    response.headers.update(NO_STORE_HEADERS)
    return await OAuthService.introspect(session, client, token, token_type_hint)


@router.post("/revoke")
async def revoke(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client: OAuthClient = Depends(get_authenticated_client),
    session: AsyncSession = Depends(get_db_session),
):
    """Token revocation (RFC 7009). Always answers 200, even for unknown tokens."""
    await OAuthService.revoke(session, client, token, _origin(request))
    await session.commit()
    return Response(status_code=200, headers=NO_STORE_HEADERS)


# UserInfo
@router.api_route("/userinfo", methods=["GET", "POST"])
async def userinfo(
    claims: dict = Depends(get_access_token_claims),
    session: AsyncSession = Depends(get_db_session),
):
    """OpenID Connect UserInfo endpoint (Bearer access token with the `openid` scope)."""
    body = await OAuthService.userinfo(session, claims)
    return JSONResponse(body, headers=NO_STORE_HEADERS)


# Discovery
@well_known_router.get("/openid-configuration")
async def openid_configuration():
    """OpenID Provider metadata."""
    return JSONResponse(get_openid_configuration(), headers={"Cache-Control": DISCOVERY_CACHE_CONTROL})


@well_known_router.get("/jwks.json")
async def jwks():
    """Public signing keys (JWKS)."""
    return JSONResponse(get_key_manager().jwks(), headers={"Cache-Control": JWKS_CACHE_CONTROL})
