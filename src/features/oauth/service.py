"""OAuth 2.1 / OpenID Connect protocol service layer.

Orchestrates the client registry, consent store, authorization codes and token
issuer behind the authorization, token, introspection, revocation and userinfo
endpoints. Routers turn the results into HTTP responses.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

from jwt.exceptions import InvalidTokenError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.features.auth.jwt_utils import create_token, decode_token, verify_token_type
from src.features.clients.models import ClientStatus, OAuthClient
from src.features.clients.schemas import ClientPublicInfo
from src.features.clients.service import ClientService
from src.features.consent.schemas import ScopeDescription
from src.features.consent.service import ConsentService, describe_scopes
from src.features.user.models import User
from src.features.user.service import UserService
from src.shared.audit.audit import AuditEvent, record_audit_event

from .codes import AuthorizationCodeService
from .crypto import CODE_VERIFIER_MAX_LENGTH, CODE_VERIFIER_MIN_LENGTH, verify_code_challenge
from .exceptions import (
    InsufficientScopeException,
    InvalidBearerTokenException,
    InvalidGrantException,
    InvalidRedirectUriException,
    InvalidRequestException,
    InvalidScopeException,
    UnauthorizedClientException,
    UnsupportedGrantTypeException,
    UnsupportedResponseTypeException,
)
from .keys import TokenVerificationError
from .models import ConsentDecision, RevocationReason
from .schemas import (
    AuthorizeRequest,
    AuthorizeValidateResponse,
    ConsentData,
    ConsentRequiredResponse,
    IntrospectionResponse,
    TokenResponse,
)
from .tickets import ConsentTicketService
from .tokens import TokenService

logger = logging.getLogger(__name__)

CONSENT_TICKET_TYPE = "consent"
CONSENT_TICKET_LIFETIME = timedelta(minutes=10)
MAX_STATE_LENGTH = 500
MAX_NONCE_LENGTH = 200
PROMPT_VALUES = frozenset({"none", "login", "consent"})
# prompt=login is satisfied by a session authenticated this recently
LOGIN_FRESHNESS = timedelta(minutes=1)


@dataclass
class AuthorizationContext:
    """A fully validated authorization request."""

    client: OAuthClient
    redirect_uri: str
    scopes: list[str]
    state: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    prompt: set[str] = field(default_factory=set)


@dataclass
class AuthorizationOutcome:
    """Either a redirect back to the client or a consent prompt."""

    redirect_url: str | None = None
    consent: ConsentRequiredResponse | None = None


@dataclass
class RequestOrigin:
    ip_address: str | None = None
    user_agent: str | None = None


def build_redirect_url(redirect_uri: str, params: dict[str, str | None]) -> str:
    """Append query parameters to a redirect URI, keeping any query it already has."""
    extra = urlencode({k: v for k, v in params.items() if v is not None})
    parts = urlsplit(redirect_uri)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def build_login_url(return_to: str) -> str:
    separator = "&" if "?" in settings.login_url else "?"
    return f"{settings.login_url}{separator}{urlencode({'return_to': return_to})}"


def _split_scopes(scope: str | None) -> list[str]:
    return list(dict.fromkeys((scope or "").split()))


class OAuthService:
    """Service for the OAuth 2.1 / OIDC protocol endpoints."""

    # Authorization endpoint

    @staticmethod
    async def validate_authorization_request(session: AsyncSession, params: AuthorizeRequest) -> AuthorizationContext:
        """Validate an authorization request in a fixed order.

        Request-shape checks run before any storage access. Unknown and unapproved
        clients produce the same error.

        Raises:
            InvalidRequestException: Missing or malformed parameter
            UnsupportedResponseTypeException: ``response_type`` other than ``code``
            InvalidScopeException: Scope missing ``openid``, unsupported, or not allowed for the client
            UnauthorizedClientException: Client unknown or not approved
            InvalidRedirectUriException: Redirect URI not registered (exact match)

        """
        if not params.response_type:
            raise InvalidRequestException("response_type is required")
        if params.response_type != "code":
            raise UnsupportedResponseTypeException("Only response_type=code is supported")

        for name in ("client_id", "redirect_uri", "scope"):
            if not getattr(params, name):
                raise InvalidRequestException(f"{name} is required")
        if settings.oauth_require_pkce and not params.code_challenge:
            raise InvalidRequestException("code_challenge is required")

        method = (params.code_challenge_method or "S256") if params.code_challenge else None
        if method is not None and method not in settings.pkce_methods:
            raise InvalidRequestException("code_challenge_method must be S256")
        if params.code_challenge and not (
            CODE_VERIFIER_MIN_LENGTH <= len(params.code_challenge) <= CODE_VERIFIER_MAX_LENGTH
        ):
            raise InvalidRequestException("code_challenge must be 43 to 128 characters")
        if params.state and len(params.state) > MAX_STATE_LENGTH:
            raise InvalidRequestException(f"state must be at most {MAX_STATE_LENGTH} characters")
        if params.nonce and len(params.nonce) > MAX_NONCE_LENGTH:
            raise InvalidRequestException(f"nonce must be at most {MAX_NONCE_LENGTH} characters")

        prompt = set(_split_scopes(params.prompt))
        if not prompt.issubset(PROMPT_VALUES) or ("none" in prompt and len(prompt) > 1):
            raise InvalidRequestException("Unsupported prompt value")

        scopes = _split_scopes(params.scope)
        if "openid" not in scopes:
            raise InvalidScopeException("The openid scope is required")
        unsupported = [s for s in scopes if s not in settings.supported_scopes]
        if unsupported:
            raise InvalidScopeException(f"Unsupported scope(s): {' '.join(unsupported)}")

        client = await ClientService.get_approved_client(session, params.client_id)
        if client is None:
            logger.warning(f"Authorization request for unknown or unapproved client {params.client_id}")
            raise UnauthorizedClientException("Unknown or unapproved client")

        if params.redirect_uri not in client.redirect_uris:
            logger.warning(f"Unregistered redirect_uri for client {client.client_id}")
            raise InvalidRedirectUriException("redirect_uri does not match a registered URI")

        not_allowed = [s for s in scopes if s not in client.allowed_scopes]
        if not_allowed:
            raise InvalidScopeException(f"Scope(s) not allowed for this client: {' '.join(not_allowed)}")

        return AuthorizationContext(
            client=client,
            redirect_uri=params.redirect_uri,
            scopes=scopes,
            state=params.state,
            nonce=params.nonce,
            code_challenge=params.code_challenge,
            code_challenge_method=method,
            prompt=prompt,
        )

    @staticmethod
    def needs_login(context: AuthorizationContext, user: User | None, auth_time: datetime | None) -> bool:
        """True when the user has to (re)authenticate before the request can proceed."""
        if user is None:
            return True
        if "login" in context.prompt:
            return auth_time is None or datetime.now(UTC) - auth_time > LOGIN_FRESHNESS
        return False

    @staticmethod
    def error_redirect(context: AuthorizationContext, error: str, description: str | None = None) -> str:
        return build_redirect_url(
            context.redirect_uri,
            {"error": error, "error_description": description, "state": context.state},
        )

    @staticmethod
    async def authorize(
        session: AsyncSession,
        context: AuthorizationContext,
        user: User,
        auth_time: datetime | None,
        origin: RequestOrigin,
    ) -> AuthorizationOutcome:
        """Resolve consent for a validated request from an authenticated user.

        Issues a code straight away when consent is not enforced or already covers
        every requested scope; otherwise returns a consent ticket (or a
        ``consent_required`` redirect under ``prompt=none``).
        """
        missing = await ConsentService.missing_scopes(session, user.id, context.client.client_id, context.scopes)
        prompt_consent = "consent" in context.prompt

        if not settings.oauth_require_consent or (not missing and not prompt_consent):
            redirect_url = await OAuthService._issue_code_redirect(
                session, context, user, context.scopes, auth_time, origin
            )
            return AuthorizationOutcome(redirect_url=redirect_url)

        if "none" in context.prompt:
            return AuthorizationOutcome(
                redirect_url=OAuthService.error_redirect(context, "consent_required", "User consent is required")
            )

        ticket = await OAuthService.create_consent_ticket(session, context, user, auth_time)
        consent = ConsentRequiredResponse(
            consent_ticket=ticket,
            consent_data=OAuthService._consent_data(context),
        )
        return AuthorizationOutcome(consent=consent)

    @staticmethod
    def describe_request(context: AuthorizationContext) -> AuthorizeValidateResponse:
        """Client info and scope descriptions for a validated request (no side effects)."""
        data = OAuthService._consent_data(context)
        return AuthorizeValidateResponse(
            client=data.client,
            scopes=data.scopes,
            requested_scopes=data.requested_scopes,
            redirect_uri=data.redirect_uri,
        )

    @staticmethod
    def _consent_data(context: AuthorizationContext) -> ConsentData:
        return ConsentData(
            client=ClientPublicInfo.model_validate(context.client),
            scopes=[ScopeDescription(**s) for s in describe_scopes(context.scopes)],
            requested_scopes=context.scopes,
            redirect_uri=context.redirect_uri,
        )

    @staticmethod
    async def create_consent_ticket(
        session: AsyncSession, context: AuthorizationContext, user: User, auth_time: datetime | None
    ) -> str:
        """Sign the validated request so the consent decision cannot alter it.

        The ticket carries the id of a pending request row; deciding closes that row,
        so each ticket is good for one decision.
        """
        pending = await ConsentTicketService.open_ticket(
            session, user.id, context.client.client_id, CONSENT_TICKET_LIFETIME
        )
        data = {
            "jti": pending.ticket_id,
            "sub": user.subject,
            "client_id": context.client.client_id,
            "redirect_uri": context.redirect_uri,
            "scope": " ".join(context.scopes),
            "state": context.state,
            "nonce": context.nonce,
            "code_challenge": context.code_challenge,
            "code_challenge_method": context.code_challenge_method,
            "auth_time": int(auth_time.timestamp()) if auth_time else None,
        }
        return create_token(data, CONSENT_TICKET_TYPE, CONSENT_TICKET_LIFETIME)

    @staticmethod
    def _decode_consent_ticket(ticket: str, user: User) -> dict[str, Any]:
        try:
            payload = decode_token(ticket)
        except InvalidTokenError as err:
            raise InvalidRequestException("Invalid or expired consent ticket") from err
        if not verify_token_type(payload, CONSENT_TICKET_TYPE):
            raise InvalidRequestException("Invalid or expired consent ticket")
        if payload.get("sub") != user.subject:
            logger.warning(f"Consent ticket presented by another user ({user.id})")
            raise InvalidRequestException("Consent ticket was issued to another user")
        if not payload.get("jti"):
            raise InvalidRequestException("Invalid or expired consent ticket")
        return payload

    @staticmethod
    async def _close_consent_ticket(
        session: AsyncSession, payload: dict[str, Any], user: User, decision: ConsentDecision
    ) -> None:
        if not await ConsentTicketService.close_ticket(session, payload["jti"], user.id, decision):
            raise InvalidRequestException("Consent ticket has already been used")

    @staticmethod
    async def _context_from_ticket(session: AsyncSession, payload: dict[str, Any]) -> AuthorizationContext:
        """Re-check the client and redirect URI a ticket refers to."""
        client = await ClientService.get_approved_client(session, payload["client_id"])
        if client is None:
            raise UnauthorizedClientException("Unknown or unapproved client")
        if payload["redirect_uri"] not in client.redirect_uris:
            raise InvalidRedirectUriException("redirect_uri is no longer registered")

        return AuthorizationContext(
            client=client,
            redirect_uri=payload["redirect_uri"],
            scopes=_split_scopes(payload["scope"]),
            state=payload.get("state"),
            nonce=payload.get("nonce"),
            code_challenge=payload.get("code_challenge"),
            code_challenge_method=payload.get("code_challenge_method"),
        )

    @staticmethod
    async def approve_consent(
        session: AsyncSession,
        user: User,
        ticket: str,
        scopes: list[str] | None,
        origin: RequestOrigin,
    ) -> str:
        """Record consent and issue a code for the ticket's request.

        ``scopes`` may narrow the request but must keep ``openid``; the result never
        exceeds the client's allowed scopes.

        Returns:
            Redirect URL carrying ``code`` and ``state``

        """
        payload = OAuthService._decode_consent_ticket(ticket, user)
        await OAuthService._close_consent_ticket(session, payload, user, ConsentDecision.APPROVED)
        context = await OAuthService._context_from_ticket(session, payload)

        granted = context.scopes
        if scopes is not None:
            extra = [s for s in scopes if s not in context.scopes]
            if extra:
                raise InvalidScopeException(f"Scope(s) not in the original request: {' '.join(extra)}")
            granted = [s for s in context.scopes if s in scopes]
        if "openid" not in granted:
            raise InvalidScopeException("The openid scope is required")
        granted = [s for s in granted if s in context.client.allowed_scopes]

        await ConsentService.grant_consent(
            session, user.id, context.client.client_id, granted, origin.ip_address, origin.user_agent
        )

        auth_time = datetime.fromtimestamp(payload["auth_time"], UTC) if payload.get("auth_time") else None
        return await OAuthService._issue_code_redirect(session, context, user, granted, auth_time, origin)

    @staticmethod
    async def deny_consent(session: AsyncSession, user: User, ticket: str, origin: RequestOrigin) -> str:
        """Redirect back to the client with ``access_denied``; no code is issued."""
        payload = OAuthService._decode_consent_ticket(ticket, user)
        await OAuthService._close_consent_ticket(session, payload, user, ConsentDecision.DENIED)
        context = await OAuthService._context_from_ticket(session, payload)

        await record_audit_event(
            session,
            AuditEvent.CONSENT_DENIED,
            actor_id=user.id,
            client_id=context.client.client_id,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            details={"scopes": context.scopes},
        )
        return OAuthService.error_redirect(context, "access_denied", "The user denied the request")

    @staticmethod
    async def _issue_code_redirect(
        session: AsyncSession,
        context: AuthorizationContext,
        user: User,
        scopes: list[str],
        auth_time: datetime | None,
        origin: RequestOrigin,
    ) -> str:
        code = await AuthorizationCodeService.issue_code(
            session,
            user_id=user.id,
            client_id=context.client.client_id,
            redirect_uri=context.redirect_uri,
            scopes=scopes,
            code_challenge=context.code_challenge,
            code_challenge_method=context.code_challenge_method,
            nonce=context.nonce,
            state=context.state,
            auth_time=auth_time,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
        )
        return build_redirect_url(context.redirect_uri, {"code": code.code, "state": context.state})

    # Token endpoint

    @staticmethod
    async def exchange_token(
        session: AsyncSession,
        client: OAuthClient,
        form: dict[str, str | None],
        origin: RequestOrigin,
    ) -> TokenResponse:
        """Dispatch a token request on ``grant_type``.

        Raises:
            InvalidRequestException: ``grant_type`` missing
            UnsupportedGrantTypeException: Unknown or disabled grant type
            InvalidGrantException: Suspended client or failed grant

        """
        grant_type = form.get("grant_type")
        if not grant_type:
            raise InvalidRequestException("grant_type is required")
        if grant_type not in settings.grant_types:
            raise UnsupportedGrantTypeException(f"Unsupported grant_type: {grant_type}")

        if client.status == ClientStatus.SUSPENDED.value:
            logger.warning(f"Token request from suspended client {client.client_id}")
            raise InvalidGrantException("Client is suspended")

        if grant_type == "authorization_code":
            response = await OAuthService._authorization_code_grant(session, client, form, origin)
        else:
            response = await OAuthService._refresh_token_grant(session, client, form, origin)

        client.last_used_at = datetime.now(UTC)
        return response

    @staticmethod
    async def _authorization_code_grant(
        session: AsyncSession,
        client: OAuthClient,
        form: dict[str, str | None],
        origin: RequestOrigin,
    ) -> TokenResponse:
        code_value = form.get("code")
        redirect_uri = form.get("redirect_uri")
        code_verifier = form.get("code_verifier")
        if not code_value:
            raise InvalidRequestException("code is required")
        if not redirect_uri:
            raise InvalidRequestException("redirect_uri is required")
        if settings.oauth_require_pkce and not code_verifier:
            raise InvalidRequestException("code_verifier is required")

        code = await AuthorizationCodeService.consume_code(
            session, code_value, client.client_id, redirect_uri, origin.ip_address
        )
        if code is None:
            raise InvalidGrantException("Invalid, expired or already used authorization code")

        if code.code_challenge is not None:
            if not code_verifier or not verify_code_challenge(
                code_verifier, code.code_challenge, code.code_challenge_method or "S256"
            ):
                # The code stays burned
                await session.commit()
                logger.warning(f"PKCE verification failed for client {client.client_id}")
                raise InvalidGrantException("PKCE verification failed")

        user = await UserService.get_active_user(session, code.user_id)
        if user is None:
            await session.commit()
            raise InvalidGrantException("The resource owner is no longer active")

        scopes = code.scopes
        access_token = TokenService.create_access_token(user, client.client_id, scopes)
        id_token = None
        if "openid" in scopes:
            id_token = TokenService.create_id_token(
                user, client.client_id, scopes, access_token, nonce=code.nonce, auth_time=code.auth_time
            )
        refresh_token, record = await TokenService.create_family(
            session,
            user_id=user.id,
            client_id=client.client_id,
            scopes=scopes,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
        )

        await record_audit_event(
            session,
            AuditEvent.TOKENS_ISSUED,
            actor_id=user.id,
            client_id=client.client_id,
            family_id=record.family_id,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            details={"grant_type": "authorization_code", "scope": code.scope},
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=settings.oauth_access_token_lifetime,
            scope=" ".join(scopes),
            refresh_token=refresh_token,
            id_token=id_token,
        )

    @staticmethod
    async def _reject_reuse(session: AsyncSession, record, origin: RequestOrigin) -> InvalidGrantException:
        """Revoke the family, persist that, and hand back the error to raise."""
        await TokenService.handle_reuse(session, record, origin.ip_address, origin.user_agent)
        await session.commit()
        return InvalidGrantException("Refresh token has been revoked")

    @staticmethod
    async def _refresh_token_grant(
        session: AsyncSession,
        client: OAuthClient,
        form: dict[str, str | None],
        origin: RequestOrigin,
    ) -> TokenResponse:
        presented = form.get("refresh_token")
        if not presented:
            raise InvalidRequestException("refresh_token is required")

        record = await TokenService.get_refresh_token(session, presented)
        if record is None or record.client_id != client.client_id:
            raise InvalidGrantException("Invalid refresh token")

        if record.is_revoked or record.superseded_at is not None:
            raise await OAuthService._reject_reuse(session, record, origin)
        if record.is_expired():
            raise InvalidGrantException("Refresh token has expired")

        granted = record.scopes
        requested = _split_scopes(form.get("scope"))
        if requested:
            wider = [s for s in requested if s not in granted]
            if wider:
                raise InvalidScopeException(f"Scope(s) exceed the original grant: {' '.join(wider)}")
        scopes = requested or granted

        user = await UserService.get_active_user(session, record.user_id)
        if user is None:
            raise InvalidGrantException("The resource owner is no longer active")

        if settings.oauth_rotate_refresh_tokens:
            rotated = await TokenService.rotate_refresh_token(
                session, record, granted, origin.ip_address, origin.user_agent
            )
            if rotated is None:
                # Another request rotated this token first
                raise await OAuthService._reject_reuse(session, record, origin)
            refresh_token, new_record = rotated
            await record_audit_event(
                session,
                AuditEvent.REFRESH_TOKEN_ROTATED,
                actor_id=user.id,
                client_id=client.client_id,
                family_id=record.family_id,
                ip_address=origin.ip_address,
                user_agent=origin.user_agent,
                details={"generation": new_record.generation},
            )
        else:
            await TokenService.touch_refresh_token(session, record)
            refresh_token = presented

        access_token = TokenService.create_access_token(user, client.client_id, scopes)
        id_token = None
        if "openid" in scopes:
            id_token = TokenService.create_id_token(user, client.client_id, scopes, access_token)

        return TokenResponse(
            access_token=access_token,
            expires_in=settings.oauth_access_token_lifetime,
            scope=" ".join(scopes),
            refresh_token=refresh_token,
            id_token=id_token,
        )

    # Introspection and revocation

    @staticmethod
    async def introspect(
        session: AsyncSession, client: OAuthClient, token: str | None, hint: str | None = None
    ) -> IntrospectionResponse:
        """Report whether a token is active (RFC 7662).

        Access tokens are checked by signature alone. Refresh tokens are only reported
        to the client they were issued to. Every failure is ``{"active": false}``.
        """
        inactive = IntrospectionResponse(active=False)
        if not token:
            return inactive

        order = ["refresh_token", "access_token"] if hint == "refresh_token" else ["access_token", "refresh_token"]
        for token_type in order:
            if token_type == "access_token":
                try:
                    claims = TokenService.verify_access_token(token)
                except TokenVerificationError:
                    continue
                return IntrospectionResponse(
                    active=True,
                    sub=claims["sub"],
                    scope=claims.get("scope"),
                    client_id=claims.get("client_id"),
                    aud=claims.get("aud"),
                    exp=claims["exp"],
                    iat=claims["iat"],
                    iss=claims["iss"],
                    token_type="Bearer",
                )

            record = await TokenService.get_refresh_token(session, token)
            if record is not None and record.client_id == client.client_id and record.is_live():
                return IntrospectionResponse(
                    active=True,
                    sub=str(record.user_id),
                    scope=record.scope,
                    client_id=record.client_id,
                    exp=int(record.expires_at.timestamp()),
                    iat=int(record.issued_at.timestamp()),
                    token_type="refresh_token",
                )
        return inactive

    @staticmethod
    async def revoke(session: AsyncSession, client: OAuthClient, token: str | None, origin: RequestOrigin) -> None:
        """Revoke a single refresh token owned by the calling client (RFC 7009).

        Unknown tokens, foreign tokens and access tokens are ignored silently; the
        endpoint answers 200 either way.
        """
        if not token:
            return

        record = await TokenService.get_refresh_token(session, token)
        if record is None or record.client_id != client.client_id:
            return

        if await TokenService.revoke_refresh_token(session, record, RevocationReason.CLIENT_REVOKED):
            await record_audit_event(
                session,
                AuditEvent.REFRESH_TOKEN_REVOKED,
                actor_id=record.user_id,
                client_id=client.client_id,
                family_id=record.family_id,
                ip_address=origin.ip_address,
                user_agent=origin.user_agent,
            )

    # UserInfo

    @staticmethod
    async def userinfo(session: AsyncSession, claims: dict[str, Any]) -> dict[str, Any]:
        """Claims about the token's subject for the scopes the token carries.

        Raises:
            InsufficientScopeException: Token lacks ``openid``
            InvalidBearerTokenException: Subject unknown or no longer active

        """
        scopes = _split_scopes(claims.get("scope"))
        if "openid" not in scopes:
            raise InsufficientScopeException("openid")

        user = await UserService.get_active_user(session, claims["sub"])
        if user is None:
            raise InvalidBearerTokenException("The token subject is no longer active")
        return UserService.build_claims(user, scopes)
