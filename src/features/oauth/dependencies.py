"""Client authentication and bearer token dependencies for protocol endpoints."""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.dependencies import get_db_session
from src.features.clients.models import OAuthClient
from src.features.clients.service import ClientService

from .exceptions import InvalidBearerTokenException, InvalidClientException, InvalidRequestException
from .keys import TokenVerificationError
from .tokens import TokenService

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str | None
    client_secret: str | None
    method: str


def parse_basic_credentials(authorization: str) -> tuple[str, str]:
    """Decode ``Basic base64(urlencode(id):urlencode(secret))`` (RFC 6749 section 2.3.1).

    Raises:
        InvalidClientException: If the header is not valid Basic credentials

    """
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        raise InvalidClientException("Unsupported client authentication scheme")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as err:
        raise InvalidClientException("Malformed Basic credentials") from err

    client_id, sep, client_secret = decoded.partition(":")
    if not sep or not client_id:
        raise InvalidClientException("Malformed Basic credentials")
    return unquote(client_id), unquote(client_secret)


async def get_client_credentials(request: Request) -> ClientCredentials:
    """Collect client credentials from HTTP Basic or the form body.

    Using both methods in one request is rejected with ``invalid_request``.
    """
    form = await request.form()
    form_id = form.get("client_id")
    form_secret = form.get("client_secret")
    authorization = request.headers.get("authorization")

    if authorization:
        if form_secret:
            raise InvalidRequestException("Use only one client authentication method")
        client_id, client_secret = parse_basic_credentials(authorization)
        if form_id and form_id != client_id:
            raise InvalidRequestException("client_id does not match the authenticated client")
        return ClientCredentials(client_id, client_secret, "client_secret_basic")

    return ClientCredentials(
        str(form_id) if form_id else None,
        str(form_secret) if form_secret else None,
        "client_secret_post" if form_secret else "none",
    )


async def get_authenticated_client(
    credentials: ClientCredentials = Depends(get_client_credentials),
    session: AsyncSession = Depends(get_db_session),
) -> OAuthClient:
    """Authenticated client for the token, introspection and revocation endpoints."""
    return await ClientService.authenticate_client(session, credentials.client_id, credentials.client_secret)


async def get_access_token_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    """Verified claims of the bearer access token.

    Raises:
        InvalidBearerTokenException: Missing, expired, foreign or malformed token

    """
    if credentials is None:
        raise InvalidBearerTokenException("Missing bearer access token")
    try:
        return TokenService.verify_access_token(credentials.credentials)
    except TokenVerificationError as err:
        logger.warning(f"Rejected bearer token: {type(err).__name__}")
        raise InvalidBearerTokenException() from err
