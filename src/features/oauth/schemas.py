"""OAuth / OpenID Connect protocol schemas (DTOs)."""

from pydantic import BaseModel, Field

from src.features.clients.schemas import ClientPublicInfo
from src.features.consent.schemas import ScopeDescription


# Request schemas
class AuthorizeRequest(BaseModel):
    """Authorization request query parameters.

    Every field is optional here so that missing or malformed values are reported
    with OAuth error codes instead of a generic 422.
    """

    response_type: str | None = None
    client_id: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    state: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    prompt: str | None = None


class ConsentDecisionRequest(BaseModel):
    """User decision on a consent screen."""

    consent_ticket: str = Field(..., min_length=1)
    approved: bool = True
    scopes: list[str] | None = Field(None, description="Optional narrower set of scopes to grant")


class ConsentDenyRequest(BaseModel):
    consent_ticket: str = Field(..., min_length=1)


# Response schemas
class ConsentData(BaseModel):
    """What the consent screen needs to render."""

    client: ClientPublicInfo
    scopes: list[ScopeDescription]
    requested_scopes: list[str]
    redirect_uri: str


class ConsentRequiredResponse(BaseModel):
    requires_consent: bool = True
    consent_ticket: str
    consent_data: ConsentData


class AuthorizeValidateResponse(BaseModel):
    """Result of a dry-run validation of an authorization request."""

    valid: bool = True
    client: ClientPublicInfo
    scopes: list[ScopeDescription]
    requested_scopes: list[str]
    redirect_uri: str


class TokenResponse(BaseModel):
    """Token endpoint success response (RFC 6749 section 5.1)."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str
    refresh_token: str | None = None
    id_token: str | None = None


class IntrospectionResponse(BaseModel):
    """RFC 7662 introspection response; inactive tokens carry only ``active``."""

    active: bool
    sub: str | None = None
    scope: str | None = None
    client_id: str | None = None
    aud: str | None = None
    exp: int | None = None
    iat: int | None = None
    iss: str | None = None
    token_type: str | None = None
