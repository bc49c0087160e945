"""Client registry schemas (DTOs)."""

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from .models import ApplicationType, ClientStatus

MAX_REDIRECT_URIS = 10


# Request schemas
class ClientRegisterRequest(BaseModel):
    """Client registration request (any authenticated user)."""

    name: str = Field(..., min_length=3, max_length=100)
    description: str | None = Field(None, max_length=1000)
    redirect_uris: list[str] = Field(..., min_length=1, max_length=MAX_REDIRECT_URIS)
    scopes: list[str] = Field(default_factory=lambda: ["openid"], description="Scopes requested for approval")
    contacts: list[EmailStr] = Field(default_factory=list, max_length=5)
    application_type: ApplicationType = ApplicationType.WEB
    homepage_uri: str | None = Field(None, max_length=2048)
    logo_uri: str | None = Field(None, max_length=2048)


class ClientUpdateRequest(BaseModel):
    """Owner update; redirect URIs are only editable while pending."""

    name: str | None = Field(None, min_length=3, max_length=100)
    description: str | None = Field(None, max_length=1000)
    redirect_uris: list[str] | None = Field(None, min_length=1, max_length=MAX_REDIRECT_URIS)
    homepage_uri: str | None = Field(None, max_length=2048)
    logo_uri: str | None = Field(None, max_length=2048)


class ClientApproveRequest(BaseModel):
    """Admin approval; ``allowed_scopes`` defaults to the requested scopes."""

    allowed_scopes: list[str] | None = None
    notes: str | None = Field(None, max_length=1000)


class ClientReasonRequest(BaseModel):
    """Reason for rejecting or suspending a client."""

    reason: str = Field(..., min_length=3, max_length=1000)


# Response schemas
class ClientResponse(BaseModel):
    """Client as seen by its owner or an admin (never includes the secret)."""

    client_id: str
    name: str
    description: str | None = None
    homepage_uri: str | None = None
    logo_uri: str | None = None
    contacts: list[str]
    application_type: ApplicationType
    redirect_uris: list[str]
    requested_scopes: list[str]
    allowed_scopes: list[str]
    status: ClientStatus
    owner_id: int
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    last_used_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ClientCredentialsResponse(ClientResponse):
    """Returned once on registration and secret rotation."""

    client_secret: str


class ClientPublicInfo(BaseModel):
    """What a consent screen may show about an approved client."""

    client_id: str
    name: str
    description: str | None = None
    homepage_uri: str | None = None
    logo_uri: str | None = None

    model_config = {"from_attributes": True}


class ClientListResponse(BaseModel):
    """Paginated client list."""

    clients: list[ClientResponse]
    total: int
    page: int | None = None
    page_size: int | None = None


class ClientStatsResponse(BaseModel):
    """Client counts per lifecycle status."""

    total: int
    by_status: dict[str, int]
