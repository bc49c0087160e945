"""Consent schemas (DTOs)."""

from datetime import datetime

from pydantic import BaseModel

from .models import ConsentAction


class ScopeDescription(BaseModel):
    scope: str
    name: str
    description: str
    icon: str


class ConsentEventResponse(BaseModel):
    action: ConsentAction
    scopes: list[str]
    ip_address: str | None = None
    timestamp: datetime

    model_config = {"from_attributes": True}


class AuthorizedClientResponse(BaseModel):
    """A client the current user has authorized."""

    client_id: str
    client_name: str
    homepage_uri: str | None = None
    logo_uri: str | None = None
    scopes: list[ScopeDescription]
    first_granted_at: datetime
    updated_at: datetime


class AuthorizationListResponse(BaseModel):
    authorizations: list[AuthorizedClientResponse]
    total: int


class AuthorizationDetailResponse(AuthorizedClientResponse):
    """Authorization with its recent consent history."""

    is_active: bool
    history: list[ConsentEventResponse]
