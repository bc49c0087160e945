"""User schemas (DTOs)."""

from datetime import datetime

from pydantic import BaseModel, EmailStr

from .models import UserRole, UserStatus


# Response schemas
class UserResponse(BaseModel):
    """User response."""

    id: int
    email: EmailStr
    username: str
    full_name: str
    email_verified: bool
    picture: str | None = None
    roles: list[UserRole]
    status: UserStatus
    last_login_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}
