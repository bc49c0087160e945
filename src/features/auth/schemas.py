"""Authentication schemas (DTOs)."""

from pydantic import BaseModel, EmailStr, Field, model_validator


# Request schemas
class UserLoginRequest(BaseModel):
    """Login request with separated username/email for validation purposes.

    Note: Uses email-validator library via Pydantic's EmailStr for RFC 5322 compliant email validation.
    """

    username: str | None = Field(
        None,
        min_length=3,
        max_length=50,
        pattern=r"^[a-zA-Z0-9._-]+$",
        description="Username (alphanumeric, hyphens, underscores, dots only)",
    )

    email: EmailStr | None = Field(None, description="Email address (validated via email-validator)")

    password: str = Field(..., min_length=1)

    return_to: str | None = Field(
        None, max_length=4096, description="Relative URL to resume after login (e.g. an authorization request)"
    )

    @model_validator(mode="after")
    def at_least_one_credential(self) -> "UserLoginRequest":
        """Ensure at least username or email is provided."""
        if not self.username and not self.email:
            raise ValueError("Either username or email must be provided")
        return self

    @property
    def credential(self) -> str:
        """Return the credential (username or email) for service layer."""
        if self.username:
            return self.username
        if self.email:
            return self.email
        raise ValueError("No credential available")


# Response schemas
class SessionResponse(BaseModel):
    """Session token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    redirect_to: str | None = None
