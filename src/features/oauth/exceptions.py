"""OAuth 2.1 / OpenID Connect protocol exceptions.

Rendered as ``{"error": ..., "error_description": ...}`` by the handler
registered in ``src.main``.
"""

from fastapi import HTTPException, status

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class OAuthException(HTTPException):
    """Base protocol error carrying an RFC 6749 error code."""

    error: str = "invalid_request"
    status_code_default: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, description: str | None = None, headers: dict[str, str] | None = None):
        self.description = description
        super().__init__(
            status_code=self.status_code_default,
            detail=description or self.error,
            headers={**NO_STORE_HEADERS, **(headers or {})},
        )

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequestException(OAuthException):
    error = "invalid_request"


class InvalidClientException(OAuthException):
    """Client authentication failed (unknown client, bad secret, or not approved)."""

    error = "invalid_client"
    status_code_default = status.HTTP_401_UNAUTHORIZED

    def __init__(self, description: str | None = "Client authentication failed"):
        super().__init__(description, headers={"WWW-Authenticate": 'Basic realm="oauth"'})


class UnauthorizedClientException(OAuthException):
    """Unknown or unapproved client at the authorization endpoint (no auth challenge)."""

    error = "invalid_client"


class InvalidGrantException(OAuthException):
    error = "invalid_grant"


class InvalidScopeException(OAuthException):
    error = "invalid_scope"


class InvalidRedirectUriException(OAuthException):
    error = "invalid_redirect_uri"


class UnsupportedResponseTypeException(OAuthException):
    error = "unsupported_response_type"


class UnsupportedGrantTypeException(OAuthException):
    error = "unsupported_grant_type"


class AccessDeniedException(OAuthException):
    error = "access_denied"
    status_code_default = status.HTTP_403_FORBIDDEN


class InvalidBearerTokenException(OAuthException):
    """Missing, malformed, expired or foreign bearer access token."""

    error = "invalid_token"
    status_code_default = status.HTTP_401_UNAUTHORIZED

    def __init__(self, description: str | None = "The access token is invalid or expired"):
        super().__init__(
            description,
            headers={"WWW-Authenticate": f'Bearer error="invalid_token", error_description="{description}"'},
        )


class InsufficientScopeException(OAuthException):
    error = "insufficient_scope"
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(self, scope: str):
        description = f"The access token requires the '{scope}' scope"
        super().__init__(
            description,
            headers={"WWW-Authenticate": f'Bearer error="insufficient_scope", scope="{scope}"'},
        )
