"""Client registry exceptions."""

from fastapi import HTTPException, status

from src.features.oauth.exceptions import OAuthException


class ClientException(HTTPException):
    """Base client registry exception."""

    def __init__(self, detail: str = "Client operation failed", status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(status_code=status_code, detail=detail)


class ClientNotFound(ClientException):
    """Raised when a client does not exist (or the requester may not see it)."""

    def __init__(self):
        super().__init__(detail="Client not found", status_code=status.HTTP_404_NOT_FOUND)


class ClientAccessDenied(ClientException):
    """Raised when the requester is neither the owner nor an admin."""

    def __init__(self, detail: str = "You do not have permission to manage this client"):
        super().__init__(detail=detail, status_code=status.HTTP_403_FORBIDDEN)


class InvalidClientTransition(ClientException):
    """Raised when a lifecycle change is not allowed from the current status."""

    def __init__(self, current: str, target: str):
        super().__init__(
            detail=f"Cannot move client from '{current}' to '{target}'", status_code=status.HTTP_409_CONFLICT
        )


class InvalidClientMetadata(OAuthException):
    """Raised when registration metadata fails validation (RFC 7591 error code)."""

    error = "invalid_client_metadata"


class RedirectUrisLocked(ClientException):
    """Raised when redirect URIs are edited after the client left review."""

    def __init__(self):
        super().__init__(
            detail="Redirect URIs can only be changed while the client is pending review",
            status_code=status.HTTP_409_CONFLICT,
        )
