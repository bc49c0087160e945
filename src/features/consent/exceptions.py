"""Consent exceptions."""

from fastapi import HTTPException, status


class ConsentException(HTTPException):
    """Base consent exception."""

    def __init__(self, detail: str = "Consent operation failed", status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(status_code=status_code, detail=detail)


class ConsentNotFoundException(ConsentException):
    """Raised when the user has never authorized the client."""

    def __init__(self):
        super().__init__(detail="Authorization not found", status_code=status.HTTP_404_NOT_FOUND)
