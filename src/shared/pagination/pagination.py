"""Pagination parameters for list endpoints."""

from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    """Query parameters for pagination.

    Can be used as dependency in FastAPI routes:
    ```python
    @router.get("/clients")
    async def list_clients(pagination: PaginationParams = Depends()):
        stmt = select(OAuthClient).offset(pagination.skip).limit(pagination.limit)
    ```

    Pagination is disabled when page or page_size is None.
    """

    page: int | None = Field(default=1, ge=1, description="Page number (1-indexed). Set to None to disable pagination")

    page_size: int | None = Field(
        default=50, ge=1, le=1000, description="Items per page. Set to None to disable pagination"
    )

    @property
    def skip(self) -> int:
        """Offset for the database query."""
        if self.page is None or self.page_size is None:
            return 0
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int | None:
        """Limit for the database query (None = no limit)."""
        return self.page_size

    @property
    def is_paginated(self) -> bool:
        return self.page is not None and self.page_size is not None


__all__ = ["PaginationParams"]
