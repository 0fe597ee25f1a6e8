"""Common schemas used across the API."""

from typing import Generic, List, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """
    Standard pagination response wrapper.

    Attributes:
        items: List of items for the current page
        total: Total count of all items matching the query
        skip: Number of items skipped (offset)
        limit: Maximum items per page (page size)
    """
    items: List[T]
    total: int = Field(..., ge=0)
    skip: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)


class MessageResponse(BaseModel):
    success: bool = True
    message: str
