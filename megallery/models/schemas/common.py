"""Common Pydantic schemas used across the application."""
from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    """Pagination parameters."""

    page: int = Field(default=1, ge=1, description="Page number")
    page_size: int = Field(default=50, ge=1, le=500, description="Items per page")


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str

    class Config:
        from_attributes = True


def total_pages(total: int, page_size: int) -> int:
    return (total + page_size - 1) // page_size
