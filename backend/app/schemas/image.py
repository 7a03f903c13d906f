"""Pydantic schemas for generated image endpoints."""

from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.generation import GeneratedImageResponse


class ImageListResponse(BaseModel):
    """Paginated list of a user's images."""

    images: list[GeneratedImageResponse]
    total: int
    limit: int
    offset: int


class CaptionUpdateRequest(BaseModel):
    """Caption edit after creation."""

    caption: Optional[str] = Field(default=None, max_length=500)
