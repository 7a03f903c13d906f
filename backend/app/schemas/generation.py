"""Pydantic schemas for the generation endpoint.

This module defines:
- The mode-agnostic generation request
- Success and failure response payloads
"""

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from app.models.generated_image import GenerationSource


class GenerationMode(str, enum.Enum):
    """Supported generation modes."""

    GENERATE = "generate"  # Text-to-image
    TRANSFORM = "transform"  # Source image + prompt
    VARIATION = "variation"  # Source image only


class GenerationRequest(BaseModel):
    """Request body for POST /generate."""

    mode: GenerationMode = Field(default=GenerationMode.GENERATE, description="Generation mode")
    prompt: str = Field(default="", description="Free-text prompt")
    caption: Optional[str] = Field(default=None, description="Optional social caption")
    style: Optional[str] = Field(default="realistic", description="Style tag")
    platform: Optional[str] = Field(default="instagram", description="Target platform tag")
    size: str = Field(default="1024x1024", description="Target image size, WxH")
    quality: str = Field(default="standard", description="Provider quality hint")
    source_image: Optional[str] = Field(
        default=None, description="Source image URL for transform/variation"
    )
    variation_count: Optional[int] = Field(
        default=None, ge=1, description="Number of variations to create"
    )
    template_id: Optional[str] = Field(default=None, description="Template identifier")
    template_cost: Optional[int] = Field(
        default=None, ge=1, description="Pre-negotiated template cost override"
    )
    suggestion_id: Optional[str] = Field(default=None, description="Suggestion identifier")
    generation_source: Optional[GenerationSource] = Field(
        default=None, description="Where the prompt came from"
    )

    @model_validator(mode="after")
    def check_mode_requirements(self) -> "GenerationRequest":
        """Enforce per-mode required inputs."""
        if self.mode in (GenerationMode.TRANSFORM, GenerationMode.VARIATION):
            if not self.source_image or not self.source_image.strip():
                raise ValueError(
                    "Source image is required for transformation or variations"
                )
        if self.mode == GenerationMode.GENERATE and not self.prompt.strip():
            raise ValueError("Prompt is required")
        if self.mode == GenerationMode.TRANSFORM and not self.prompt.strip():
            raise ValueError("Prompt is required for transformation")
        return self


class TrackingInfo(BaseModel):
    """Tracking identifiers echoed back to the caller."""

    request_id: str = Field(description="Per-request tracking id")
    template_id: Optional[str] = None
    suggestion_id: Optional[str] = None
    generation_source: Optional[GenerationSource] = None


class GeneratedImageResponse(BaseModel):
    """Response model for a persisted generated image."""

    id: int
    asset_url: str
    original_asset_url: Optional[str] = None
    prompt: str
    caption: Optional[str] = None
    style: str
    platform: str
    size: str
    template_id: Optional[str] = None
    suggestion_id: Optional[str] = None
    generation_source: Optional[GenerationSource] = None
    is_favorite: bool = False
    downloads: int = 0
    created_at: datetime

    class Config:
        from_attributes = True


class GenerationResponse(BaseModel):
    """Successful generation payload."""

    success: bool = True
    mode: GenerationMode
    asset_urls: list[str] = Field(description="Stored asset references")
    images: list[GeneratedImageResponse] = Field(description="Persisted image records")
    token_cost: int = Field(description="Tokens charged for this request")
    new_balance: int = Field(description="Balance after the charge")
    tracking: TrackingInfo
    generated_at: datetime


class GenerationErrorResponse(BaseModel):
    """Structured failure payload (returned as HTTPException detail)."""

    error: str = Field(description="Error kind")
    message: str = Field(description="Safe, human-readable message")
    request_id: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)
