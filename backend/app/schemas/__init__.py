"""Pydantic schemas for API requests and responses."""

from app.schemas.generation import (
    GeneratedImageResponse,
    GenerationErrorResponse,
    GenerationMode,
    GenerationRequest,
    GenerationResponse,
    TrackingInfo,
)
from app.schemas.image import CaptionUpdateRequest, ImageListResponse
from app.schemas.token import (
    CostBreakdown,
    CostEstimateRequest,
    CostEstimateResponse,
    TokenBalanceResponse,
    TransactionHistoryResponse,
    TransactionResponse,
)

__all__ = [
    # Generation schemas
    "GenerationMode",
    "GenerationRequest",
    "GenerationResponse",
    "GenerationErrorResponse",
    "GeneratedImageResponse",
    "TrackingInfo",
    # Image library schemas
    "ImageListResponse",
    "CaptionUpdateRequest",
    # Token schemas
    "TokenBalanceResponse",
    "TransactionResponse",
    "TransactionHistoryResponse",
    "CostBreakdown",
    "CostEstimateRequest",
    "CostEstimateResponse",
]
