"""Pydantic schemas for token API endpoints.

This module defines request and response models for:
- Token balance queries
- Transaction history
- Cost estimation
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.models.token_transaction import TransactionType
from app.schemas.generation import GenerationMode


class TokenBalanceResponse(BaseModel):
    """Response model for token balance queries."""

    tokens: int = Field(description="Available tokens")
    is_low_balance: bool = Field(description="True if balance is below warning threshold")


class TransactionResponse(BaseModel):
    """Response model for a single transaction."""

    id: int = Field(description="Transaction ID")
    kind: TransactionType = Field(description="Transaction kind")
    amount: int = Field(description="Token change (positive=add, negative=used)")
    description: str = Field(description="Human description")
    created_at: datetime = Field(description="Transaction timestamp")

    class Config:
        from_attributes = True


class TransactionHistoryResponse(BaseModel):
    """Response model for transaction history queries."""

    transactions: list[TransactionResponse] = Field(description="List of transactions")
    total: int = Field(description="Total number of transactions")
    limit: int = Field(description="Page size limit")
    offset: int = Field(description="Current offset")


class CostBreakdown(BaseModel):
    """Breakdown of cost calculation."""

    method: str = Field(description="template, multiplier or size")
    base_cost: int = Field(description="Base cost for the multiplier formula")
    style_multiplier: float = Field(description="Applied style multiplier")
    platform_multiplier: float = Field(description="Applied platform multiplier")
    size_cost: int = Field(description="Flat cost for the requested size")
    template_cost: Optional[int] = Field(default=None, description="Template override")
    total: int = Field(description="Total calculated cost")


class CostEstimateRequest(BaseModel):
    """Request model for cost estimation."""

    mode: GenerationMode = Field(default=GenerationMode.GENERATE)
    style: Optional[str] = Field(default="realistic")
    platform: Optional[str] = Field(default="instagram")
    size: Optional[str] = Field(default="1024x1024")
    template_cost: Optional[int] = Field(default=None, ge=1)


class CostEstimateResponse(BaseModel):
    """Response model for cost estimation."""

    estimated_cost: int = Field(description="Estimated token cost")
    breakdown: CostBreakdown = Field(description="Detailed cost breakdown")
    can_afford: bool = Field(description="Whether user can afford this cost")
    current_balance: int = Field(description="User's current balance")
