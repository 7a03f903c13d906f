"""API routes for token management.

This module provides REST endpoints for:
- GET /api/v1/tokens/balance - Get current balance
- GET /api/v1/tokens/history - Get transaction history
- POST /api/v1/tokens/estimate - Estimate generation cost
- GET /api/v1/tokens/check/{amount} - Check affordability
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_current_user_id, get_ledger_for_user
from app.models.token_transaction import TransactionType
from app.schemas.token import (
    CostBreakdown,
    CostEstimateRequest,
    CostEstimateResponse,
    TokenBalanceResponse,
    TransactionHistoryResponse,
    TransactionResponse,
)
from app.services.ledger import TokenLedger
from app.services.pricing import price_breakdown

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tokens", tags=["tokens"])


@router.get(
    "/balance",
    response_model=TokenBalanceResponse,
    summary="Get token balance",
    description="Get the current token balance for the authenticated user",
)
async def get_balance(
    user_id: int = Depends(get_current_user_id),
    ledger: TokenLedger = Depends(get_ledger_for_user),
) -> TokenBalanceResponse:
    """Get the current user's token balance.

    First-time users are opened with the starting grant.
    """
    details = await ledger.get_balance_details(user_id)
    return TokenBalanceResponse(**details)


@router.get(
    "/history",
    response_model=TransactionHistoryResponse,
    summary="Get transaction history",
    description="Get paginated transaction history for the authenticated user",
)
async def get_history(
    kind: Optional[TransactionType] = Query(
        default=None,
        description="Filter by transaction kind",
    ),
    limit: int = Query(default=50, ge=1, le=100, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    user_id: int = Depends(get_current_user_id),
    ledger: TokenLedger = Depends(get_ledger_for_user),
) -> TransactionHistoryResponse:
    """Get the current user's transaction history, newest first.

    Args:
        kind: Optional filter (used, earned, purchased)
        limit: Maximum results to return
        offset: Pagination offset
        user_id: Authenticated user id
        ledger: Token ledger

    Returns:
        TransactionHistoryResponse with paginated transactions
    """
    transactions, total = await ledger.get_transaction_history(
        user_id,
        limit=limit,
        offset=offset,
        kind=kind,
    )

    return TransactionHistoryResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/estimate",
    response_model=CostEstimateResponse,
    summary="Estimate generation cost",
    description="Estimate the token cost of a generation before submitting it",
)
async def estimate_cost(
    request: CostEstimateRequest,
    user_id: int = Depends(get_current_user_id),
    ledger: TokenLedger = Depends(get_ledger_for_user),
) -> CostEstimateResponse:
    """Estimate the cost of a generation request.

    Uses the same pricing as the generation pipeline, so the estimate
    equals the amount that would be debited.
    """
    breakdown = price_breakdown(
        request.mode,
        style=request.style,
        platform=request.platform,
        size=request.size,
        template_cost_override=request.template_cost,
    )
    balance = await ledger.balance_of(user_id)

    return CostEstimateResponse(
        estimated_cost=breakdown["total"],
        breakdown=CostBreakdown(**breakdown),
        can_afford=balance >= breakdown["total"],
        current_balance=balance,
    )


@router.get(
    "/check/{amount}",
    summary="Check token availability",
    description="Check if the user has enough tokens for a given amount",
)
async def check_balance(
    amount: int,
    user_id: int = Depends(get_current_user_id),
    ledger: TokenLedger = Depends(get_ledger_for_user),
) -> dict:
    """Check if the user can afford a given token amount.

    Raises:
        HTTPException: 400 if amount is not positive
    """
    if amount <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Amount must be positive",
        )

    balance = await ledger.balance_of(user_id)
    return {
        "has_sufficient": balance >= amount,
        "required": amount,
        "available": balance,
        "shortfall": max(0, amount - balance),
    }
