"""API route for metered image generation.

POST /api/v1/generate runs one request through the generation pipeline
and translates classified failures into structured HTTP errors.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from app.api.deps import get_current_user_id, get_generation_coordinator, get_ledger_for_user
from app.schemas.generation import (
    GeneratedImageResponse,
    GenerationErrorResponse,
    GenerationRequest,
    GenerationResponse,
    TrackingInfo,
)
from app.services.generation_coordinator import (
    GenerationCoordinator,
    GenerationError,
    RateLimitedError,
)
from app.services.ledger import TokenLedger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generation"])

ERROR_RESPONSES = {
    code: {"model": GenerationErrorResponse}
    for code in (400, 402, 429, 500, 502)
}


@router.post(
    "/generate",
    response_model=GenerationResponse,
    summary="Generate images",
    description=(
        "Generate, transform or vary an image. Tokens are charged up front "
        "and refunded automatically if generation fails."
    ),
    responses=ERROR_RESPONSES,
)
async def generate(
    request: GenerationRequest,
    response: Response,
    user_id: int = Depends(get_current_user_id),
    ledger: TokenLedger = Depends(get_ledger_for_user),
    coordinator: GenerationCoordinator = Depends(get_generation_coordinator),
) -> GenerationResponse:
    """Run a generation request.

    Args:
        request: Generation request body
        response: Outgoing response (for headers)
        user_id: Authenticated user id
        ledger: Ledger dependency (opens the account on first use)
        coordinator: Pipeline coordinator

    Returns:
        GenerationResponse with stored assets and the new balance

    Raises:
        HTTPException: With a GenerationErrorResponse detail on failure
    """
    try:
        outcome = await coordinator.run(user_id, request)
    except GenerationError as e:
        headers = None
        if isinstance(e, RateLimitedError):
            headers = {"Retry-After": str(e.extra["retry_after"])}
        raise HTTPException(
            status_code=e.status_code,
            detail=e.to_detail(),
            headers=headers,
        )

    response.headers["X-Request-Id"] = outcome.request_id
    return GenerationResponse(
        mode=outcome.mode,
        asset_urls=outcome.asset_urls,
        images=[GeneratedImageResponse.model_validate(img) for img in outcome.images],
        token_cost=outcome.token_cost,
        new_balance=outcome.new_balance,
        tracking=TrackingInfo(
            request_id=outcome.request_id,
            template_id=outcome.template_id,
            suggestion_id=outcome.suggestion_id,
            generation_source=outcome.generation_source,
        ),
        generated_at=outcome.generated_at,
    )
