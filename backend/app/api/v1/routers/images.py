"""API routes for a user's generated images."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_current_user_id, get_result_persister
from app.schemas.generation import GeneratedImageResponse
from app.schemas.image import CaptionUpdateRequest, ImageListResponse
from app.services.moderation import moderate, sanitize_text
from app.services.result_persister import ResultPersister

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/images", tags=["images"])


def _not_found(image_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Image {image_id} not found",
    )


@router.get("", response_model=ImageListResponse, summary="List images")
async def list_images(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    favorites_only: bool = Query(default=False),
    user_id: int = Depends(get_current_user_id),
    persister: ResultPersister = Depends(get_result_persister),
) -> ImageListResponse:
    """List the user's generated images, newest first."""
    images, total = await persister.list_images(
        user_id, limit=limit, offset=offset, favorites_only=favorites_only
    )
    return ImageListResponse(
        images=[GeneratedImageResponse.model_validate(img) for img in images],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{image_id}", response_model=GeneratedImageResponse, summary="Get image")
async def get_image(
    image_id: int,
    user_id: int = Depends(get_current_user_id),
    persister: ResultPersister = Depends(get_result_persister),
) -> GeneratedImageResponse:
    image = await persister.get_image(user_id, image_id)
    if image is None:
        raise _not_found(image_id)
    return GeneratedImageResponse.model_validate(image)


@router.patch(
    "/{image_id}",
    response_model=GeneratedImageResponse,
    summary="Update caption",
)
async def update_caption(
    image_id: int,
    body: CaptionUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    persister: ResultPersister = Depends(get_result_persister),
) -> GeneratedImageResponse:
    """Edit the caption; it goes through the same moderation as at creation."""
    caption = sanitize_text(body.caption)
    result = moderate("", caption)
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "blocked", "message": result.reason},
        )

    image = await persister.update_caption(user_id, image_id, caption)
    if image is None:
        raise _not_found(image_id)
    return GeneratedImageResponse.model_validate(image)


@router.post(
    "/{image_id}/favorite",
    response_model=GeneratedImageResponse,
    summary="Toggle favorite",
)
async def toggle_favorite(
    image_id: int,
    user_id: int = Depends(get_current_user_id),
    persister: ResultPersister = Depends(get_result_persister),
) -> GeneratedImageResponse:
    image = await persister.toggle_favorite(user_id, image_id)
    if image is None:
        raise _not_found(image_id)
    return GeneratedImageResponse.model_validate(image)


@router.post(
    "/{image_id}/download",
    response_model=GeneratedImageResponse,
    summary="Record a download",
)
async def record_download(
    image_id: int,
    user_id: int = Depends(get_current_user_id),
    persister: ResultPersister = Depends(get_result_persister),
) -> GeneratedImageResponse:
    image = await persister.record_download(user_id, image_id)
    if image is None:
        raise _not_found(image_id)
    return GeneratedImageResponse.model_validate(image)
