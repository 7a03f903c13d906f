"""API v1 router aggregation."""

from fastapi import APIRouter

from app.api.v1.routers import generation, images, tokens

api_router = APIRouter()

api_router.include_router(generation.router)  # Metered generation pipeline
api_router.include_router(tokens.router)  # Token balance and transaction endpoints
api_router.include_router(images.router)  # Generated image library
