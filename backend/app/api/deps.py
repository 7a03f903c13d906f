"""API dependencies for FastAPI route handlers.

This module provides dependency injection functions for:
- Database sessions
- The requesting user's id (from the identity gateway)
- Ledger, persister, driver and coordinator instances
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db as get_db_session
from app.core.database import get_session_factory
from app.services.asset_storage import AssetStorage, get_asset_storage
from app.services.generation_coordinator import GenerationCoordinator
from app.services.generation_driver import GenerationDriver
from app.services.image_provider import ImageProviderClient
from app.services.ledger import TokenLedger, get_ledger
from app.services.result_persister import ResultPersister


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session.

    Yields:
        AsyncSession for database operations
    """
    async for session in get_db_session():
        yield session


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> int:
    """Id of the authenticated user.

    Authentication happens upstream; the identity gateway sets
    ``X-User-Id`` and the value is trusted as given.

    Raises:
        HTTPException: 401 if the header is missing or malformed
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity",
        )


async def get_ledger_for_user(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> TokenLedger:
    """Ledger with the user's account opened on first sight."""
    ledger = get_ledger(db)
    await ledger.ensure_account(user_id)
    return ledger


def get_storage() -> AssetStorage:
    return get_asset_storage()


async def get_result_persister(
    db: AsyncSession = Depends(get_db),
    storage: AssetStorage = Depends(get_storage),
) -> ResultPersister:
    return ResultPersister(db, storage)


def get_provider_client(request: Request) -> ImageProviderClient:
    """Provider client built in the application lifespan."""
    client = getattr(request.app.state, "provider_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image provider not configured",
        )
    return client


def get_generation_driver(
    provider: ImageProviderClient = Depends(get_provider_client),
    storage: AssetStorage = Depends(get_storage),
) -> GenerationDriver:
    return GenerationDriver(
        provider=provider,
        storage=storage,
        max_source_bytes=settings.MAX_SOURCE_IMAGE_BYTES,
    )


def get_generation_coordinator(
    driver: GenerationDriver = Depends(get_generation_driver),
    storage: AssetStorage = Depends(get_storage),
) -> GenerationCoordinator:
    """Coordinator configured from settings.

    The coordinator opens its own sessions so that a request whose
    caller disconnects still settles.
    """
    return GenerationCoordinator(
        session_factory=get_session_factory(),
        driver=driver,
        storage=storage,
        rate_limit=settings.GENERATION_RATE_LIMIT,
        rate_window_minutes=settings.GENERATION_RATE_WINDOW_MINUTES,
        default_variation_count=settings.DEFAULT_VARIATION_COUNT,
        max_variation_count=settings.MAX_VARIATION_COUNT,
    )
