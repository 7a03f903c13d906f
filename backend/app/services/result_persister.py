"""Result persister for generated images.

Owns GeneratedImage rows. ``persist`` stores the asset (downloading or
writing bytes as needed) and upserts the row keyed by
(owner, asset URL); later calls for the same pair update that row.
``persist_many`` records several assets in one transaction: all rows
are written or none.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.generated_image import GeneratedImage, GenerationSource
from app.services.asset_storage import AssetStorage, AssetStorageError
from app.services.generation_driver import StoredAsset

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when an asset or its metadata could not be persisted."""

    pass


@dataclass
class ImageMetadata:
    """Metadata recorded alongside a generated asset."""

    prompt: str
    style: str = "realistic"
    platform: str = "instagram"
    size: str = "1024x1024"
    caption: Optional[str] = None
    original_asset_url: Optional[str] = None
    template_id: Optional[str] = None
    suggestion_id: Optional[str] = None
    generation_source: Optional[GenerationSource] = None


class ResultPersister:
    """Persists generated assets and their GeneratedImage records."""

    def __init__(self, db: AsyncSession, storage: AssetStorage):
        self.db = db
        self.storage = storage

    async def persist(
        self,
        owner_id: int,
        asset: Union[StoredAsset, bytes, str],
        metadata: ImageMetadata,
    ) -> GeneratedImage:
        """Store an asset and create or update its record.

        Args:
            owner_id: Owning user
            asset: Already-stored asset, raw bytes, or a URL (owned by
                storage, or remote and downloaded first)
            metadata: Generation metadata

        Returns:
            The GeneratedImage row

        Raises:
            PersistenceError: If storing the asset or the row failed
        """
        images = await self.persist_many(owner_id, [asset], metadata)
        return images[0]

    async def persist_many(
        self,
        owner_id: int,
        assets: Sequence[Union[StoredAsset, bytes, str]],
        metadata: ImageMetadata,
    ) -> list[GeneratedImage]:
        """Store assets sharing one set of metadata and record them together.

        Raises:
            PersistenceError: If any asset or row failed; no row is kept
        """
        try:
            asset_urls = [await self._ensure_stored(asset) for asset in assets]
        except AssetStorageError as e:
            raise PersistenceError(f"Failed to store asset: {e}") from e

        try:
            images = await self._write_rows(owner_id, asset_urls, metadata)
        except IntegrityError:
            # Concurrent insert of the same (owner, url): update the winner
            await self.db.rollback()
            try:
                images = await self._write_rows(owner_id, asset_urls, metadata)
            except Exception as e:
                await self.db.rollback()
                raise PersistenceError(f"Failed to save image records: {e}") from e
        except Exception as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to save image records: {e}") from e

        return images

    async def get_image(self, owner_id: int, image_id: int) -> Optional[GeneratedImage]:
        result = await self.db.execute(
            select(GeneratedImage).where(
                GeneratedImage.id == image_id,
                GeneratedImage.user_id == owner_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_images(
        self,
        owner_id: int,
        limit: int = 20,
        offset: int = 0,
        favorites_only: bool = False,
    ) -> tuple[list[GeneratedImage], int]:
        """Paginated images of a user, newest first."""
        base_query = select(GeneratedImage).where(GeneratedImage.user_id == owner_id)
        if favorites_only:
            base_query = base_query.where(GeneratedImage.is_favorite.is_(True))

        total = await self.db.scalar(
            select(func.count()).select_from(base_query.subquery())
        ) or 0

        result = await self.db.execute(
            base_query
            .order_by(GeneratedImage.created_at.desc(), GeneratedImage.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def update_caption(
        self, owner_id: int, image_id: int, caption: Optional[str]
    ) -> Optional[GeneratedImage]:
        image = await self.get_image(owner_id, image_id)
        if image is None:
            return None
        image.caption = caption
        await self.db.commit()
        await self.db.refresh(image)
        return image

    async def toggle_favorite(self, owner_id: int, image_id: int) -> Optional[GeneratedImage]:
        image = await self.get_image(owner_id, image_id)
        if image is None:
            return None
        image.is_favorite = not image.is_favorite
        await self.db.commit()
        await self.db.refresh(image)
        return image

    async def record_download(self, owner_id: int, image_id: int) -> Optional[GeneratedImage]:
        image = await self.get_image(owner_id, image_id)
        if image is None:
            return None
        image.downloads = GeneratedImage.downloads + 1
        await self.db.commit()
        await self.db.refresh(image)
        return image

    async def _ensure_stored(self, asset: Union[StoredAsset, bytes, str]) -> str:
        if isinstance(asset, StoredAsset):
            return asset.url
        if isinstance(asset, bytes):
            return await self.storage.save(asset, prefix="image")
        if self.storage.owns(asset):
            return asset

        data = await self.storage.load(asset)
        return await self.storage.save(data, prefix="image")

    async def _write_rows(
        self, owner_id: int, asset_urls: list[str], metadata: ImageMetadata
    ) -> list[GeneratedImage]:
        images = [await self._upsert(owner_id, url, metadata) for url in asset_urls]
        await self.db.commit()

        for image in images:
            await self.db.refresh(image)
            logger.info(
                f"Saved image {image.id} for user {owner_id} "
                f"(template={image.template_id}, suggestion={image.suggestion_id}, "
                f"source={image.generation_source})"
            )
        return images

    async def _upsert(
        self, owner_id: int, asset_url: str, metadata: ImageMetadata
    ) -> GeneratedImage:
        result = await self.db.execute(
            select(GeneratedImage).where(
                GeneratedImage.user_id == owner_id,
                GeneratedImage.asset_url == asset_url,
            )
        )
        image = result.scalar_one_or_none()

        if image is None:
            image = GeneratedImage(
                user_id=owner_id,
                asset_url=asset_url,
                original_asset_url=metadata.original_asset_url,
                prompt=metadata.prompt,
                caption=metadata.caption,
                style=metadata.style,
                platform=metadata.platform,
                size=metadata.size,
                template_id=metadata.template_id,
                suggestion_id=metadata.suggestion_id,
                generation_source=metadata.generation_source,
            )
            self.db.add(image)
        else:
            image.prompt = metadata.prompt
            image.style = metadata.style
            image.platform = metadata.platform
            image.size = metadata.size
            # Optional fields only overwrite when supplied
            if metadata.caption:
                image.caption = metadata.caption
            if metadata.original_asset_url:
                image.original_asset_url = metadata.original_asset_url
            if metadata.template_id:
                image.template_id = metadata.template_id
            if metadata.suggestion_id:
                image.suggestion_id = metadata.suggestion_id
            if metadata.generation_source:
                image.generation_source = metadata.generation_source

        await self.db.flush()
        return image
