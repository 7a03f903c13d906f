"""Generation driver: provider call sequences per generation mode.

Modes:
- generate_from_text: one text-to-image call, no fallback
- transform: direct image edit, falling back to describe + text-to-image
- create_variations: one description, then N independent text-to-image
  calls; succeeds when at least one variation was produced

Every image is written to asset storage before its reference leaves
this module.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from app.services.asset_storage import (
    AssetStorage,
    AssetStorageError,
    download_bytes,
    guess_content_type,
)
from app.services.image_provider import (
    ImageProviderClient,
    ProviderError,
    ProviderErrorKind,
    ProviderImage,
)

logger = logging.getLogger(__name__)

THEME_KEYWORD = "mermaid"
THEME_SUFFIX = (
    " Add magical underwater effects: glowing bioluminescence, floating bubbles, "
    "sparkles, mystical aquatic atmosphere, crystal clear water refraction effects."
)

STYLE_SUFFIXES: dict[str, str] = {
    "artistic": "artistic style, creative, expressive, vibrant colors",
    "photographic": "professional photography, high quality, detailed, realistic lighting",
    "digital-art": "digital art, illustration, modern, clean design",
    "anime": "anime style, manga art, Japanese animation, colorful",
    "vintage": "vintage style, retro aesthetic, nostalgic, classic",
}

VARIATION_QUALIFIERS = (
    "same subject and composition, slight variation in pose and expression",
    "same character, different angle and lighting",
    "similar scene with minor changes in background and colors",
)

TRANSFORM_DESCRIBE_INSTRUCTION = (
    "Analyze this image in detail. Describe the main subject, their appearance, pose, "
    "clothing, facial features, hair, background, lighting, colors, and overall composition."
)
VARIATION_DESCRIBE_INSTRUCTION = (
    "Analyze this image comprehensively. Describe the subject, style, composition, colors, "
    "lighting, mood, and all visual elements. This will be used to generate creative "
    "variations while maintaining the core essence of the image."
)


def enrich_prompt(prompt: str) -> str:
    """Append thematic descriptors for prompts mentioning the theme keyword."""
    if THEME_KEYWORD in prompt.lower():
        return f"{prompt}{THEME_SUFFIX}"
    return prompt


def apply_style(prompt: str, style: Optional[str]) -> str:
    """Append style-specific descriptors for text-to-image."""
    suffix = STYLE_SUFFIXES.get((style or "").lower())
    return f"{prompt}, {suffix}" if suffix else prompt


def provider_style(style: Optional[str]) -> str:
    """Provider rendering style: natural for realistic, vivid otherwise."""
    return "natural" if (style or "realistic").lower() == "realistic" else "vivid"


def variation_prompts(description: str, count: int) -> list[str]:
    """Slightly perturbed prompts built from one description."""
    return [
        f"{description}, {VARIATION_QUALIFIERS[i % len(VARIATION_QUALIFIERS)]}"
        for i in range(count)
    ]


@dataclass(frozen=True)
class StoredAsset:
    """An image that has been durably written to asset storage."""

    url: str
    size_bytes: int
    content_type: str = "image/png"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step of a fallback sequence."""

    asset: Optional[StoredAsset] = None
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.asset is not None


@dataclass(frozen=True)
class SourceImage:
    """Loaded source image bytes."""

    data: bytes
    content_type: str
    filename: str


class GenerationDriver:
    """Drives the image provider for each generation mode."""

    def __init__(
        self,
        provider: ImageProviderClient,
        storage: AssetStorage,
        max_source_bytes: int = 8 * 1024 * 1024,
        download_timeout: float = 60.0,
    ):
        self.provider = provider
        self.storage = storage
        self.max_source_bytes = max_source_bytes
        self.download_timeout = download_timeout

    async def generate_from_text(
        self,
        prompt: str,
        size: str = "1024x1024",
        style: Optional[str] = None,
        quality: str = "standard",
    ) -> StoredAsset:
        """Text-to-image, failure is terminal.

        Raises:
            ProviderError: Provider failed or returned no asset
            AssetStorageError: Asset could not be written
        """
        final_prompt = apply_style(enrich_prompt(prompt), style)
        logger.info(f"Generating image from text (size={size}, style={style})")

        image = await self.provider.generate_image(
            final_prompt,
            size=size,
            quality=quality,
            style=provider_style(style),
        )
        return await self._store(image, prefix="generate")

    async def transform(
        self,
        source_image: str,
        prompt: str,
        style: Optional[str] = None,
        size: str = "1024x1024",
    ) -> StoredAsset:
        """Transform a source image, with describe-and-regenerate fallback.

        When both paths fail the primary error is raised, not the
        fallback's.

        Raises:
            ProviderError: Both paths failed, or the source was unusable
            AssetStorageError: Asset could not be written
        """
        source = await self._load_source(source_image)
        logger.info(f"Transforming image (style={style}, source={source.filename})")

        primary = await self._edit_directly(source, enrich_prompt(prompt), size)
        if primary.ok:
            return primary.asset

        if primary.error.not_supported:
            logger.warning("Direct image edit not supported, falling back to describe + generate")
        else:
            logger.warning(f"Direct image edit failed ({primary.error}), falling back")

        fallback = await self._describe_then_generate(source, prompt, size)
        if fallback.ok:
            return fallback.asset

        logger.warning(f"Transform fallback also failed: {fallback.error}")
        raise primary.error

    async def create_variations(self, source_image: str, count: int = 3) -> list[StoredAsset]:
        """Create ``count`` variations of a source image.

        Individual variation failures are skipped.

        Raises:
            ProviderError: Description failed, or no variation succeeded
            AssetStorageError: No variation succeeded and the first
                failure was a storage failure
        """
        if count < 1:
            raise ValueError("Variation count must be at least 1")

        source = await self._load_source(source_image)
        description = await self.provider.describe_image(
            source.data,
            VARIATION_DESCRIBE_INSTRUCTION,
            content_type=source.content_type,
            max_tokens=600,
        )
        if not description:
            raise ProviderError(ProviderErrorKind.OTHER, "Failed to get image description")

        assets: list[StoredAsset] = []
        failures: list[Union[ProviderError, AssetStorageError]] = []

        for index, variant_prompt in enumerate(variation_prompts(description, count), start=1):
            logger.info(f"Generating variation {index}/{count}")
            try:
                image = await self.provider.generate_image(variant_prompt, style="natural")
                assets.append(await self._store(image, prefix=f"variation_{index}"))
            except (ProviderError, AssetStorageError) as e:
                logger.warning(f"Variation {index}/{count} failed: {e}")
                failures.append(e)

        if not assets:
            raise failures[0]

        logger.info(f"Generated {len(assets)}/{count} variations")
        return assets

    async def _edit_directly(self, source: SourceImage, prompt: str, size: str) -> StepResult:
        try:
            image = await self.provider.edit_image(
                source.data,
                prompt,
                filename=source.filename,
                content_type=source.content_type,
                size=size,
            )
            return StepResult(asset=await self._store(image, prefix="transform"))
        except ProviderError as e:
            return StepResult(error=e)

    async def _describe_then_generate(
        self, source: SourceImage, prompt: str, size: str
    ) -> StepResult:
        try:
            description = await self.provider.describe_image(
                source.data,
                TRANSFORM_DESCRIBE_INSTRUCTION,
                content_type=source.content_type,
            )
            if not description:
                return StepResult(
                    error=ProviderError(ProviderErrorKind.OTHER, "Image description was empty")
                )

            image = await self.provider.generate_image(
                f"{prompt} Based on this image: {description}",
                size=size,
                style="vivid",
            )
            return StepResult(asset=await self._store(image, prefix="transform_fallback"))
        except ProviderError as e:
            return StepResult(error=e)

    async def _load_source(self, source_image: str) -> SourceImage:
        try:
            data = await self.storage.load(source_image, timeout=self.download_timeout)
        except AssetStorageError as e:
            raise ProviderError(
                ProviderErrorKind.OTHER, f"Failed to load source image: {e}"
            ) from e

        if len(data) > self.max_source_bytes:
            raise ProviderError(
                ProviderErrorKind.OTHER,
                f"Source image exceeds {self.max_source_bytes} bytes",
            )

        content_type = guess_content_type(source_image)
        extension = "jpg" if content_type == "image/jpeg" else content_type.split("/")[-1]
        return SourceImage(data=data, content_type=content_type, filename=f"image.{extension}")

    async def _store(self, image: ProviderImage, prefix: str) -> StoredAsset:
        """Write a provider image to storage.

        A provider URL that cannot be fetched counts as a provider
        failure; a failed write raises AssetStorageError.
        """
        if image.b64_data:
            data = image.decode()
        else:
            try:
                data = await download_bytes(image.url, timeout=self.download_timeout)
            except AssetStorageError as e:
                raise ProviderError(
                    ProviderErrorKind.OTHER, f"Failed to fetch generated image: {e}"
                ) from e

        url = await self.storage.save(data, content_type="image/png", prefix=prefix)
        return StoredAsset(url=url, size_bytes=len(data))
