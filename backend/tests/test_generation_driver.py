"""Unit tests for the generation driver and its fallback cascade."""

import pytest

from app.services.asset_storage import AssetStorageError, LocalAssetStorage
from app.services.generation_driver import (
    STYLE_SUFFIXES,
    THEME_SUFFIX,
    GenerationDriver,
    apply_style,
    enrich_prompt,
    provider_style,
    variation_prompts,
)
from app.services.image_provider import ProviderError, ProviderErrorKind


def _error(kind=ProviderErrorKind.OTHER, message="boom", not_supported=False):
    return ProviderError(kind, message, not_supported=not_supported)


class TestPromptShaping:
    def test_theme_keyword_enriches(self):
        assert enrich_prompt("A Mermaid portrait").endswith(THEME_SUFFIX)
        assert enrich_prompt("A pirate portrait") == "A pirate portrait"

    def test_style_suffix(self):
        assert apply_style("cat", "anime") == f"cat, {STYLE_SUFFIXES['anime']}"
        assert apply_style("cat", "realistic") == "cat"
        assert apply_style("cat", None) == "cat"

    def test_provider_style(self):
        assert provider_style("realistic") == "natural"
        assert provider_style(None) == "natural"
        assert provider_style("anime") == "vivid"

    def test_variation_prompts_differ(self):
        prompts = variation_prompts("a cat", 4)
        assert len(prompts) == 4
        assert len(set(prompts[:3])) == 3
        assert all(p.startswith("a cat, ") for p in prompts)


class TestGenerateFromText:
    @pytest.mark.asyncio
    async def test_stores_asset(self, driver, fake_provider, storage, png_bytes):
        asset = await driver.generate_from_text("a mermaid", size="1024x1792", style="anime")

        assert storage.owns(asset.url)
        assert await storage.read(asset.url) == png_bytes
        assert asset.size_bytes == len(png_bytes)
        call = fake_provider.generate_calls[0]
        assert THEME_SUFFIX.strip() in call["prompt"]
        assert call["size"] == "1024x1792"
        assert call["style"] == "vivid"

    @pytest.mark.asyncio
    async def test_failure_is_terminal(self, driver, fake_provider):
        fake_provider.generate_error = _error(ProviderErrorKind.RATE_LIMITED)

        with pytest.raises(ProviderError) as exc_info:
            await driver.generate_from_text("a fox")

        assert exc_info.value.kind == ProviderErrorKind.RATE_LIMITED
        assert len(fake_provider.generate_calls) == 1


class TestTransform:
    @pytest.mark.asyncio
    async def test_direct_edit_success_skips_fallback(self, driver, fake_provider, source_image_url):
        asset = await driver.transform(source_image_url, "make it snowy", style="realistic")

        assert asset.url.startswith("/uploads/transform_")
        assert len(fake_provider.edit_calls) == 1
        assert fake_provider.describe_calls == []
        assert fake_provider.generate_calls == []

    @pytest.mark.asyncio
    async def test_falls_back_to_describe_and_generate(self, driver, fake_provider, source_image_url):
        fake_provider.edit_error = _error(message="model not supported", not_supported=True)

        asset = await driver.transform(source_image_url, "make it snowy")

        assert asset.url.startswith("/uploads/transform_fallback_")
        assert len(fake_provider.describe_calls) == 1
        prompt = fake_provider.generate_calls[0]["prompt"]
        assert prompt == f"make it snowy Based on this image: {fake_provider.description}"

    @pytest.mark.asyncio
    async def test_both_fail_raises_primary_error(self, driver, fake_provider, source_image_url):
        fake_provider.edit_error = _error(ProviderErrorKind.QUOTA_EXCEEDED, "quota")
        fake_provider.generate_error = _error(ProviderErrorKind.OTHER, "fallback down")

        with pytest.raises(ProviderError) as exc_info:
            await driver.transform(source_image_url, "make it snowy")

        assert exc_info.value.kind == ProviderErrorKind.QUOTA_EXCEEDED
        assert exc_info.value.message == "quota"

    @pytest.mark.asyncio
    async def test_empty_description_fails_fallback(self, driver, fake_provider, source_image_url):
        fake_provider.edit_error = _error(ProviderErrorKind.RATE_LIMITED)
        fake_provider.description = None

        with pytest.raises(ProviderError) as exc_info:
            await driver.transform(source_image_url, "make it snowy")

        assert exc_info.value.kind == ProviderErrorKind.RATE_LIMITED
        assert fake_provider.generate_calls == []

    @pytest.mark.asyncio
    async def test_missing_source_is_provider_error(self, driver, fake_provider):
        with pytest.raises(ProviderError):
            await driver.transform("/uploads/does_not_exist.png", "make it snowy")
        assert fake_provider.edit_calls == []

    @pytest.mark.asyncio
    async def test_oversized_source_rejected(self, fake_provider, storage):
        big_url = await storage.save(b"x" * 2048, prefix="source")
        driver = GenerationDriver(provider=fake_provider, storage=storage, max_source_bytes=1024)

        with pytest.raises(ProviderError) as exc_info:
            await driver.transform(big_url, "make it snowy")
        assert "exceeds" in exc_info.value.message


class TestVariations:
    @pytest.mark.asyncio
    async def test_all_variations(self, driver, fake_provider, source_image_url):
        assets = await driver.create_variations(source_image_url, count=3)

        assert len(assets) == 3
        assert len({a.url for a in assets}) == 3
        assert len(fake_provider.describe_calls) == 1

    @pytest.mark.asyncio
    async def test_partial_success(self, driver, fake_provider, source_image_url):
        fake_provider.generate_errors = {2: _error()}

        assets = await driver.create_variations(source_image_url, count=3)

        assert len(assets) == 2
        assert len(fake_provider.generate_calls) == 3

    @pytest.mark.asyncio
    async def test_malformed_variation_is_skipped(self, driver, fake_provider, source_image_url):
        fake_provider.generate_payloads = {2: "abc"}

        assets = await driver.create_variations(source_image_url, count=3)

        assert len(assets) == 2
        assert len(fake_provider.generate_calls) == 3

    @pytest.mark.asyncio
    async def test_all_fail_raises_first_error(self, driver, fake_provider, source_image_url):
        fake_provider.generate_errors = {
            1: _error(ProviderErrorKind.RATE_LIMITED, "first"),
            2: _error(ProviderErrorKind.OTHER, "second"),
        }
        fake_provider.generate_error = _error(ProviderErrorKind.OTHER, "rest")

        with pytest.raises(ProviderError) as exc_info:
            await driver.create_variations(source_image_url, count=3)
        assert exc_info.value.message == "first"

    @pytest.mark.asyncio
    async def test_description_failure(self, driver, fake_provider, source_image_url):
        fake_provider.description = None

        with pytest.raises(ProviderError):
            await driver.create_variations(source_image_url, count=2)
        assert fake_provider.generate_calls == []


class FailingStorage(LocalAssetStorage):
    """Local storage whose writes always fail."""

    async def save(self, data, content_type="image/png", prefix="image"):
        raise AssetStorageError("disk full")


@pytest.mark.asyncio
async def test_storage_failure_surfaces(fake_provider, tmp_path):
    driver = GenerationDriver(provider=fake_provider, storage=FailingStorage(str(tmp_path)))

    with pytest.raises(AssetStorageError):
        await driver.generate_from_text("a fox")
