"""Client for the external image-generation provider.

Wraps the OpenAI-compatible API (text-to-image, image edit, vision
description). Every SDK failure is translated into a ProviderError at
this boundary so callers branch on ``kind`` instead of raw SDK shapes.
"""

import base64
import binascii
import enum
import logging
from dataclasses import dataclass
from typing import Optional

import openai
from openai import AsyncOpenAI

from app.core.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_SIZE = "1024x1024"
NOT_SUPPORTED_MARKERS = ("not supported", "not available", "unsupported", "does not exist")


class ProviderErrorKind(str, enum.Enum):
    """Classification of provider failures."""

    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    OTHER = "other"


class ProviderError(Exception):
    """Tagged provider failure.

    Attributes:
        kind: RATE_LIMITED, QUOTA_EXCEEDED or OTHER
        message: Provider-side message (for logs, not for users)
        raw_status: HTTP status when there was one
        not_supported: Endpoint or model explicitly unavailable
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        raw_status: Optional[int] = None,
        not_supported: bool = False,
    ):
        self.kind = kind
        self.message = message
        self.raw_status = raw_status
        self.not_supported = not_supported
        super().__init__(f"[{kind.value}] {message}")


@dataclass(frozen=True)
class ProviderImage:
    """An image as returned by the provider: inline base64 or a URL."""

    b64_data: Optional[str] = None
    url: Optional[str] = None
    revised_prompt: Optional[str] = None

    def decode(self) -> bytes:
        """Inline bytes (only valid when b64_data is set)."""
        if not self.b64_data:
            raise ProviderError(ProviderErrorKind.OTHER, "Image has no inline data")
        try:
            return base64.b64decode(self.b64_data, validate=True)
        except binascii.Error as e:
            raise ProviderError(ProviderErrorKind.OTHER, f"Malformed image data: {e}") from e


def classify_provider_exception(exc: Exception) -> ProviderError:
    """Translate an SDK exception into a ProviderError."""
    if isinstance(exc, ProviderError):
        return exc

    message = str(exc) or exc.__class__.__name__
    not_supported = any(marker in message.lower() for marker in NOT_SUPPORTED_MARKERS)

    if isinstance(exc, openai.APITimeoutError):
        return ProviderError(ProviderErrorKind.OTHER, f"Provider timeout: {message}")

    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(ProviderErrorKind.OTHER, f"Provider connection error: {message}")

    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        code = getattr(exc, "code", None)
        if status == 402 or code == "insufficient_quota":
            kind = ProviderErrorKind.QUOTA_EXCEEDED
        elif status == 429:
            kind = ProviderErrorKind.RATE_LIMITED
        else:
            kind = ProviderErrorKind.OTHER
        return ProviderError(
            kind,
            message,
            raw_status=status,
            not_supported=not_supported or status == 404,
        )

    return ProviderError(ProviderErrorKind.OTHER, message, not_supported=not_supported)


class ImageProviderClient:
    """Explicitly constructed provider client.

    One instance is built at application startup and handed to the
    generation driver; nothing here reads global state.
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        image_model: str = "dall-e-3",
        edit_model: str = "gpt-image-1",
        vision_model: str = "gpt-4o",
        timeout: float = 120.0,
        max_retries: int = 2,
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize the provider client.

        Args:
            api_key: Provider API key
            base_url: API base URL (OpenAI-compatible)
            image_model: Model for text-to-image
            edit_model: Model for direct image edits
            vision_model: Model for image description
            timeout: Per-request timeout in seconds
            max_retries: SDK-level retries for transient failures
            client: Pre-built SDK client (tests)
        """
        self.image_model = image_model
        self.edit_model = edit_model
        self.vision_model = vision_model
        self.timeout = timeout

        if not api_key and client is None:
            logger.warning("Image provider API key not configured")

        self._client = client or AsyncOpenAI(
            api_key=api_key or "missing",
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )

    async def generate_image(
        self,
        prompt: str,
        size: str = DEFAULT_SIZE,
        quality: str = "standard",
        style: Optional[str] = None,
    ) -> ProviderImage:
        """Text-to-image.

        Raises:
            ProviderError: On any failure or an empty payload
        """
        params = {
            "model": self.image_model,
            "prompt": prompt,
            "n": 1,
            "size": size,
            "quality": quality,
        }
        if style and self.image_model.startswith("dall-e-3"):
            params["style"] = style

        try:
            response = await self._client.images.generate(**params)
        except Exception as e:
            raise classify_provider_exception(e) from e

        return self._first_image(response, "text-to-image")

    async def edit_image(
        self,
        image_bytes: bytes,
        prompt: str,
        filename: str = "image.png",
        content_type: str = "image/png",
        size: str = DEFAULT_SIZE,
        quality: str = "high",
    ) -> ProviderImage:
        """Direct image edit with a prompt.

        Raises:
            ProviderError: On any failure or an empty payload
        """
        try:
            response = await self._client.images.edit(
                model=self.edit_model,
                image=(filename, image_bytes, content_type),
                prompt=prompt,
                size=size,
                quality=quality,
            )
        except Exception as e:
            raise classify_provider_exception(e) from e

        return self._first_image(response, "image edit")

    async def describe_image(
        self,
        image_bytes: bytes,
        instruction: str,
        content_type: str = "image/png",
        max_tokens: int = 800,
    ) -> Optional[str]:
        """Vision description of an image.

        Returns:
            Description text, or None when the model returned nothing

        Raises:
            ProviderError: On any failure
        """
        encoded = base64.b64encode(image_bytes).decode()
        try:
            response = await self._client.chat.completions.create(
                model=self.vision_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": instruction},
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": f"data:{content_type};base64,{encoded}",
                                    "detail": "high",
                                },
                            },
                        ],
                    }
                ],
                max_tokens=max_tokens,
            )
        except Exception as e:
            raise classify_provider_exception(e) from e

        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content and content.strip() else None

    async def close(self) -> None:
        await self._client.close()

    @staticmethod
    def _first_image(response, operation: str) -> ProviderImage:
        data = getattr(response, "data", None)
        if not data:
            raise ProviderError(ProviderErrorKind.OTHER, f"No image data returned from {operation}")

        first = data[0]
        b64_data = getattr(first, "b64_json", None)
        url = getattr(first, "url", None)
        if not b64_data and not url:
            raise ProviderError(ProviderErrorKind.OTHER, f"No image payload returned from {operation}")

        return ProviderImage(
            b64_data=b64_data,
            url=url,
            revised_prompt=getattr(first, "revised_prompt", None),
        )


def build_provider_client(config: Settings) -> ImageProviderClient:
    """Construct a provider client from settings."""
    return ImageProviderClient(
        api_key=config.OPENAI_API_KEY,
        base_url=config.OPENAI_BASE_URL,
        image_model=config.IMAGE_MODEL,
        edit_model=config.EDIT_MODEL,
        vision_model=config.VISION_MODEL,
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        max_retries=config.PROVIDER_MAX_RETRIES,
    )
