"""Durable storage for generated and uploaded image assets.

Two backends share one interface:
- LocalAssetStorage: files under a public uploads directory
- R2AssetStorage: Cloudflare R2 via boto3 (S3 API)

Both write under collision-resistant names and only return a reference
after the bytes are durably written.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from uuid import uuid4

import boto3
import httpx
from botocore.client import Config
from botocore.exceptions import ClientError, EndpointConnectionError

from app.core.config import settings

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


class AssetStorageError(Exception):
    """Raised when a storage operation fails."""

    pass


def generate_asset_name(prefix: str, content_type: str = "image/png") -> str:
    """Collision-resistant object name.

    Format: {prefix}_{timestamp}_{uuid4 hex}.{ext}
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    extension = CONTENT_TYPE_EXTENSIONS.get(content_type, "png")
    return f"{prefix}_{timestamp}_{uuid4().hex}.{extension}"


def guess_content_type(reference: str) -> str:
    """MIME type from a file name or URL."""
    lowered = reference.lower().split("?", 1)[0]
    if lowered.endswith((".jpg", ".jpeg")):
        return "image/jpeg"
    if lowered.endswith(".webp"):
        return "image/webp"
    return "image/png"


class AssetStorage(ABC):
    """Interface for asset backends."""

    @abstractmethod
    async def save(
        self, data: bytes, content_type: str = "image/png", prefix: str = "image"
    ) -> str:
        """Store bytes and return the canonical asset URL."""

    @abstractmethod
    async def read(self, url: str) -> bytes:
        """Read bytes of an asset this backend stored."""

    @abstractmethod
    def owns(self, url: str) -> bool:
        """Whether ``url`` points into this backend."""

    async def load(self, url: str, timeout: float = 60.0) -> bytes:
        """Read an owned asset, or download any other URL."""
        if self.owns(url):
            return await self.read(url)
        return await download_bytes(url, timeout=timeout)


class LocalAssetStorage(AssetStorage):
    """Stores assets on the local filesystem under a public prefix."""

    def __init__(self, root_dir: str, url_prefix: str = "/uploads"):
        self.root_dir = Path(root_dir)
        self.url_prefix = url_prefix.rstrip("/")

    async def save(
        self, data: bytes, content_type: str = "image/png", prefix: str = "image"
    ) -> str:
        if not data:
            raise AssetStorageError("Refusing to store an empty asset")

        filename = generate_asset_name(prefix, content_type)
        path = self.root_dir / filename

        try:
            await asyncio.to_thread(self._write_durably, path, data)
        except OSError as e:
            raise AssetStorageError(f"Failed to write asset {filename}: {e}") from e

        logger.debug(f"Stored asset {filename} ({len(data)} bytes)")
        return f"{self.url_prefix}/{filename}"

    async def read(self, url: str) -> bytes:
        if not self.owns(url):
            raise AssetStorageError(f"Not a local asset: {url}")

        filename = url[len(self.url_prefix) + 1:]
        path = (self.root_dir / filename).resolve()
        if self.root_dir.resolve() not in path.parents:
            raise AssetStorageError(f"Asset path escapes storage root: {url}")

        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise AssetStorageError(f"Failed to read asset {url}: {e}") from e

    def owns(self, url: str) -> bool:
        return url.startswith(f"{self.url_prefix}/")

    def _write_durably(self, path: Path, data: bytes) -> None:
        self.root_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)


class R2AssetStorage(AssetStorage):
    """Stores assets in Cloudflare R2."""

    def __init__(
        self,
        bucket_name: str,
        public_url: str,
        endpoint_url: str,
        access_key_id: str,
        secret_access_key: str,
        max_retries: int = 3,
    ):
        self.bucket_name = bucket_name
        self.public_url = public_url.rstrip("/")
        self.max_retries = max_retries
        self._client_kwargs = {
            "endpoint_url": endpoint_url,
            "aws_access_key_id": access_key_id,
            "aws_secret_access_key": secret_access_key,
        }
        self._client = None

    @property
    def client(self):
        """Get or create boto3 S3 client for R2."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                config=Config(signature_version="s3v4"),
                region_name="auto",  # R2 uses 'auto' region
                **self._client_kwargs,
            )
        return self._client

    async def save(
        self, data: bytes, content_type: str = "image/png", prefix: str = "image"
    ) -> str:
        """Upload with retry and exponential backoff (1s, 2s, 4s)."""
        if not data:
            raise AssetStorageError("Refusing to store an empty asset")

        key = f"generated/{generate_asset_name(prefix, content_type)}"

        last_error = None
        for attempt in range(self.max_retries):
            try:
                # Fresh BytesIO for each retry attempt
                file_obj = BytesIO(data)
                await asyncio.to_thread(
                    self.client.upload_fileobj,
                    file_obj,
                    self.bucket_name,
                    key,
                    ExtraArgs={"ContentType": content_type},
                )
                return f"{self.public_url}/{key}"

            except (ClientError, EndpointConnectionError) as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2**attempt)

        raise AssetStorageError(
            f"Failed to upload asset to R2 after {self.max_retries} attempts: {last_error}"
        )

    async def read(self, url: str) -> bytes:
        if not self.owns(url):
            raise AssetStorageError(f"Not an R2 asset: {url}")

        key = url[len(self.public_url) + 1:]
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket_name, Key=key
            )
            return await asyncio.to_thread(response["Body"].read)
        except (ClientError, EndpointConnectionError) as e:
            raise AssetStorageError(f"Failed to read asset from R2: {e}") from e

    def owns(self, url: str) -> bool:
        return bool(self.public_url) and url.startswith(f"{self.public_url}/")


async def download_bytes(url: str, timeout: float = 60.0) -> bytes:
    """Download a remote asset.

    Raises:
        AssetStorageError: On HTTP errors or an empty body
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise AssetStorageError(f"Failed to fetch asset: {e}") from e

    if not response.content:
        raise AssetStorageError("Fetched asset is empty")
    return response.content


@lru_cache
def get_asset_storage() -> AssetStorage:
    """
    Get the configured asset storage backend (cached).

    Returns:
        AssetStorage instance
    """
    if settings.ASSET_STORAGE_BACKEND == "r2":
        return R2AssetStorage(
            bucket_name=settings.R2_BUCKET_NAME,
            public_url=settings.R2_PUBLIC_URL,
            endpoint_url=settings.R2_ENDPOINT_URL,
            access_key_id=settings.R2_ACCESS_KEY_ID,
            secret_access_key=settings.R2_SECRET_ACCESS_KEY,
        )
    return LocalAssetStorage(
        root_dir=settings.LOCAL_UPLOADS_DIR,
        url_prefix=settings.LOCAL_UPLOADS_URL_PREFIX,
    )
