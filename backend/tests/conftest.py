"""Pytest configuration and shared fixtures for backend tests."""

import base64
import os
import sys
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

# Add parent directory to path for app module discovery
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment BEFORE importing app modules
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./imageforge_test.db")
os.environ.setdefault("ASSET_STORAGE_BACKEND", "local")

from app.core.database import Base
from app.models.user import User
from app.services.asset_storage import LocalAssetStorage
from app.services.generation_coordinator import GenerationCoordinator
from app.services.generation_driver import GenerationDriver
from app.services.image_provider import ProviderError, ProviderImage
from app.services.ledger import TokenLedger, UserLockRegistry

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"imageforge-test-pixels"
PNG_B64 = base64.b64encode(PNG_BYTES).decode()


class FakeImageProvider:
    """In-memory stand-in for ImageProviderClient.

    ``generate_errors`` maps 1-based call numbers to the error that call
    raises; ``generate_error`` applies to every call without an entry.
    ``generate_payloads`` overrides the base64 data a given call returns.
    """

    def __init__(self):
        self.generate_calls: list[dict] = []
        self.edit_calls: list[dict] = []
        self.describe_calls: list[dict] = []
        self.generate_errors: dict[int, ProviderError] = {}
        self.generate_payloads: dict[int, str] = {}
        self.generate_error: Optional[ProviderError] = None
        self.edit_error: Optional[ProviderError] = None
        self.describe_error: Optional[ProviderError] = None
        self.description: Optional[str] = "A ginger cat asleep on a blue sofa"
        self.closed = False

    async def generate_image(self, prompt, size="1024x1024", quality="standard", style=None):
        self.generate_calls.append(
            {"prompt": prompt, "size": size, "quality": quality, "style": style}
        )
        error = self.generate_errors.get(len(self.generate_calls), self.generate_error)
        if error:
            raise error
        return ProviderImage(b64_data=self.generate_payloads.get(len(self.generate_calls), PNG_B64))

    async def edit_image(
        self,
        image_bytes,
        prompt,
        filename="image.png",
        content_type="image/png",
        size="1024x1024",
        quality="high",
    ):
        self.edit_calls.append({"prompt": prompt, "filename": filename, "size": size})
        if self.edit_error:
            raise self.edit_error
        return ProviderImage(b64_data=PNG_B64)

    async def describe_image(self, image_bytes, instruction, content_type="image/png", max_tokens=800):
        self.describe_calls.append({"instruction": instruction, "max_tokens": max_tokens})
        if self.describe_error:
            raise self.describe_error
        return self.description

    async def close(self):
        self.closed = True


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test (avoids event loop conflicts)."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        future=True,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks():
    """Lock registry bound to the current test's event loop."""
    return UserLockRegistry()


@pytest.fixture
def ledger(db_session, locks):
    return TokenLedger(db_session, locks)


@pytest.fixture
def storage(tmp_path):
    return LocalAssetStorage(str(tmp_path / "uploads"), url_prefix="/uploads")


@pytest.fixture
def fake_provider():
    return FakeImageProvider()


@pytest.fixture
def driver(fake_provider, storage):
    return GenerationDriver(provider=fake_provider, storage=storage, max_source_bytes=1024)


@pytest.fixture
def coordinator(session_factory, driver, storage, locks):
    return GenerationCoordinator(
        session_factory=session_factory,
        driver=driver,
        storage=storage,
        rate_limit=20,
        rate_window_minutes=60,
        locks=locks,
    )


@pytest.fixture
def make_user(db_session, locks):
    """Factory creating a user with an opened token account."""

    async def _make_user(user_id: int = 1, tokens: int = 100) -> User:
        await TokenLedger(db_session, locks).ensure_account(user_id, starting_tokens=tokens)
        return await db_session.get(User, user_id)

    return _make_user


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest_asyncio.fixture
async def source_image_url(storage) -> str:
    """A source image already held by local storage."""
    return await storage.save(PNG_BYTES, prefix="source")

