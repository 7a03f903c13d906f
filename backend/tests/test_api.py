"""API tests for generation, token and image endpoints."""

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient

from app.api.deps import (
    get_current_user_id,
    get_db,
    get_generation_coordinator,
    get_ledger_for_user,
    get_storage,
)
from app.main import app
from app.models.audit_event import AuditEventKind
from app.services.audit_trail import AuditTrail
from app.services.image_provider import ProviderError, ProviderErrorKind
from app.services.ledger import TokenLedger

USER = {"X-User-Id": "1"}


@pytest_asyncio.fixture
async def client(session_factory, coordinator, storage, locks):
    """HTTP client with database, storage and pipeline wired to test fixtures."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_ledger(
        user_id: int = Depends(get_current_user_id),
        db=Depends(get_db),
    ) -> TokenLedger:
        ledger = TokenLedger(db, locks)
        await ledger.ensure_account(user_id)
        return ledger

    original_overrides = app.dependency_overrides.copy()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_for_user] = override_ledger
    app.dependency_overrides[get_generation_coordinator] = lambda: coordinator
    app.dependency_overrides[get_storage] = lambda: storage

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides = original_overrides


class TestGenerateEndpoint:
    @pytest.mark.asyncio
    async def test_generate_success(self, client):
        response = await client.post(
            "/api/v1/generate",
            json={"prompt": "A lighthouse at dawn", "template_id": "tpl-1"},
            headers=USER,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["token_cost"] == 30
        assert data["new_balance"] == 70
        assert len(data["asset_urls"]) == 1
        assert data["images"][0]["asset_url"] == data["asset_urls"][0]
        assert data["tracking"]["template_id"] == "tpl-1"
        assert response.headers["X-Request-Id"] == data["tracking"]["request_id"]

    @pytest.mark.asyncio
    async def test_requires_identity(self, client):
        response = await client.post("/api/v1/generate", json={"prompt": "x"})
        assert response.status_code == 401

        response = await client.post(
            "/api/v1/generate", json={"prompt": "x"}, headers={"X-User-Id": "abc"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_transform_requires_source_image(self, client):
        response = await client.post(
            "/api/v1/generate",
            json={"mode": "transform", "prompt": "make it snowy"},
            headers=USER,
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, client):
        response = await client.post(
            "/api/v1/generate",
            json={"prompt": "A lighthouse", "template_cost": 150},
            headers=USER,
        )

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["error"] == "insufficient-funds"
        assert detail["extra"] == {"required": 150, "available": 100, "shortfall": 50}
        assert detail["request_id"]

    @pytest.mark.asyncio
    async def test_blocked(self, client):
        response = await client.post(
            "/api/v1/generate", json={"prompt": "a terrorist poster"}, headers=USER
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "blocked"

    @pytest.mark.asyncio
    async def test_provider_rate_limit_is_refunded(self, client, fake_provider):
        fake_provider.generate_error = ProviderError(ProviderErrorKind.RATE_LIMITED, "429", 429)

        response = await client.post(
            "/api/v1/generate", json={"prompt": "A lighthouse"}, headers=USER
        )

        assert response.status_code == 429
        detail = response.json()["detail"]
        assert detail["error"] == "provider-error"
        assert detail["extra"] == {"reason": "rate_limited", "refunded": True}

        balance = await client.get("/api/v1/tokens/balance", headers=USER)
        assert balance.json()["tokens"] == 100

    @pytest.mark.asyncio
    async def test_user_rate_limit_sets_retry_after(self, client, session_factory):
        await client.get("/api/v1/tokens/balance", headers=USER)
        async with session_factory() as session:
            audit = AuditTrail(session)
            for i in range(20):
                await audit.record(AuditEventKind.SUCCEEDED, 1, f"prior-{i}", "f")

        response = await client.post(
            "/api/v1/generate", json={"prompt": "A lighthouse"}, headers=USER
        )

        assert response.status_code == 429
        assert response.json()["detail"]["error"] == "rate-limited"
        assert response.headers["Retry-After"] == "3600"


class TestTokenEndpoints:
    @pytest.mark.asyncio
    async def test_balance_opens_account(self, client):
        response = await client.get("/api/v1/tokens/balance", headers=USER)

        assert response.status_code == 200
        assert response.json() == {"tokens": 100, "is_low_balance": False}

    @pytest.mark.asyncio
    async def test_history_after_generation(self, client):
        await client.post("/api/v1/generate", json={"prompt": "A lighthouse"}, headers=USER)

        response = await client.get("/api/v1/tokens/history", headers=USER)

        data = response.json()
        assert data["total"] == 2
        assert [t["kind"] for t in data["transactions"]] == ["USED", "EARNED"]
        assert data["transactions"][0]["amount"] == -30

        used_only = await client.get("/api/v1/tokens/history?kind=USED", headers=USER)
        assert used_only.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_estimate_matches_pipeline_price(self, client):
        response = await client.post(
            "/api/v1/tokens/estimate",
            json={"style": "fantasy", "platform": "tiktok"},
            headers=USER,
        )

        data = response.json()
        assert data["estimated_cost"] == 47
        assert data["breakdown"]["method"] == "multiplier"
        assert data["can_afford"] is True
        assert data["current_balance"] == 100

    @pytest.mark.asyncio
    async def test_check(self, client):
        response = await client.get("/api/v1/tokens/check/150", headers=USER)
        assert response.json() == {
            "has_sufficient": False,
            "required": 150,
            "available": 100,
            "shortfall": 50,
        }

        response = await client.get("/api/v1/tokens/check/0", headers=USER)
        assert response.status_code == 400


class TestImageEndpoints:
    @pytest_asyncio.fixture
    async def image_id(self, client) -> int:
        response = await client.post(
            "/api/v1/generate", json={"prompt": "A lighthouse"}, headers=USER
        )
        return response.json()["images"][0]["id"]

    @pytest.mark.asyncio
    async def test_list_and_get(self, client, image_id):
        listing = await client.get("/api/v1/images", headers=USER)
        assert listing.json()["total"] == 1

        response = await client.get(f"/api/v1/images/{image_id}", headers=USER)
        assert response.status_code == 200
        assert response.json()["prompt"] == "A lighthouse"

        other_user = await client.get(f"/api/v1/images/{image_id}", headers={"X-User-Id": "2"})
        assert other_user.status_code == 404

    @pytest.mark.asyncio
    async def test_caption_is_moderated(self, client, image_id):
        response = await client.patch(
            f"/api/v1/images/{image_id}",
            json={"caption": "<b>Sunrise</b> over the bay"},
            headers=USER,
        )
        assert response.json()["caption"] == "Sunrise over the bay"

        blocked = await client.patch(
            f"/api/v1/images/{image_id}",
            json={"caption": "nazi rally"},
            headers=USER,
        )
        assert blocked.status_code == 400

    @pytest.mark.asyncio
    async def test_favorite_and_download(self, client, image_id):
        favorite = await client.post(f"/api/v1/images/{image_id}/favorite", headers=USER)
        assert favorite.json()["is_favorite"] is True

        favorites = await client.get("/api/v1/images?favorites_only=true", headers=USER)
        assert favorites.json()["total"] == 1

        download = await client.post(f"/api/v1/images/{image_id}/download", headers=USER)
        assert download.json()["downloads"] == 1

    @pytest.mark.asyncio
    async def test_unknown_image(self, client):
        response = await client.post("/api/v1/images/999/favorite", headers=USER)
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_health():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
