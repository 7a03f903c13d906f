"""Services for handling business logic and external integrations."""

from app.services.asset_storage import AssetStorage, AssetStorageError, get_asset_storage
from app.services.ledger import InsufficientTokensError, TokenLedger, get_ledger
from app.services.moderation import moderate
from app.services.pricing import price

__all__ = [
    "AssetStorage",
    "AssetStorageError",
    "get_asset_storage",
    "TokenLedger",
    "InsufficientTokensError",
    "get_ledger",
    "moderate",
    "price",
]
