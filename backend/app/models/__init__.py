"""SQLAlchemy models for ImageForge."""

from app.models.audit_event import AuditEvent, AuditEventKind
from app.models.generated_image import GeneratedImage, GenerationSource
from app.models.token_balance import TokenBalance
from app.models.token_transaction import TokenTransaction, TransactionType
from app.models.user import User

__all__ = [
    "User",
    "TokenBalance",
    "TokenTransaction",
    "TransactionType",
    "GeneratedImage",
    "GenerationSource",
    "AuditEvent",
    "AuditEventKind",
]
