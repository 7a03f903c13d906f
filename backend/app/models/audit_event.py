"""Audit event model for the generation pipeline."""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base, JSONType


class AuditEventKind(str, enum.Enum):
    """Pipeline stages recorded in the audit trail."""

    ATTEMPT = "attempt"
    BLOCKED = "blocked"
    INSUFFICIENT_FUNDS = "insufficient-funds"
    RATE_LIMITED = "rate-limited"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class AuditEvent(Base):
    """
    Append-only record of one pipeline transition.

    Never UPDATE or DELETE records. Retention is handled outside the
    service.
    """

    __tablename__ = "audit_events"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # No FK: events outlive the rows they describe
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    kind: Mapped[AuditEventKind] = mapped_column(
        Enum(AuditEventKind, values_callable=lambda kinds: [k.value for k in kinds]),
        nullable=False,
        index=True,
    )

    # Request identity
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Structured context (stage specific)
    detail: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Timestamp (immutable)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent(id={self.id}, kind={self.kind.value}, "
            f"user_id={self.user_id}, request_id={self.request_id})>"
        )
