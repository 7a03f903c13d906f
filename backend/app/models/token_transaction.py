"""Token transaction model for balance reconciliation."""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class TransactionType(str, enum.Enum):
    """Transaction kinds for token operations."""

    USED = "USED"  # Spent on a generation
    EARNED = "EARNED"  # Refunds, welcome grants, promotions
    PURCHASED = "PURCHASED"  # Paid top-up


class TokenTransaction(Base):
    """
    Immutable audit log for all token operations.

    This table is append-only. Never UPDATE or DELETE records.
    Summing ``amount`` per user reconciles to the stored balance.
    """

    __tablename__ = "token_transactions"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # Foreign key to user
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Transaction details
    kind: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(
        Integer, nullable=False
    )  # Negative when used, positive when earned or purchased
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    # Timestamp (immutable)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="transactions")

    def __repr__(self) -> str:
        return f"<TokenTransaction(id={self.id}, kind={self.kind.value}, amount={self.amount})>"
