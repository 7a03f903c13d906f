"""Token balance model for user token tracking."""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class TokenBalance(Base):
    """
    Token balance for each user.

    Owned by the ledger: only mutated together with a TokenTransaction
    row inside one database transaction.
    """

    __tablename__ = "token_balance"
    __table_args__ = (CheckConstraint("tokens >= 0", name="ck_token_balance_non_negative"),)

    # Primary key (one-to-one with user)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )

    tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="token_balance")

    def __repr__(self) -> str:
        return f"<TokenBalance(user_id={self.user_id}, tokens={self.tokens})>"
