"""User model.

Users are created by the identity provider; this service only stores
the id it is handed and the relationships hanging off it.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class User(Base):
    """User account as known to the generation pipeline."""

    __tablename__ = "users"

    # Primary key (assigned by the identity provider)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Relationships
    token_balance: Mapped["TokenBalance"] = relationship(
        "TokenBalance", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    transactions: Mapped[list["TokenTransaction"]] = relationship(
        "TokenTransaction", back_populates="user", cascade="all, delete-orphan"
    )
    images: Mapped[list["GeneratedImage"]] = relationship(
        "GeneratedImage", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
