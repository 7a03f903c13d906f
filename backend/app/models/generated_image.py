"""Generated image model.

One row per asset produced by a successful pipeline run. After creation
only caption, favorite flag and download counter change.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class GenerationSource(str, enum.Enum):
    """Where the prompt for a generation came from."""

    TEMPLATE = "template"
    SUGGESTION = "suggestion"
    MANUAL = "manual"


class GeneratedImage(Base):
    """Persisted artifact of a generation."""

    __tablename__ = "generated_images"
    __table_args__ = (
        UniqueConstraint("user_id", "asset_url", name="uq_generated_images_user_asset"),
    )

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # Owner
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Asset references
    asset_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_asset_url: Mapped[Optional[str]] = mapped_column(
        String(1024), nullable=True
    )  # Source image for transforms and variations

    # Generation parameters
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    style: Mapped[str] = mapped_column(String(50), nullable=False, default="realistic")
    platform: Mapped[str] = mapped_column(String(50), nullable=False, default="instagram")
    size: Mapped[str] = mapped_column(String(20), nullable=False, default="1024x1024")

    # Tracking linkage
    template_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    suggestion_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    generation_source: Mapped[Optional[GenerationSource]] = mapped_column(
        Enum(GenerationSource), nullable=True
    )

    # Mutable after creation
    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    downloads: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="images")

    def __repr__(self) -> str:
        return f"<GeneratedImage(id={self.id}, user_id={self.user_id}, url={self.asset_url})>"
