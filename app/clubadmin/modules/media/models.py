from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.clubadmin.models import Base

if TYPE_CHECKING:
    from app.clubadmin.models import User


class Image(Base):
    __tablename__ = "images"
    __table_args__ = (
        Index("idx_images_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    alt_text: Mapped[str | None] = mapped_column(String(255), nullable=True)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Storage keys (not URLs); resolved with Storage.url_for when rendering
    raw_image_path: Mapped[str] = mapped_column(String(512), nullable=False)
    optimized_image_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    thumbnail_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # unprocessed, processing, completed, failed
    processing_state: Mapped[str] = mapped_column(String(16), nullable=False, default="unprocessed")
    upload_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    uploader: Mapped["User | None"] = relationship("User", lazy="selectin")
