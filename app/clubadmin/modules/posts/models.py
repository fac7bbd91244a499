from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.clubadmin.models import Base

if TYPE_CHECKING:
    from app.clubadmin.models import User


class Post(Base):
    __tablename__ = "posts"
    __table_args__ = (
        Index("idx_posts_state", "state"),
        Index("idx_posts_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    url_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    preview_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    rendered_body: Mapped[str | None] = mapped_column(Text, nullable=True)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")  # draft, published, deleted
    featured_post: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    author: Mapped["User | None"] = relationship("User", lazy="selectin")
