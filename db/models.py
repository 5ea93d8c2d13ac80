from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

TASK_TYPES = ("t2v", "i2v")
TASK_STATUSES = ("pending", "queued", "processing", "completed", "failed")
R2_STATUSES = ("pending", "uploading", "completed", "failed")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class VideoTaskDefinition(Base):
    __tablename__ = "video_generation_task_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(Text, index=True)
    task_type: Mapped[str] = mapped_column(Text)
    model: Mapped[str] = mapped_column(Text, default="kling")
    high_quality: Mapped[bool] = mapped_column(Boolean, default=False)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    negative_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    aspect_ratio: Mapped[str | None] = mapped_column(Text, nullable=True)
    cfg: Mapped[float | None] = mapped_column(Float, nullable=True)
    camera_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    camera_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    credits: Mapped[int] = mapped_column(Integer)
    start_img_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_img_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_params: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    statuses: Mapped[list["VideoTaskStatus"]] = relationship(back_populates="definition")

    __table_args__ = (
        CheckConstraint("task_type in ('t2v', 'i2v')", name="ck_video_task_definition_task_type"),
        CheckConstraint("cfg is null or (cfg >= 0 and cfg <= 1)", name="ck_video_task_definition_cfg"),
    )


class VideoTaskStatus(Base):
    __tablename__ = "video_generation_task_statuses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("video_generation_task_definitions.id"),
        index=True,
    )
    external_task_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    status: Mapped[str] = mapped_column(Text, default="pending")
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    r2_status: Mapped[str | None] = mapped_column(Text, default="pending", nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    # Stamped on every reconcile attempt; never counts as a status change.
    last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    definition: Mapped["VideoTaskDefinition"] = relationship(back_populates="statuses")

    __table_args__ = (
        CheckConstraint(
            "status in ('pending', 'queued', 'processing', 'completed', 'failed')",
            name="ck_video_task_status_status",
        ),
        CheckConstraint(
            "r2_status is null or r2_status in ('pending', 'uploading', 'completed', 'failed')",
            name="ck_video_task_status_r2_status",
        ),
    )


class UserCredits(Base):
    __tablename__ = "user_credits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, unique=True)
    credits_balance: Mapped[int] = mapped_column(Integer, default=0)
    total_credits_purchased: Mapped[int] = mapped_column(Integer, default=0)
    total_credits_used: Mapped[int] = mapped_column(Integer, default=0)
    level: Mapped[str] = mapped_column(Text, default="free")
    last_purchase_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class UserFavorite(Base):
    __tablename__ = "user_favorites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, index=True)
    task_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("video_generation_task_definitions.id"),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "task_id", name="uq_user_favorite_user_task"),
    )
