"""
SQLAlchemy 2.0 ORM models for the remote store.

Five tables: newsletter_sources, newsletters, tags, newsletter_tags,
reading_queue. Source counts and unread counts are derived by query, never
stored, so they cannot drift on the server side.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


newsletter_tags = Table(
    "newsletter_tags",
    Base.metadata,
    Column("newsletter_id", ForeignKey("newsletters.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class SourceModel(Base):
    __tablename__ = "newsletter_sources"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200), default="")


class TagModel(Base):
    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(100))
    color: Mapped[str] = mapped_column(String(16), default="#6B7280")


class NewsletterModel(Base):
    __tablename__ = "newsletters"
    __table_args__ = (Index("ix_newsletters_user_status", "user_id", "is_archived", "is_read"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_liked: Mapped[bool] = mapped_column(Boolean, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    source_id: Mapped[str | None] = mapped_column(
        ForeignKey("newsletter_sources.id", ondelete="SET NULL"), nullable=True, index=True
    )
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)

    tags: Mapped[list[TagModel]] = relationship(secondary=newsletter_tags, lazy="selectin")
    queue_entry: Mapped[QueueEntryModel | None] = relationship(
        back_populates="newsletter", cascade="all, delete-orphan", passive_deletes=True
    )


class QueueEntryModel(Base):
    __tablename__ = "reading_queue"
    __table_args__ = (UniqueConstraint("user_id", "newsletter_id", name="uq_reading_queue_user_newsletter"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    newsletter_id: Mapped[str] = mapped_column(ForeignKey("newsletters.id", ondelete="CASCADE"))
    position: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)

    newsletter: Mapped[NewsletterModel] = relationship(back_populates="queue_entry", lazy="selectin")
