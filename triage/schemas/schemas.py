"""
Pydantic v2 schemas.

Records are frozen: the cache shares them between the live view and rollback
snapshots, so a change always produces a new record via ``with_fields``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)


# ── Domain records ──────────────────────────────────────────
class Tag(_Record):
    id: str
    name: str = ""
    color: str = "#6B7280"


class NewsletterRecord(_Record):
    id: str
    title: str = ""
    is_read: bool = False
    is_liked: bool = False
    is_archived: bool = False
    source_id: str | None = None
    received_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    tags: tuple[Tag, ...] = ()

    @field_validator("tags", mode="before")
    @classmethod
    def dedupe_tags(cls, v):
        seen: dict[str, object] = {}
        for tag in v or ():
            tag_id = tag["id"] if isinstance(tag, dict) else tag.id
            seen.setdefault(tag_id, tag)
        return tuple(seen.values())

    @property
    def counts_as_unread(self) -> bool:
        return not self.is_read and not self.is_archived

    @property
    def tag_ids(self) -> frozenset[str]:
        return frozenset(t.id for t in self.tags)

    def with_fields(self, **changes) -> NewsletterRecord:
        return self.model_copy(update=changes)


class SourceRecord(_Record):
    id: str
    name: str = ""
    newsletter_count: int = Field(default=0, ge=0)

    def with_count(self, count: int) -> SourceRecord:
        return self.model_copy(update={"newsletter_count": max(0, count)})


class UnreadCounts(_Record):
    total: int = Field(default=0, ge=0)
    by_source: dict[str, int] = Field(default_factory=dict)

    def for_source(self, source_id: str) -> int:
        return self.by_source.get(source_id, 0)


class ReadingQueueEntry(_Record):
    id: str
    newsletter_id: str
    position: int
    newsletter: NewsletterRecord | None = None

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.position, self.id)


class PositionUpdate(_Record):
    id: str
    position: int = Field(ge=0)


# ── API request/response bodies ─────────────────────────────


class NewsletterFieldsUpdate(BaseModel):
    is_read: bool | None = None
    is_liked: bool | None = None
    is_archived: bool | None = None

    def as_fields(self) -> dict[str, bool]:
        return self.model_dump(exclude_none=True)


class BulkFieldsUpdate(BaseModel):
    ids: list[str] = Field(min_length=1)
    fields: NewsletterFieldsUpdate


class BulkDeleteRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class TagAssignment(BaseModel):
    tag_ids: list[str] = Field(default_factory=list)


class QueueInsertRequest(BaseModel):
    newsletter_id: str
    position: int = Field(ge=0)


class QueueBulkInsertRequest(BaseModel):
    newsletter_ids: list[str] = Field(min_length=1)
    position: int = Field(ge=0)


class ReorderRequest(BaseModel):
    updates: list[PositionUpdate] = Field(min_length=1)


class UnreadCountResponse(BaseModel):
    count: int


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str = "0.1.0"
    environment: str
    database: str = "connected"
