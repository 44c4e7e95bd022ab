"""
Remote store backed by SQLAlchemy (async).

This is what the HTTP API serves, and what tests use as a real backend.
Every write runs in one transaction; ``reorder_queue`` updates all rows in a
single commit or none. Database errors surface as RemoteWriteError /
RemoteReadError, unknown ids, and ids owned by another user, as NotFoundError.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from triage.core.config import Settings
from triage.core.errors import NotFoundError, RemoteReadError, RemoteWriteError, ValidationError
from triage.core.logging import get_logger
from triage.models.database import create_schema, make_engine, make_sessionmaker, session_scope
from triage.models.models import (
    NewsletterModel,
    QueueEntryModel,
    SourceModel,
    TagModel,
    newsletter_tags,
)
from triage.schemas.schemas import (
    NewsletterRecord,
    PositionUpdate,
    ReadingQueueEntry,
    SourceRecord,
)
from triage.services.remote_store import check_fields

logger = get_logger(__name__)


def _queue_entry(row: QueueEntryModel) -> ReadingQueueEntry:
    return ReadingQueueEntry(
        id=row.id,
        newsletter_id=row.newsletter_id,
        position=row.position,
        newsletter=NewsletterRecord.model_validate(row.newsletter) if row.newsletter else None,
    )


class SqlRemoteStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
        *,
        max_queue_size: int = 100,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._engine = engine
        self._max_queue_size = max_queue_size

    @classmethod
    def from_settings(cls, settings: Settings) -> SqlRemoteStore:
        engine = make_engine(settings)
        return cls(make_sessionmaker(engine), engine, max_queue_size=settings.queue_max_size)

    async def create_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("SqlRemoteStore was built without an engine")
        await create_schema(self._engine)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """A committing session for seeding and administration."""
        async with session_scope(self._sessionmaker) as session:
            yield session

    # ------------------------------------------------------------------ #
    # Transaction helpers
    # ------------------------------------------------------------------ #

    @asynccontextmanager
    async def _write(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with session_scope(self._sessionmaker) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("remote_write_failed", operation=operation, error=str(e))
            raise RemoteWriteError(f"{operation} failed: {e}", operation=operation) from e

    @asynccontextmanager
    async def _read(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("remote_read_failed", operation=operation, error=str(e))
            raise RemoteReadError(f"{operation} failed: {e}") from e

    # ------------------------------------------------------------------ #
    # Newsletters
    # ------------------------------------------------------------------ #

    async def read_newsletters(self, user_id: str) -> list[NewsletterRecord]:
        async with self._read("read_newsletters") as session:
            rows = await session.scalars(
                select(NewsletterModel)
                .where(NewsletterModel.user_id == user_id)
                .order_by(NewsletterModel.received_at.desc(), NewsletterModel.id)
            )
            return [NewsletterRecord.model_validate(row) for row in rows]

    async def write_newsletter_fields(
        self, user_id: str, newsletter_id: str, fields: Mapping[str, bool]
    ) -> None:
        values = check_fields(fields)
        async with self._write("write_newsletter_fields") as session:
            result = await session.execute(
                update(NewsletterModel)
                .where(NewsletterModel.id == newsletter_id, NewsletterModel.user_id == user_id)
                .values(**values, updated_at=datetime.now(UTC))
            )
            if result.rowcount == 0:
                raise NotFoundError("newsletter", newsletter_id)

    async def write_newsletter_fields_bulk(
        self, user_id: str, newsletter_ids: Sequence[str], fields: Mapping[str, bool]
    ) -> None:
        values = check_fields(fields)
        if not newsletter_ids:
            return
        async with self._write("write_newsletter_fields_bulk") as session:
            result = await session.execute(
                update(NewsletterModel)
                .where(NewsletterModel.id.in_(list(newsletter_ids)), NewsletterModel.user_id == user_id)
                .values(**values, updated_at=datetime.now(UTC))
            )
        logger.info("newsletters_bulk_updated", requested=len(newsletter_ids), updated=result.rowcount)

    async def _delete_many(self, session: AsyncSession, user_id: str, ids: list[str]) -> int:
        owned = list(
            await session.scalars(
                select(NewsletterModel.id).where(
                    NewsletterModel.id.in_(ids), NewsletterModel.user_id == user_id
                )
            )
        )
        if not owned:
            return 0
        await session.execute(delete(QueueEntryModel).where(QueueEntryModel.newsletter_id.in_(owned)))
        await session.execute(delete(newsletter_tags).where(newsletter_tags.c.newsletter_id.in_(owned)))
        result = await session.execute(delete(NewsletterModel).where(NewsletterModel.id.in_(owned)))
        return result.rowcount

    async def delete_newsletter(self, user_id: str, newsletter_id: str) -> None:
        async with self._write("delete_newsletter") as session:
            if await self._delete_many(session, user_id, [newsletter_id]) == 0:
                raise NotFoundError("newsletter", newsletter_id)

    async def delete_newsletters(self, user_id: str, newsletter_ids: Sequence[str]) -> None:
        if not newsletter_ids:
            return
        async with self._write("delete_newsletters") as session:
            deleted = await self._delete_many(session, user_id, list(newsletter_ids))
        logger.info("newsletters_bulk_deleted", requested=len(newsletter_ids), deleted=deleted)

    async def set_newsletter_tags(self, user_id: str, newsletter_id: str, tag_ids: Sequence[str]) -> None:
        async with self._write("set_newsletter_tags") as session:
            newsletter = await session.get(NewsletterModel, newsletter_id)
            if newsletter is None or newsletter.user_id != user_id:
                raise NotFoundError("newsletter", newsletter_id)
            wanted = list(dict.fromkeys(tag_ids))
            tags = []
            if wanted:
                rows = await session.scalars(
                    select(TagModel).where(TagModel.id.in_(wanted), TagModel.user_id == user_id)
                )
                tags = list(rows)
                missing = set(wanted) - {t.id for t in tags}
                if missing:
                    raise NotFoundError("tag", sorted(missing)[0])
            newsletter.tags = tags
            newsletter.updated_at = datetime.now(UTC)

    # ------------------------------------------------------------------ #
    # Aggregates
    # ------------------------------------------------------------------ #

    async def read_source_counts(self, user_id: str) -> list[SourceRecord]:
        async with self._read("read_source_counts") as session:
            rows = await session.execute(
                select(SourceModel.id, SourceModel.name, func.count(NewsletterModel.id))
                .outerjoin(
                    NewsletterModel,
                    and_(
                        NewsletterModel.source_id == SourceModel.id,
                        NewsletterModel.is_archived.is_(False),
                    ),
                )
                .where(SourceModel.user_id == user_id)
                .group_by(SourceModel.id, SourceModel.name)
                .order_by(SourceModel.name, SourceModel.id)
            )
            return [
                SourceRecord(id=source_id, name=name, newsletter_count=count)
                for source_id, name, count in rows
            ]

    def _unread(self, user_id: str):
        return and_(
            NewsletterModel.user_id == user_id,
            NewsletterModel.is_read.is_(False),
            NewsletterModel.is_archived.is_(False),
        )

    async def read_unread_count(self, user_id: str) -> int:
        async with self._read("read_unread_count") as session:
            count = await session.scalar(
                select(func.count(NewsletterModel.id)).where(self._unread(user_id))
            )
            return int(count or 0)

    async def read_unread_count_by_source(self, user_id: str) -> dict[str, int]:
        async with self._read("read_unread_count_by_source") as session:
            rows = await session.execute(
                select(NewsletterModel.source_id, func.count(NewsletterModel.id))
                .where(self._unread(user_id), NewsletterModel.source_id.is_not(None))
                .group_by(NewsletterModel.source_id)
            )
            return {source_id: count for source_id, count in rows}

    # ------------------------------------------------------------------ #
    # Reading queue
    # ------------------------------------------------------------------ #

    async def read_queue(self, user_id: str) -> list[ReadingQueueEntry]:
        async with self._read("read_queue") as session:
            rows = await session.scalars(
                select(QueueEntryModel)
                .where(QueueEntryModel.user_id == user_id)
                .order_by(QueueEntryModel.position, QueueEntryModel.id)
            )
            return [_queue_entry(row) for row in rows]

    async def _enqueue(
        self, session: AsyncSession, user_id: str, newsletter_ids: Sequence[str], position: int
    ) -> list[ReadingQueueEntry]:
        """Queue newsletters from ``position`` on; already queued ones are returned as they are."""
        if position < 0:
            raise ValidationError("Queue position must be non-negative", field="position")
        wanted = list(dict.fromkeys(newsletter_ids))
        newsletters = {
            row.id: row
            for row in await session.scalars(
                select(NewsletterModel).where(
                    NewsletterModel.id.in_(wanted), NewsletterModel.user_id == user_id
                )
            )
        }
        missing = [i for i in wanted if i not in newsletters]
        if missing:
            raise NotFoundError("newsletter", missing[0])
        archived = [i for i in wanted if newsletters[i].is_archived]
        if archived:
            raise ValidationError(
                f"Newsletter {archived[0]} is archived and cannot be queued", field="newsletter_id"
            )

        queued = {
            row.newsletter_id: row
            for row in await session.scalars(
                select(QueueEntryModel).where(QueueEntryModel.user_id == user_id)
            )
        }
        fresh = [i for i in wanted if i not in queued]
        if len(queued) + len(fresh) > self._max_queue_size:
            raise ValidationError(
                f"Reading queue is limited to {self._max_queue_size} entries", field="newsletter_ids"
            )

        entries = []
        for newsletter_id in wanted:
            row = queued.get(newsletter_id)
            if row is None:
                row = QueueEntryModel(user_id=user_id, newsletter_id=newsletter_id, position=position)
                position += 1
                session.add(row)
                await session.flush()
            entries.append(
                ReadingQueueEntry(
                    id=row.id,
                    newsletter_id=newsletter_id,
                    position=row.position,
                    newsletter=NewsletterRecord.model_validate(newsletters[newsletter_id]),
                )
            )
        return entries

    async def insert_queue_entry(
        self, user_id: str, newsletter_id: str, position: int
    ) -> ReadingQueueEntry:
        try:
            async with self._write("insert_queue_entry") as session:
                entries = await self._enqueue(session, user_id, [newsletter_id], position)
                return entries[0]
        except RemoteWriteError as e:
            # Lost a race with a concurrent insert of the same newsletter
            if not isinstance(e.__cause__, IntegrityError):
                raise
            async with self._read("insert_queue_entry") as session:
                existing = await session.scalar(
                    select(QueueEntryModel).where(
                        QueueEntryModel.user_id == user_id,
                        QueueEntryModel.newsletter_id == newsletter_id,
                    )
                )
                if existing is None:
                    raise
                return _queue_entry(existing)

    async def insert_queue_entries(
        self, user_id: str, newsletter_ids: Sequence[str], position: int
    ) -> list[ReadingQueueEntry]:
        if not newsletter_ids:
            return []
        async with self._write("insert_queue_entries") as session:
            entries = await self._enqueue(session, user_id, newsletter_ids, position)
        logger.info("queue_bulk_added", requested=len(newsletter_ids), entries=len(entries))
        return entries

    async def delete_queue_entry(self, user_id: str, entry_id: str) -> None:
        async with self._write("delete_queue_entry") as session:
            result = await session.execute(
                delete(QueueEntryModel).where(
                    QueueEntryModel.id == entry_id, QueueEntryModel.user_id == user_id
                )
            )
            if result.rowcount == 0:
                raise NotFoundError("queue entry", entry_id)

    async def delete_queue_entries(self, user_id: str, entry_ids: Sequence[str]) -> None:
        if not entry_ids:
            return
        async with self._write("delete_queue_entries") as session:
            result = await session.execute(
                delete(QueueEntryModel).where(
                    QueueEntryModel.id.in_(list(entry_ids)), QueueEntryModel.user_id == user_id
                )
            )
        logger.info("queue_bulk_removed", requested=len(entry_ids), deleted=result.rowcount)

    async def clear_queue(self, user_id: str) -> None:
        async with self._write("clear_queue") as session:
            result = await session.execute(
                delete(QueueEntryModel).where(QueueEntryModel.user_id == user_id)
            )
        logger.info("queue_cleared", deleted=result.rowcount)

    async def reorder_queue(self, user_id: str, updates: Sequence[PositionUpdate]) -> None:
        if not updates:
            return
        positions = {u.id: u.position for u in updates}
        if len(positions) != len(updates):
            raise ValidationError("Duplicate queue entry ids in reorder", field="updates")
        if len(set(positions.values())) != len(positions):
            raise ValidationError("Queue positions must be distinct", field="updates")

        async with self._write("reorder_queue") as session:
            rows = list(
                await session.scalars(
                    select(QueueEntryModel).where(
                        QueueEntryModel.id.in_(list(positions)), QueueEntryModel.user_id == user_id
                    )
                )
            )
            missing = set(positions) - {row.id for row in rows}
            if missing:
                raise NotFoundError("queue entry", sorted(missing)[0])
            for row in rows:
                row.position = positions[row.id]
        logger.info("queue_reordered", entries=len(positions))
