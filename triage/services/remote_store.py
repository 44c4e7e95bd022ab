"""
Remote store contract.

The engine only ever talks to persistence through this protocol. Adapters
raise ``RemoteWriteError`` (or ``NotFoundError``) when a write fails and
``RemoteReadError`` when a read fails; timeouts are theirs to enforce.
``reorder_queue`` must be all-or-nothing. Every write is scoped to
``user_id``: ids owned by another user are reported as not found.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from triage.core.errors import ValidationError
from triage.schemas.schemas import (
    NewsletterRecord,
    PositionUpdate,
    ReadingQueueEntry,
    SourceRecord,
)

WRITABLE_FIELDS = frozenset({"is_read", "is_liked", "is_archived"})


@runtime_checkable
class RemoteStore(Protocol):
    # ── Newsletters ─────────────────────────────────────────
    async def read_newsletters(self, user_id: str) -> list[NewsletterRecord]: ...

    async def write_newsletter_fields(
        self, user_id: str, newsletter_id: str, fields: Mapping[str, bool]
    ) -> None: ...

    async def write_newsletter_fields_bulk(
        self, user_id: str, newsletter_ids: Sequence[str], fields: Mapping[str, bool]
    ) -> None: ...

    async def delete_newsletter(self, user_id: str, newsletter_id: str) -> None: ...

    async def delete_newsletters(self, user_id: str, newsletter_ids: Sequence[str]) -> None: ...

    async def set_newsletter_tags(
        self, user_id: str, newsletter_id: str, tag_ids: Sequence[str]
    ) -> None: ...

    # ── Aggregates ──────────────────────────────────────────
    async def read_source_counts(self, user_id: str) -> list[SourceRecord]: ...

    async def read_unread_count(self, user_id: str) -> int: ...

    async def read_unread_count_by_source(self, user_id: str) -> dict[str, int]: ...

    # ── Reading queue ───────────────────────────────────────
    async def read_queue(self, user_id: str) -> list[ReadingQueueEntry]: ...

    async def insert_queue_entry(
        self, user_id: str, newsletter_id: str, position: int
    ) -> ReadingQueueEntry: ...

    async def insert_queue_entries(
        self, user_id: str, newsletter_ids: Sequence[str], position: int
    ) -> list[ReadingQueueEntry]: ...

    async def delete_queue_entry(self, user_id: str, entry_id: str) -> None: ...

    async def delete_queue_entries(self, user_id: str, entry_ids: Sequence[str]) -> None: ...

    async def clear_queue(self, user_id: str) -> None: ...

    async def reorder_queue(self, user_id: str, updates: Sequence[PositionUpdate]) -> None: ...


def check_fields(fields: Mapping[str, bool]) -> dict[str, bool]:
    """Reject anything but the three boolean status flags."""
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported newsletter fields: {sorted(unknown)}", field="fields")
    if not fields:
        raise ValidationError("No fields to update", field="fields")
    return {name: bool(value) for name, value in fields.items()}
