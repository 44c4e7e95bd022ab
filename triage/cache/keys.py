"""
Query key factory.

Keys are plain tuples ``(entity, kind, *scope)`` so they hash, compare and
prefix-match without any wrapper type. One mutation typically touches several
of them for the same user: every filtered newsletter list, the unread
counts, the source counts and the reading queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

QueryKey = tuple

StatusFilter = Literal["all", "unread", "liked", "archived"]

NEWSLETTERS = "newsletters"
UNREAD_COUNT = "unreadCount"
SOURCES = "newsletterSources"
READING_QUEUE = "readingQueue"


@dataclass(frozen=True)
class ListFilter:
    """Filter scope of a newsletter list key; the default is the inbox view."""

    status: StatusFilter = "all"
    source_id: str | None = None
    tag_id: str | None = None

    @property
    def is_default(self) -> bool:
        return self.status == "all" and self.source_id is None and self.tag_id is None

    def as_scope(self) -> tuple:
        return (("status", self.status), ("source", self.source_id), ("tag", self.tag_id))

    def accepts(self, record) -> bool:
        """True if ``record`` belongs in a list under this filter."""
        if self.source_id is not None and record.source_id != self.source_id:
            return False
        if self.tag_id is not None and self.tag_id not in record.tag_ids:
            return False
        if self.status == "unread":
            return record.counts_as_unread
        if self.status == "liked":
            return record.is_liked and not record.is_archived
        if self.status == "archived":
            return record.is_archived
        return not record.is_archived


# ── Newsletters ─────────────────────────────────────────────
def newsletter_lists(user_id: str) -> QueryKey:
    """Prefix of every newsletter list key of one user."""
    return (NEWSLETTERS, "list", user_id)


def newsletter_list(user_id: str, list_filter: ListFilter | None = None) -> QueryKey:
    if list_filter is None or list_filter.is_default:
        return (NEWSLETTERS, "list", user_id)
    return (NEWSLETTERS, "list", user_id, list_filter.as_scope())


def newsletter_detail(newsletter_id: str) -> QueryKey:
    return (NEWSLETTERS, "detail", newsletter_id)


# ── Aggregates ──────────────────────────────────────────────
def unread_count(user_id: str) -> QueryKey:
    return (UNREAD_COUNT, "all", user_id)


def source_list(user_id: str) -> QueryKey:
    return (SOURCES, "list", user_id)


# ── Reading queue ───────────────────────────────────────────
def queue_list(user_id: str) -> QueryKey:
    return (READING_QUEUE, "list", user_id)


# ── Matchers ────────────────────────────────────────────────
def matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[: len(prefix)] == prefix
