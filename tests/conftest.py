"""
Shared pytest fixtures for unit tests.

The engine runs against FakeRemoteStore (tests/fakes.py); the SQL store and
HTTP API tests build their own in-memory SQLite backends.
"""

from __future__ import annotations

import pytest

from tests.fakes import USER_ID, FakeRemoteStore, make_newsletter
from triage.core.config import Settings
from triage.core.session import Session
from triage.engine.context import TriageContext
from triage.schemas.schemas import NewsletterRecord, ReadingQueueEntry, SourceRecord, Tag


@pytest.fixture
def settings() -> Settings:
    return Settings(reorder_debounce_seconds=0.0, refetch_on_invalidate=True)


@pytest.fixture
def sources() -> list[SourceRecord]:
    return [SourceRecord(id="s1", name="The Batch"), SourceRecord(id="s2", name="Import AI")]


@pytest.fixture
def newsletters() -> list[NewsletterRecord]:
    """Four newsletters: two unread in s1, one read in s2, one archived unread in s2."""
    return [
        make_newsletter("n1", 0, source_id="s1"),
        make_newsletter("n2", 5, source_id="s1", tags=[Tag(id="t1", name="ml")]),
        make_newsletter("n3", 10, source_id="s2", is_read=True),
        make_newsletter("n4", 15, source_id="s2", is_archived=True),
    ]


@pytest.fixture
def queue_entries() -> list[ReadingQueueEntry]:
    return [
        ReadingQueueEntry(id="qa", newsletter_id="n1", position=0),
        ReadingQueueEntry(id="qb", newsletter_id="n2", position=1),
        ReadingQueueEntry(id="qc", newsletter_id="n3", position=2),
    ]


@pytest.fixture
def remote(newsletters, sources, queue_entries) -> FakeRemoteStore:
    return FakeRemoteStore(newsletters, sources, queue_entries)


@pytest.fixture
def ctx(remote, settings) -> TriageContext:
    return TriageContext(remote, Session(USER_ID), settings=settings)

