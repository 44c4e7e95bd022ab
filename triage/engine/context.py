"""
Triage context: the explicit bundle of cache, remote store, session and
settings that every action receives instead of reaching for a global.

``activate`` registers fetchers for the signed-in user's views; only
registered (active) keys are refetched in the background on invalidation.
"""

from __future__ import annotations

import asyncio

from triage.cache import keys
from triage.cache.keys import ListFilter, QueryKey
from triage.cache.store import CacheStore
from triage.core.config import Settings, get_settings
from triage.core.errors import NotFoundError
from triage.core.logging import get_logger
from triage.core.session import Session
from triage.engine.newsletters import NewsletterActions
from triage.engine.queue import ReadingQueueActions, sort_entries
from triage.schemas.schemas import (
    NewsletterRecord,
    ReadingQueueEntry,
    SourceRecord,
    UnreadCounts,
)
from triage.services.remote_store import RemoteStore

logger = get_logger(__name__)


class TriageContext:
    def __init__(
        self,
        remote: RemoteStore,
        session: Session | None = None,
        *,
        settings: Settings | None = None,
        cache: CacheStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.remote = remote
        self.session = session or Session()
        self.cache = cache or CacheStore(refetch_on_invalidate=self.settings.refetch_on_invalidate)
        self.newsletters = NewsletterActions(self)
        self.queue = ReadingQueueActions(self)
        self._active: dict[str, list[QueryKey]] = {}

    # ------------------------------------------------------------------ #
    # Fetchers
    # ------------------------------------------------------------------ #

    def _list_fetcher(self, user_id: str, list_filter: ListFilter):
        async def fetch() -> tuple[NewsletterRecord, ...]:
            records = await self.remote.read_newsletters(user_id)
            kept = [r for r in records if list_filter.accepts(r)]
            kept.sort(key=lambda r: (r.received_at, r.id), reverse=True)
            return tuple(kept)

        return fetch

    def _unread_fetcher(self, user_id: str):
        async def fetch() -> UnreadCounts:
            total, by_source = await asyncio.gather(
                self.remote.read_unread_count(user_id),
                self.remote.read_unread_count_by_source(user_id),
            )
            return UnreadCounts(total=total, by_source=by_source)

        return fetch

    def _sources_fetcher(self, user_id: str):
        async def fetch() -> tuple[SourceRecord, ...]:
            return tuple(await self.remote.read_source_counts(user_id))

        return fetch

    def _queue_fetcher(self, user_id: str):
        async def fetch() -> tuple[ReadingQueueEntry, ...]:
            return sort_entries(await self.remote.read_queue(user_id))

        return fetch

    def _detail_fetcher(self, user_id: str, newsletter_id: str):
        async def fetch() -> NewsletterRecord:
            for record in await self.remote.read_newsletters(user_id):
                if record.id == newsletter_id:
                    return record
            raise NotFoundError("newsletter", newsletter_id)

        return fetch

    # ------------------------------------------------------------------ #
    # Activation
    # ------------------------------------------------------------------ #

    def _register(self, user_id: str, key: QueryKey, fetcher) -> QueryKey:
        self.cache.register(key, fetcher)
        active = self._active.setdefault(user_id, [])
        if key not in active:
            active.append(key)
        return key

    def activate(self, *filters: ListFilter) -> list[QueryKey]:
        """Register the signed-in user's views: inbox list (plus ``filters``),
        unread counts, source counts and reading queue."""
        user_id = self.session.require_user()
        list_filters = [ListFilter(), *filters]
        registered = [
            self._register(user_id, keys.newsletter_list(user_id, f), self._list_fetcher(user_id, f))
            for f in dict.fromkeys(list_filters)
        ]
        registered.append(self._register(user_id, keys.unread_count(user_id), self._unread_fetcher(user_id)))
        registered.append(self._register(user_id, keys.source_list(user_id), self._sources_fetcher(user_id)))
        registered.append(self._register(user_id, keys.queue_list(user_id), self._queue_fetcher(user_id)))
        return registered

    def watch_newsletter(self, newsletter_id: str) -> QueryKey:
        """Register the detail view of one newsletter."""
        user_id = self.session.require_user()
        key = keys.newsletter_detail(newsletter_id)
        return self._register(user_id, key, self._detail_fetcher(user_id, newsletter_id))

    def deactivate(self) -> None:
        """Drop every registration and cached value of the signed-in user."""
        user_id = self.session.require_user()
        for key in self._active.pop(user_id, []):
            self.cache.unregister(key)
            self.cache.remove(key)

    def sign_out(self) -> None:
        """Forget the signed-in user's views, then end the session."""
        user_id = self.session.require_user()
        self.deactivate()
        self.session.sign_out()
        logger.info("triage_signed_out", user_id=user_id)

    async def load(self, *filters: ListFilter) -> None:
        """Activate and fetch every view of the signed-in user."""
        registered = self.activate(*filters)
        await asyncio.gather(*(self.cache.fetch(key) for key in registered))
        logger.info("triage_loaded", user_id=self.session.user_id, keys=len(registered))

    async def refresh(self) -> None:
        """Refetch every active view now, then wait for the results."""
        user_id = self.session.require_user()
        for key in self._active.get(user_id, []):
            self.cache.invalidate(key)
        await self.cache.settle()

    async def settle(self) -> None:
        await self.cache.settle()

    # ------------------------------------------------------------------ #
    # Views
    # ------------------------------------------------------------------ #

    def newsletter_list(self, list_filter: ListFilter | None = None) -> tuple[NewsletterRecord, ...]:
        user_id = self.session.require_user()
        return self.cache.get(keys.newsletter_list(user_id, list_filter), ())

    def newsletter(self, newsletter_id: str) -> NewsletterRecord | None:
        user_id = self.session.require_user()
        return self.newsletters.cached(user_id, newsletter_id)

    def unread_counts(self) -> UnreadCounts:
        user_id = self.session.require_user()
        return self.cache.get(keys.unread_count(user_id), UnreadCounts())

    def unread_count(self, source_id: str | None = None) -> int:
        counts = self.unread_counts()
        return counts.total if source_id is None else counts.for_source(source_id)

    def sources(self) -> tuple[SourceRecord, ...]:
        user_id = self.session.require_user()
        return self.cache.get(keys.source_list(user_id), ())

    def source(self, source_id: str) -> SourceRecord | None:
        return next((s for s in self.sources() if s.id == source_id), None)

    def reading_queue(self) -> tuple[ReadingQueueEntry, ...]:
        user_id = self.session.require_user()
        return self.cache.get(keys.queue_list(user_id), ())
