"""
In-memory query cache.

Values are treated as immutable: callers replace them through ``set`` or
``update`` and never edit them in place, so a reference captured by a
snapshot stays valid after later writes.

Every write bumps a per-key generation. A fetch remembers the generation it
started under and discards its result if the key was written in the meantime,
so a slow read can never clobber a fresher optimistic value.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from triage.cache.keys import QueryKey, matches
from triage.core.logging import get_logger

logger = get_logger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[QueryKey], None]


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


@dataclass
class _Entry:
    value: Any
    stale: bool = False


class CacheStore:
    def __init__(self, *, refetch_on_invalidate: bool = True) -> None:
        self.refetch_on_invalidate = refetch_on_invalidate
        self._entries: dict[QueryKey, _Entry] = {}
        self._generations: dict[QueryKey, int] = {}
        self._fetchers: dict[QueryKey, Fetcher] = {}
        self._inflight: dict[QueryKey, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, key: QueryKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def has(self, key: QueryKey) -> bool:
        return key in self._entries

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def keys(self, prefix: QueryKey = ()) -> list[QueryKey]:
        return [k for k in self._entries if matches(k, prefix)]

    def generation(self, key: QueryKey) -> int:
        return self._generations.get(key, 0)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def set(self, key: QueryKey, value: Any) -> None:
        self._bump(key)
        self._entries[key] = _Entry(value)
        self._notify(key)

    def update(self, key: QueryKey, fn: Callable[[Any], Any]) -> bool:
        """Replace the value under ``key`` with ``fn(value)``. No-op when absent."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        new_value = fn(entry.value)
        if new_value is entry.value:
            return False
        self._bump(key)
        self._entries[key] = _Entry(new_value, stale=entry.stale)
        self._notify(key)
        return True

    def update_matching(self, prefix: QueryKey, fn: Callable[[QueryKey, Any], Any]) -> list[QueryKey]:
        """Apply ``fn(key, value)`` to every cached key under ``prefix``."""
        touched = []
        for key in self.keys(prefix):
            if self.update(key, lambda value, key=key: fn(key, value)):
                touched.append(key)
        return touched

    def remove(self, key: QueryKey) -> None:
        self.cancel_pending(key)
        if self._entries.pop(key, None) is not None:
            self._bump(key)
            self._notify(key)

    # ------------------------------------------------------------------ #
    # Snapshot / rollback
    # ------------------------------------------------------------------ #

    def snapshot(self, keys: Iterable[QueryKey]) -> dict[QueryKey, Any]:
        return {key: self.get(key, MISSING) for key in keys}

    def restore(self, snapshot: dict[QueryKey, Any]) -> None:
        """Put every key back exactly as captured; keys absent then are removed."""
        for key, value in snapshot.items():
            if value is MISSING:
                self.remove(key)
            else:
                self.set(key, value)

    # ------------------------------------------------------------------ #
    # Fetching
    # ------------------------------------------------------------------ #

    def register(self, key: QueryKey, fetcher: Fetcher) -> None:
        """Mark ``key`` as having an active consumer that ``fetcher`` can refill."""
        self._fetchers[key] = fetcher

    def unregister(self, key: QueryKey) -> None:
        self._fetchers.pop(key, None)

    def is_active(self, key: QueryKey) -> bool:
        return key in self._fetchers

    async def fetch(self, key: QueryKey) -> Any:
        """Run the registered fetcher for ``key`` and store its result.

        Joins a fetch already in flight for the same key. If that fetch is
        cancelled in favour of a newer one, waits for the newer one instead;
        if no fetch replaces it, returns whatever the cache holds.
        """
        task = self._inflight.get(key)
        if task is None:
            task = self._start_fetch(key)
        while True:
            await asyncio.wait({task})
            if not task.cancelled():
                return task.result()
            newer = self._inflight.get(key)
            if newer is None or newer is task:
                return self.get(key)
            task = newer

    async def ensure(self, key: QueryKey) -> Any:
        """Return the cached value if fresh, fetching it otherwise."""
        entry = self._entries.get(key)
        if entry is not None and not entry.stale:
            return entry.value
        return await self.fetch(key)

    def cancel_pending(self, key: QueryKey) -> bool:
        task = self._inflight.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("cache_fetch_cancelled", key=key)
        return True

    def cancel_matching(self, prefix: QueryKey) -> None:
        for key in [k for k in self._inflight if matches(k, prefix)]:
            self.cancel_pending(key)

    def invalidate(self, key: QueryKey) -> None:
        """Mark ``key`` stale and, when someone consumes it, refetch in the background.

        A fetch already in flight may have read the server before the write
        that caused this invalidation, so it is replaced rather than joined.
        """
        entry = self._entries.get(key)
        if entry is not None:
            entry.stale = True
        if not (self.refetch_on_invalidate and key in self._fetchers):
            return
        self.cancel_pending(key)
        self._start_fetch(key)
        logger.debug("cache_invalidated", key=key, refetch=True)

    def invalidate_matching(self, prefix: QueryKey) -> list[QueryKey]:
        keys = set(self.keys(prefix)) | {k for k in self._fetchers if matches(k, prefix)}
        for key in keys:
            self.invalidate(key)
        return sorted(keys, key=repr)

    async def settle(self) -> None:
        """Wait until every background refetch has finished."""
        while self._background:
            await asyncio.wait(set(self._background))

    # ------------------------------------------------------------------ #
    # Change notification
    # ------------------------------------------------------------------ #

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _bump(self, key: QueryKey) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    def _notify(self, key: QueryKey) -> None:
        for listener in list(self._listeners):
            listener(key)

    def _start_fetch(self, key: QueryKey) -> asyncio.Task:
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            raise KeyError(f"No fetcher registered for {key!r}")
        task = asyncio.get_running_loop().create_task(self._run_fetch(key, fetcher))
        self._inflight[key] = task
        self._background.add(task)
        task.add_done_callback(lambda t: self._fetch_done(key, t))
        return task

    async def _run_fetch(self, key: QueryKey, fetcher: Fetcher) -> Any:
        started_at = self.generation(key)
        value = await fetcher()
        if self.generation(key) != started_at:
            logger.info("cache_fetch_discarded", key=key, reason="written during fetch")
            return self.get(key)
        self.set(key, value)
        return value

    def _fetch_done(self, key: QueryKey, task: asyncio.Task) -> None:
        self._background.discard(task)
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("cache_fetch_failed", key=key, error=str(exc))
