"""
Aggregate maintainers.

Pure functions that turn one newsletter's state transition into count deltas,
and the single place those deltas are written into the cache. The written
counts are an approximation until the invalidation that follows every
mutation refetches them; decrements clamp at zero.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from triage.cache import keys
from triage.cache.store import CacheStore
from triage.schemas.schemas import NewsletterRecord, SourceRecord, UnreadCounts


def clamped_add(current: int, delta: int) -> int:
    return max(0, current + delta)


def _sign(before: bool, after: bool) -> int:
    return int(after) - int(before)


def unread_delta(old: NewsletterRecord | None, new: NewsletterRecord | None) -> int:
    """-1, 0 or +1 toward the unread counter for ``old`` becoming ``new``.

    ``None`` means "not in the list" (created or deleted). Archiving an unread
    item takes it out of the count; unarchiving only puts it back if it is
    still unread.
    """
    before = old is not None and old.counts_as_unread
    after = new is not None and new.counts_as_unread
    return _sign(before, after)


def source_count_delta(
    old: NewsletterRecord | None, new: NewsletterRecord | None
) -> dict[str, int]:
    """Per-source newsletter count deltas; only ``is_archived`` and ``source_id`` matter."""
    deltas: Counter[str] = Counter()
    if old is not None and old.source_id and not old.is_archived:
        deltas[old.source_id] -= 1
    if new is not None and new.source_id and not new.is_archived:
        deltas[new.source_id] += 1
    return {source_id: d for source_id, d in deltas.items() if d}


def unread_by_source_delta(
    old: NewsletterRecord | None, new: NewsletterRecord | None
) -> dict[str, int]:
    deltas: Counter[str] = Counter()
    if old is not None and old.source_id and old.counts_as_unread:
        deltas[old.source_id] -= 1
    if new is not None and new.source_id and new.counts_as_unread:
        deltas[new.source_id] += 1
    return {source_id: d for source_id, d in deltas.items() if d}


@dataclass
class AggregateDelta:
    """Accumulated deltas for one mutation (single record or a bulk batch)."""

    unread_total: int = 0
    unread_by_source: Counter = field(default_factory=Counter)
    source_counts: Counter = field(default_factory=Counter)

    @classmethod
    def from_transitions(
        cls, transitions: Iterable[tuple[NewsletterRecord | None, NewsletterRecord | None]]
    ) -> AggregateDelta:
        delta = cls()
        for old, new in transitions:
            delta.add(old, new)
        return delta

    def add(self, old: NewsletterRecord | None, new: NewsletterRecord | None) -> None:
        self.unread_total += unread_delta(old, new)
        self.unread_by_source.update(unread_by_source_delta(old, new))
        self.source_counts.update(source_count_delta(old, new))

    @property
    def is_zero(self) -> bool:
        return (
            self.unread_total == 0
            and not any(self.unread_by_source.values())
            and not any(self.source_counts.values())
        )


def apply_unread_delta(counts: UnreadCounts, delta: AggregateDelta) -> UnreadCounts:
    by_source = dict(counts.by_source)
    for source_id, d in delta.unread_by_source.items():
        if d:
            by_source[source_id] = clamped_add(by_source.get(source_id, 0), d)
    return UnreadCounts(total=clamped_add(counts.total, delta.unread_total), by_source=by_source)


def apply_source_delta(
    sources: tuple[SourceRecord, ...], delta: AggregateDelta
) -> tuple[SourceRecord, ...]:
    if not any(delta.source_counts.values()):
        return sources
    return tuple(
        source.with_count(clamped_add(source.newsletter_count, delta.source_counts[source.id]))
        if delta.source_counts.get(source.id)
        else source
        for source in sources
    )


def apply_delta(cache: CacheStore, user_id: str, delta: AggregateDelta) -> None:
    """Write ``delta`` into the cached unread counts and source counts."""
    if delta.is_zero:
        return
    cache.update(keys.unread_count(user_id), lambda counts: apply_unread_delta(counts, delta))
    cache.update(keys.source_list(user_id), lambda sources: apply_source_delta(sources, delta))
