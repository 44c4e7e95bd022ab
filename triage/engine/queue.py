"""
Reading queue mutations and the reorder protocol.

A reorder receives the final order the user dragged the queue into, rewrites
positions densely as 0..n-1 in that order, shows it immediately and submits
the whole list in one atomic remote call. On failure the queue snaps back to
its last settled order. A newer drag supersedes an older one that has not
settled yet: the older one is not submitted if it is still waiting, and it
never rolls back or invalidates once replaced.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from triage.cache import keys
from triage.core.errors import ReorderSuperseded, ValidationError
from triage.core.logging import get_logger
from triage.engine.mutation import OptimisticMutation, unique_ids
from triage.schemas.schemas import PositionUpdate, ReadingQueueEntry

if TYPE_CHECKING:
    from triage.engine.context import TriageContext

logger = get_logger(__name__)

PENDING_PREFIX = "pending-"


def sort_entries(entries) -> tuple[ReadingQueueEntry, ...]:
    return tuple(sorted(entries, key=lambda e: e.sort_key))


def compute_positions(ordered_ids: Sequence[str]) -> list[PositionUpdate]:
    """Dense, strictly increasing positions following ``ordered_ids``."""
    return [PositionUpdate(id=entry_id, position=i) for i, entry_id in enumerate(ordered_ids)]


def moved_order(ordered_ids: Sequence[str], entry_id: str, to_index: int) -> list[str]:
    """The order produced by dragging ``entry_id`` to ``to_index``."""
    order = list(ordered_ids)
    try:
        order.remove(entry_id)
    except ValueError:
        raise ValidationError(f"Queue entry {entry_id} is not in the queue", field="entry_id") from None
    to_index = max(0, min(to_index, len(order)))
    order.insert(to_index, entry_id)
    return order


def apply_positions(
    entries: tuple[ReadingQueueEntry, ...], updates: Sequence[PositionUpdate]
) -> tuple[ReadingQueueEntry, ...]:
    positions = {u.id: u.position for u in updates}
    return sort_entries(
        e.model_copy(update={"position": positions[e.id]}) if e.id in positions else e
        for e in entries
    )


@dataclass
class _Gesture:
    ordered_ids: tuple[str, ...]
    baseline: dict[tuple, Any]
    superseded: asyncio.Event = field(default_factory=asyncio.Event)
    submitted: bool = False


class ReadingQueueActions:
    def __init__(self, ctx: TriageContext) -> None:
        self._ctx = ctx
        self._gestures: dict[str, _Gesture] = {}

    @property
    def _cache(self):
        return self._ctx.cache

    @property
    def _remote(self):
        return self._ctx.remote

    def entries(self, user_id: str) -> tuple[ReadingQueueEntry, ...]:
        return self._cache.get(keys.queue_list(user_id), ())

    def entry_for(self, user_id: str, newsletter_id: str) -> ReadingQueueEntry | None:
        return next((e for e in self.entries(user_id) if e.newsletter_id == newsletter_id), None)

    def is_reordering(self, user_id: str) -> bool:
        return user_id in self._gestures

    # ------------------------------------------------------------------ #
    # Add / remove
    # ------------------------------------------------------------------ #

    def _check_can_queue(self, user_id: str, newsletter_ids: Sequence[str]) -> None:
        for newsletter_id in newsletter_ids:
            record = self._ctx.newsletters.cached(user_id, newsletter_id)
            if record is not None and record.is_archived:
                raise ValidationError(
                    f"Newsletter {newsletter_id} is archived and cannot be queued", field="newsletter_id"
                )
        limit = self._ctx.settings.queue_max_size
        if len(self.entries(user_id)) + len(newsletter_ids) > limit:
            raise ValidationError(f"Reading queue is limited to {limit} entries", field="newsletter_id")

    def _provisional(self, user_id: str, newsletter_id: str, position: int) -> ReadingQueueEntry:
        return ReadingQueueEntry(
            id=f"{PENDING_PREFIX}{uuid.uuid4().hex}",
            newsletter_id=newsletter_id,
            position=position,
            newsletter=self._ctx.newsletters.cached(user_id, newsletter_id),
        )

    def _swap_in(self, key: tuple, provisional: dict[str, ReadingQueueEntry], saved) -> None:
        """Replace provisional entries with the saved ones, keyed by newsletter."""
        confirmed = {}
        for entry in saved:
            pending = provisional.get(entry.newsletter_id)
            if pending is None:
                continue
            if entry.newsletter is None and pending.newsletter is not None:
                entry = entry.model_copy(update={"newsletter": pending.newsletter})
            confirmed[pending.id] = entry
        self._cache.update(
            key, lambda entries: sort_entries(confirmed.get(e.id, e) for e in entries)
        )

    async def _loaded(self, user_id: str) -> tuple:
        key = keys.queue_list(user_id)
        if not self._cache.has(key) and self._cache.is_active(key):
            await self._cache.ensure(key)
        return key

    async def add(self, newsletter_id: str) -> ReadingQueueEntry:
        """Append a newsletter to the queue. Archived newsletters and a full
        queue are rejected before anything changes."""
        user_id = self._ctx.session.require_user()
        if not newsletter_id:
            raise ValidationError("A newsletter id is required", field="newsletter_id")
        key = await self._loaded(user_id)
        existing = self.entry_for(user_id, newsletter_id)
        if existing is not None:
            logger.debug("queue_add_skipped", newsletter_id=newsletter_id, reason="already queued")
            return existing
        self._check_can_queue(user_id, [newsletter_id])

        current = self.entries(user_id)
        position = max((e.position for e in current), default=-1) + 1
        provisional = self._provisional(user_id, newsletter_id, position)

        def apply() -> None:
            self._cache.update(key, lambda entries: sort_entries((*entries, provisional)))

        return await OptimisticMutation(
            self._cache,
            name="queue_add",
            touches=[key],
            apply=apply,
            remote=lambda: self._remote.insert_queue_entry(user_id, newsletter_id, position),
            on_success=lambda saved: self._swap_in(key, {newsletter_id: provisional}, [saved]),
            log_context={"user_id": user_id, "newsletter_id": newsletter_id},
        ).run()

    async def add_many(self, newsletter_ids: Sequence[str]) -> list[ReadingQueueEntry]:
        """Append several newsletters in one remote call; already queued ones are skipped."""
        user_id = self._ctx.session.require_user()
        ids = unique_ids(newsletter_ids)
        if not ids:
            raise ValidationError("At least one newsletter id is required", field="newsletter_ids")
        key = await self._loaded(user_id)
        fresh = [i for i in ids if self.entry_for(user_id, i) is None]
        if not fresh:
            logger.debug("queue_add_skipped", count=len(ids), reason="already queued")
            return []
        self._check_can_queue(user_id, fresh)

        start = max((e.position for e in self.entries(user_id)), default=-1) + 1
        provisional = {
            newsletter_id: self._provisional(user_id, newsletter_id, start + offset)
            for offset, newsletter_id in enumerate(fresh)
        }

        def apply() -> None:
            self._cache.update(key, lambda entries: sort_entries((*entries, *provisional.values())))

        saved = await OptimisticMutation(
            self._cache,
            name="queue_add_many",
            touches=[key],
            apply=apply,
            remote=lambda: self._remote.insert_queue_entries(user_id, fresh, start),
            on_success=lambda saved: self._swap_in(key, provisional, saved),
            log_context={"user_id": user_id, "count": len(fresh)},
        ).run()
        return list(saved)

    async def _drop(self, name: str, entry_ids: Sequence[str] | None, remote) -> None:
        user_id = self._ctx.session.require_user()
        key = keys.queue_list(user_id)
        dropped = None if entry_ids is None else frozenset(entry_ids)

        def keep(entries):
            kept = () if dropped is None else tuple(e for e in entries if e.id not in dropped)
            return entries if len(kept) == len(entries) else kept

        await OptimisticMutation(
            self._cache,
            name=name,
            touches=[key],
            apply=lambda: self._cache.update(key, keep),
            remote=lambda: remote(user_id),
            log_context={"user_id": user_id, "count": "all" if dropped is None else len(dropped)},
        ).run()

    async def remove(self, entry_id: str) -> None:
        if not entry_id:
            raise ValidationError("A queue entry id is required", field="entry_id")
        await self._drop(
            "queue_remove", [entry_id], lambda user_id: self._remote.delete_queue_entry(user_id, entry_id)
        )

    async def remove_many(self, entry_ids: Sequence[str]) -> None:
        ids = unique_ids(entry_ids)
        if not ids:
            raise ValidationError("At least one queue entry id is required", field="entry_ids")
        if any(entry_id.startswith(PENDING_PREFIX) for entry_id in ids):
            raise ValidationError("Queue entries are still being added", field="entry_ids")
        await self._drop(
            "queue_remove_many", ids, lambda user_id: self._remote.delete_queue_entries(user_id, ids)
        )

    async def clear(self) -> None:
        """Empty the queue."""
        await self._drop("queue_clear", None, self._remote.clear_queue)

    async def remove_read(self) -> int:
        """Drop every settled entry whose newsletter is read. Returns how many."""
        user_id = self._ctx.session.require_user()
        ids = [
            e.id
            for e in self.entries(user_id)
            if e.newsletter is not None and e.newsletter.is_read and not e.id.startswith(PENDING_PREFIX)
        ]
        if not ids:
            return 0
        await self.remove_many(ids)
        return len(ids)

    async def remove_newsletter(self, newsletter_id: str) -> bool:
        """Remove the queue entry of a newsletter. False if the cache knows of none."""
        user_id = self._ctx.session.require_user()
        entry = self.entry_for(user_id, newsletter_id)
        if entry is None:
            logger.debug("queue_remove_skipped", newsletter_id=newsletter_id, reason="not queued")
            return False
        await self.remove(entry.id)
        return True

    async def toggle(self, newsletter_id: str) -> bool:
        """Add or remove a newsletter. Returns True if it is queued afterwards."""
        if await self.remove_newsletter(newsletter_id):
            return False
        await self.add(newsletter_id)
        return True

    # ------------------------------------------------------------------ #
    # Reorder
    # ------------------------------------------------------------------ #

    async def reorder(self, ordered_ids: Sequence[str]) -> list[PositionUpdate]:
        """Apply a drag result: ``ordered_ids`` is the full queue in its new order.

        Returns the submitted position updates. Raises ``RemoteWriteError``
        after restoring the last settled order if the remote call fails, and
        ``ReorderSuperseded`` if a newer reorder replaced this one.
        """
        user_id = self._ctx.session.require_user()
        key = keys.queue_list(user_id)
        current = self._cache.get(key)
        if current is None:
            raise ValidationError("The reading queue is not loaded", field="ordered_ids")

        ordered = tuple(ordered_ids)
        if len(unique_ids(ordered)) != len(ordered):
            raise ValidationError("Duplicate queue entry ids in new order", field="ordered_ids")
        if set(ordered) != {e.id for e in current}:
            raise ValidationError("New order must contain exactly the current queue entries", field="ordered_ids")
        if any(entry_id.startswith(PENDING_PREFIX) for entry_id in ordered):
            raise ValidationError("Queue entries are still being added", field="ordered_ids")
        if not ordered:
            return []

        updates = compute_positions(ordered)
        previous = self._gestures.get(user_id)
        if previous is not None:
            baseline = previous.baseline
            previous.superseded.set()
            logger.info("reorder_superseded", user_id=user_id, submitted=previous.submitted)
        else:
            baseline = self._cache.snapshot([key])
        gesture = _Gesture(ordered_ids=ordered, baseline=baseline)
        self._gestures[user_id] = gesture

        debounce = self._ctx.settings.reorder_debounce_seconds

        async def submit() -> None:
            if debounce > 0:
                try:
                    await asyncio.wait_for(gesture.superseded.wait(), timeout=debounce)
                except TimeoutError:
                    pass
            if gesture.superseded.is_set():
                raise ReorderSuperseded("reorder_queue")
            gesture.submitted = True
            await self._remote.reorder_queue(user_id, updates)

        try:
            await OptimisticMutation(
                self._cache,
                name="reorder_queue",
                touches=[key],
                apply=lambda: self._cache.update(key, lambda entries: apply_positions(entries, updates)),
                remote=submit,
                rollback=lambda _snapshot: self._cache.restore(gesture.baseline),
                is_current=lambda: not gesture.superseded.is_set(),
                superseded_error=ReorderSuperseded,
                log_context={"user_id": user_id, "count": len(updates)},
            ).run()
        finally:
            if self._gestures.get(user_id) is gesture:
                del self._gestures[user_id]
        return updates

    async def move(self, entry_id: str, to_index: int) -> list[PositionUpdate]:
        """Drag one entry to ``to_index`` in the current order."""
        user_id = self._ctx.session.require_user()
        order = [e.id for e in self.entries(user_id)]
        return await self.reorder(moved_order(order, entry_id, to_index))
