"""
Newsletter status mutations: read/unread, like, archive/unarchive, delete,
their bulk variants, and tag assignment.

Each operation locates the current cached copy of its targets, replaces
every copy (list views, detail view, the reading-queue embed) with a new
record, and applies the matching count deltas in the same synchronous step.
A target missing from the cache contributes no delta, but the remote write
is still issued.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING

from triage.cache import keys
from triage.core.errors import ValidationError
from triage.core.logging import get_logger
from triage.engine.aggregates import AggregateDelta, apply_delta
from triage.engine.mutation import OptimisticMutation, unique_ids
from triage.schemas.schemas import NewsletterRecord, ReadingQueueEntry, Tag, utcnow
from triage.services.remote_store import check_fields

if TYPE_CHECKING:
    from triage.engine.context import TriageContext

logger = get_logger(__name__)


def _replace_in_list(
    records: tuple[NewsletterRecord, ...], replaced: Mapping[str, NewsletterRecord]
) -> tuple[NewsletterRecord, ...]:
    if not any(r.id in replaced for r in records):
        return records
    return tuple(replaced.get(r.id, r) for r in records)


def _drop_from_list(
    records: tuple[NewsletterRecord, ...], ids: frozenset[str]
) -> tuple[NewsletterRecord, ...]:
    kept = tuple(r for r in records if r.id not in ids)
    return records if len(kept) == len(records) else kept


def _replace_in_queue(
    entries: tuple[ReadingQueueEntry, ...], replaced: Mapping[str, NewsletterRecord]
) -> tuple[ReadingQueueEntry, ...]:
    if not any(e.newsletter_id in replaced and e.newsletter is not None for e in entries):
        return entries
    return tuple(
        e.model_copy(update={"newsletter": replaced[e.newsletter_id]})
        if e.newsletter_id in replaced and e.newsletter is not None
        else e
        for e in entries
    )


class NewsletterActions:
    def __init__(self, ctx: TriageContext) -> None:
        self._ctx = ctx

    @property
    def _cache(self):
        return self._ctx.cache

    @property
    def _remote(self):
        return self._ctx.remote

    # ------------------------------------------------------------------ #
    # Cache lookups
    # ------------------------------------------------------------------ #

    def cached(self, user_id: str, newsletter_id: str) -> NewsletterRecord | None:
        """The current cached copy of a newsletter, wherever it is cached."""
        return self._find(user_id, (newsletter_id,)).get(newsletter_id)

    def _find(self, user_id: str, ids: Sequence[str]) -> dict[str, NewsletterRecord]:
        wanted = set(ids)
        found: dict[str, NewsletterRecord] = {}

        list_keys = sorted(self._cache.keys(keys.newsletter_lists(user_id)), key=len)
        for key in list_keys:
            for record in self._cache.get(key, ()):
                if record.id in wanted and record.id not in found:
                    found[record.id] = record
            if len(found) == len(wanted):
                return found

        for newsletter_id in wanted - found.keys():
            record = self._cache.get(keys.newsletter_detail(newsletter_id))
            if record is not None:
                found[newsletter_id] = record

        for entry in self._cache.get(keys.queue_list(user_id), ()):
            if entry.newsletter_id in wanted and entry.newsletter_id not in found and entry.newsletter:
                found[entry.newsletter_id] = entry.newsletter
        return found

    def _replace(self, user_id: str, replaced: Mapping[str, NewsletterRecord]) -> None:
        if not replaced:
            return
        self._cache.update_matching(
            keys.newsletter_lists(user_id), lambda _key, records: _replace_in_list(records, replaced)
        )
        for newsletter_id, record in replaced.items():
            self._cache.update(keys.newsletter_detail(newsletter_id), lambda _old, record=record: record)
        self._cache.update(keys.queue_list(user_id), lambda entries: _replace_in_queue(entries, replaced))

    def _touches(self, user_id: str, ids: Iterable[str], *, aggregates: bool) -> list[tuple]:
        touched = [keys.newsletter_lists(user_id), keys.queue_list(user_id)]
        touched += [keys.newsletter_detail(i) for i in ids]
        if aggregates:
            touched += [keys.unread_count(user_id), keys.source_list(user_id)]
        return touched

    # ------------------------------------------------------------------ #
    # Field writes
    # ------------------------------------------------------------------ #

    async def _write_fields(
        self, name: str, ids: Iterable[str], fields: Mapping[str, bool], *, aggregates: bool = True
    ) -> None:
        user_id = self._ctx.session.require_user()
        targets = unique_ids(ids)
        if not targets:
            raise ValidationError("At least one newsletter id is required", field="ids")
        fields = check_fields(fields)

        def apply() -> None:
            current = self._find(user_id, targets)
            now = utcnow()
            replaced = {
                nid: old.with_fields(**fields, updated_at=now)
                for nid, old in current.items()
                if any(getattr(old, field) != value for field, value in fields.items())
            }
            self._replace(user_id, replaced)
            apply_delta(
                self._cache,
                user_id,
                AggregateDelta.from_transitions((current[nid], replaced[nid]) for nid in replaced),
            )
            missing = len(targets) - len(current)
            if missing:
                logger.debug("mutation_targets_not_cached", mutation=name, missing=missing)

        if len(targets) == 1:
            remote = lambda: self._remote.write_newsletter_fields(user_id, targets[0], fields)  # noqa: E731
        else:
            remote = lambda: self._remote.write_newsletter_fields_bulk(user_id, targets, fields)  # noqa: E731

        await OptimisticMutation(
            self._cache,
            name=name,
            touches=self._touches(user_id, targets, aggregates=aggregates),
            apply=apply,
            remote=remote,
            log_context={"user_id": user_id, "count": len(targets)},
        ).run()

    async def mark_read(self, newsletter_id: str) -> None:
        await self._write_fields("mark_read", [newsletter_id], {"is_read": True})

    async def mark_unread(self, newsletter_id: str) -> None:
        await self._write_fields("mark_unread", [newsletter_id], {"is_read": False})

    async def set_liked(self, newsletter_id: str, liked: bool) -> None:
        await self._write_fields("toggle_like", [newsletter_id], {"is_liked": liked}, aggregates=False)

    def _flipped(self, newsletter_id: str, field: str) -> bool:
        user_id = self._ctx.session.require_user()
        current = self.cached(user_id, newsletter_id)
        if current is None:
            raise ValidationError(
                f"Newsletter {newsletter_id} is not cached; pass the target state explicitly",
                field=field,
            )
        return not getattr(current, f"is_{field}")

    async def toggle_like(self, newsletter_id: str, liked: bool | None = None) -> bool:
        """Like or unlike; without ``liked``, flips the cached state. Returns the new state."""
        if liked is None:
            liked = self._flipped(newsletter_id, "liked")
        await self.set_liked(newsletter_id, liked)
        return liked

    async def archive(self, newsletter_id: str) -> None:
        await self._write_fields("archive", [newsletter_id], {"is_archived": True})

    async def unarchive(self, newsletter_id: str) -> None:
        await self._write_fields("unarchive", [newsletter_id], {"is_archived": False})

    async def toggle_archive(self, newsletter_id: str, archived: bool | None = None) -> bool:
        """Archive or unarchive; without ``archived``, flips the cached state. Returns the new state."""
        if archived is None:
            archived = self._flipped(newsletter_id, "archived")
        if archived:
            await self.archive(newsletter_id)
        else:
            await self.unarchive(newsletter_id)
        return archived

    async def bulk_mark_read(self, newsletter_ids: Sequence[str]) -> None:
        await self._write_fields("bulk_mark_read", newsletter_ids, {"is_read": True})

    async def bulk_mark_unread(self, newsletter_ids: Sequence[str]) -> None:
        await self._write_fields("bulk_mark_unread", newsletter_ids, {"is_read": False})

    async def bulk_archive(self, newsletter_ids: Sequence[str]) -> None:
        await self._write_fields("bulk_archive", newsletter_ids, {"is_archived": True})

    async def bulk_unarchive(self, newsletter_ids: Sequence[str]) -> None:
        await self._write_fields("bulk_unarchive", newsletter_ids, {"is_archived": False})

    # ------------------------------------------------------------------ #
    # Delete
    # ------------------------------------------------------------------ #

    async def _delete(self, name: str, ids: Iterable[str]) -> None:
        user_id = self._ctx.session.require_user()
        targets = unique_ids(ids)
        if not targets:
            raise ValidationError("At least one newsletter id is required", field="ids")
        target_set = frozenset(targets)

        def apply() -> None:
            current = self._find(user_id, targets)
            self._cache.update_matching(
                keys.newsletter_lists(user_id), lambda _key, records: _drop_from_list(records, target_set)
            )
            for newsletter_id in targets:
                self._cache.remove(keys.newsletter_detail(newsletter_id))
            self._cache.update(
                keys.queue_list(user_id),
                lambda entries: tuple(e for e in entries if e.newsletter_id not in target_set),
            )
            apply_delta(
                self._cache,
                user_id,
                AggregateDelta.from_transitions((old, None) for old in current.values()),
            )

        if len(targets) == 1:
            remote = lambda: self._remote.delete_newsletter(user_id, targets[0])  # noqa: E731
        else:
            remote = lambda: self._remote.delete_newsletters(user_id, targets)  # noqa: E731

        def forget_details(_result) -> None:
            for newsletter_id in targets:
                self._cache.unregister(keys.newsletter_detail(newsletter_id))

        await OptimisticMutation(
            self._cache,
            name=name,
            touches=self._touches(user_id, targets, aggregates=True),
            apply=apply,
            remote=remote,
            invalidate=[
                keys.newsletter_lists(user_id),
                keys.queue_list(user_id),
                keys.unread_count(user_id),
                keys.source_list(user_id),
            ],
            on_success=forget_details,
            log_context={"user_id": user_id, "count": len(targets)},
        ).run()

    async def delete(self, newsletter_id: str) -> None:
        await self._delete("delete", [newsletter_id])

    async def bulk_delete(self, newsletter_ids: Sequence[str]) -> None:
        await self._delete("bulk_delete", newsletter_ids)

    # ------------------------------------------------------------------ #
    # Tags
    # ------------------------------------------------------------------ #

    def _known_tags(self, user_id: str) -> dict[str, Tag]:
        known: dict[str, Tag] = {}
        for key in self._cache.keys(keys.newsletter_lists(user_id)):
            for record in self._cache.get(key, ()):
                for tag in record.tags:
                    known.setdefault(tag.id, tag)
        return known

    async def update_tags(self, newsletter_id: str, tag_ids: Sequence[str]) -> None:
        """Replace the tag set of one newsletter."""
        user_id = self._ctx.session.require_user()
        if isinstance(tag_ids, str) or any(not isinstance(t, str) or not t for t in tag_ids):
            raise ValidationError("Tag ids must be non-empty strings", field="tag_ids")
        wanted = unique_ids(tag_ids)

        def apply() -> None:
            current = self.cached(user_id, newsletter_id)
            if current is None:
                return
            known = self._known_tags(user_id)
            tags = tuple(known.get(tag_id) or Tag(id=tag_id) for tag_id in wanted)
            self._replace(user_id, {newsletter_id: current.with_fields(tags=tags, updated_at=utcnow())})

        await OptimisticMutation(
            self._cache,
            name="update_tags",
            touches=self._touches(user_id, [newsletter_id], aggregates=False),
            apply=apply,
            remote=lambda: self._remote.set_newsletter_tags(user_id, newsletter_id, wanted),
            log_context={"user_id": user_id, "newsletter_id": newsletter_id},
        ).run()

    def remove_tag_everywhere(self, tag_id: str) -> int:
        """Strip a deleted tag from every cached newsletter. Returns how many changed."""
        user_id = self._ctx.session.require_user()
        stripped: dict[str, NewsletterRecord] = {}
        for key in self._cache.keys(keys.newsletter_lists(user_id)):
            for record in self._cache.get(key, ()):
                if tag_id in record.tag_ids and record.id not in stripped:
                    stripped[record.id] = record.with_fields(
                        tags=tuple(t for t in record.tags if t.id != tag_id)
                    )
        self._replace(user_id, stripped)
        self._cache.invalidate_matching(keys.newsletter_lists(user_id))
        return len(stripped)
