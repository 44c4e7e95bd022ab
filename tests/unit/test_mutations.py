"""Unit tests for optimistic newsletter mutations."""

from __future__ import annotations

import asyncio

import pytest

from tests.fakes import USER_ID
from triage.cache import keys
from triage.cache.keys import ListFilter
from triage.core.errors import (
    NotAuthenticatedError,
    NotFoundError,
    RemoteWriteError,
    ValidationError,
)

UNREAD_ONLY = ListFilter(status="unread")
ARCHIVED_ONLY = ListFilter(status="archived")


def source_count(ctx, source_id: str) -> int:
    return ctx.source(source_id).newsletter_count


def queued_newsletter(ctx, newsletter_id: str):
    return next(e.newsletter for e in ctx.reading_queue() if e.newsletter_id == newsletter_id)


# ── Read / unread ───────────────────────────────────────────
class TestMarkRead:
    def test_optimistic_state_then_confirmed(self, ctx, remote):
        async def scenario():
            await ctx.load()
            assert ctx.unread_count() == 2
            gate = remote.hold("write_newsletter_fields")

            task = asyncio.create_task(ctx.newsletters.mark_read("n1"))
            await remote.reached("write_newsletter_fields")

            # Visible before the remote write settles, everywhere the record is cached
            assert ctx.newsletter("n1").is_read
            assert queued_newsletter(ctx, "n1").is_read
            assert ctx.unread_count() == 1
            assert ctx.unread_count("s1") == 1

            gate.set()
            await task
            await ctx.settle()

            assert remote.newsletters["n1"].is_read
            assert ctx.unread_count() == 1
            assert ctx.newsletter("n1").is_read

        asyncio.run(scenario())

    def test_failure_restores_exact_prior_state(self, ctx, remote):
        async def scenario():
            await ctx.load()
            inbox, counts, queue = ctx.newsletter_list(), ctx.unread_counts(), ctx.reading_queue()
            gate = remote.hold("write_newsletter_fields")
            remote.fail("write_newsletter_fields")

            task = asyncio.create_task(ctx.newsletters.mark_read("n1"))
            await remote.reached("write_newsletter_fields")
            assert ctx.unread_count() == 1

            gate.set()
            with pytest.raises(RemoteWriteError):
                await task

            assert ctx.newsletter_list() == inbox
            assert ctx.unread_counts() == counts
            assert ctx.reading_queue() == queue
            assert not ctx.newsletter("n1").is_read

            await ctx.settle()
            assert ctx.unread_count() == 2
            assert not ctx.newsletter("n1").is_read

        asyncio.run(scenario())

    def test_already_read_item_changes_nothing_but_still_writes(self, ctx, remote):
        async def scenario():
            await ctx.load()
            inbox = ctx.newsletter_list()
            await ctx.newsletters.mark_read("n3")
            assert ctx.newsletter_list() is inbox
            assert ctx.unread_count() == 2
            assert remote.called("write_newsletter_fields") == [("n3", {"is_read": True})]

        asyncio.run(scenario())

    def test_uncached_target_is_zero_delta(self, ctx, remote):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.mark_read("n4")
            assert ctx.unread_count() == 2
            assert remote.called("write_newsletter_fields") == [("n4", {"is_read": True})]
            await ctx.settle()
            assert remote.newsletters["n4"].is_read

        asyncio.run(scenario())

    def test_read_state_of_archived_item_does_not_move_counter(self, ctx):
        async def scenario():
            await ctx.load(ARCHIVED_ONLY)
            await ctx.newsletters.mark_read("n4")
            assert ctx.newsletter_list(ARCHIVED_ONLY)[0].is_read
            assert ctx.unread_count() == 2
            await ctx.newsletters.mark_unread("n4")
            assert ctx.unread_count() == 2

        asyncio.run(scenario())

    def test_mark_unread_increments(self, ctx):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.mark_unread("n3")
            assert ctx.unread_count() == 3
            assert ctx.unread_count("s2") == 1
            await ctx.settle()
            assert ctx.unread_count() == 3

        asyncio.run(scenario())

    def test_filtered_list_membership_is_fixed_by_refetch(self, ctx):
        async def scenario():
            await ctx.load(UNREAD_ONLY)
            await ctx.newsletters.mark_read("n1")
            # Replaced in place first
            assert [r.id for r in ctx.newsletter_list(UNREAD_ONLY)] == ["n1", "n2"]
            await ctx.settle()
            assert [r.id for r in ctx.newsletter_list(UNREAD_ONLY)] == ["n2"]

        asyncio.run(scenario())


# ── Archive ─────────────────────────────────────────────────
class TestArchive:
    def test_archive_moves_source_and_unread_counts(self, ctx, remote):
        async def scenario():
            await ctx.load()
            assert source_count(ctx, "s1") == 2
            gate = remote.hold("write_newsletter_fields")

            task = asyncio.create_task(ctx.newsletters.archive("n1"))
            await remote.reached("write_newsletter_fields")
            assert source_count(ctx, "s1") == 1
            assert ctx.unread_count() == 1
            assert ctx.newsletter("n1").is_archived

            gate.set()
            await task
            await ctx.settle()

            assert source_count(ctx, "s1") == 1
            assert ctx.unread_count() == 1
            assert "n1" not in {r.id for r in ctx.newsletter_list()}

        asyncio.run(scenario())

    def test_unarchive_restores_counts(self, ctx):
        async def scenario():
            await ctx.load(ARCHIVED_ONLY)
            await ctx.newsletters.unarchive("n4")
            assert ctx.unread_count() == 3
            assert source_count(ctx, "s2") == 2
            await ctx.settle()
            assert "n4" in {r.id for r in ctx.newsletter_list()}
            assert ctx.newsletter_list(ARCHIVED_ONLY) == ()

        asyncio.run(scenario())

    def test_toggle_archive_returns_new_state(self, ctx, remote):
        async def scenario():
            await ctx.load()
            assert await ctx.newsletters.toggle_archive("n3") is True
            await ctx.settle()
            assert remote.newsletters["n3"].is_archived
            await ctx.load(ARCHIVED_ONLY)
            assert await ctx.newsletters.toggle_archive("n3") is False
            assert not remote.newsletters["n3"].is_archived

        asyncio.run(scenario())

    def test_toggle_archive_needs_state_when_uncached(self, ctx, remote):
        async def scenario():
            with pytest.raises(ValidationError):
                await ctx.newsletters.toggle_archive("n4")
            assert remote.called("write_newsletter_fields") == []

            assert await ctx.newsletters.toggle_archive("n4", archived=False) is False
            assert not remote.newsletters["n4"].is_archived

        asyncio.run(scenario())

    def test_toggle_archive_from_archived_view(self, ctx, remote):
        async def scenario():
            await ctx.load(ARCHIVED_ONLY)
            assert await ctx.newsletters.toggle_archive("n4") is False
            await ctx.settle()
            assert not remote.newsletters["n4"].is_archived

        asyncio.run(scenario())


# ── Like ────────────────────────────────────────────────────
class TestLike:
    def test_toggle_flips_and_leaves_counts(self, ctx, remote):
        async def scenario():
            await ctx.load()
            counts, sources = ctx.unread_counts(), ctx.sources()
            assert await ctx.newsletters.toggle_like("n2") is True
            assert ctx.newsletter("n2").is_liked
            assert ctx.unread_counts() is counts
            assert ctx.sources() is sources
            await ctx.settle()
            assert await ctx.newsletters.toggle_like("n2") is False
            assert remote.called("write_newsletter_fields")[-1] == ("n2", {"is_liked": False})

        asyncio.run(scenario())

    def test_explicit_state(self, ctx, remote):
        async def scenario():
            await ctx.load()
            assert await ctx.newsletters.toggle_like("n1", liked=True) is True
            await ctx.settle()
            assert remote.newsletters["n1"].is_liked

        asyncio.run(scenario())

    def test_toggle_needs_state_when_uncached(self, ctx, remote):
        async def scenario():
            with pytest.raises(ValidationError):
                await ctx.newsletters.toggle_like("n1")
            assert remote.called("write_newsletter_fields") == []

        asyncio.run(scenario())

    def test_failure_rolls_back(self, ctx, remote):
        async def scenario():
            await ctx.load()
            remote.fail("write_newsletter_fields")
            with pytest.raises(RemoteWriteError):
                await ctx.newsletters.toggle_like("n1")
            assert not ctx.newsletter("n1").is_liked

        asyncio.run(scenario())


# ── Bulk ────────────────────────────────────────────────────
class TestBulk:
    def test_one_batched_call_and_summed_delta(self, ctx, remote):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.bulk_mark_read(["n1", "n2"])
            assert ctx.unread_count() == 0
            assert ctx.unread_count("s1") == 0
            assert remote.called("write_newsletter_fields_bulk") == [(("n1", "n2"), {"is_read": True})]
            assert remote.called("write_newsletter_fields") == []

        asyncio.run(scenario())

    def test_failure_restores_every_target(self, ctx, remote):
        async def scenario():
            await ctx.load()
            inbox, counts, sources = ctx.newsletter_list(), ctx.unread_counts(), ctx.sources()
            remote.fail("write_newsletter_fields_bulk")
            with pytest.raises(RemoteWriteError):
                await ctx.newsletters.bulk_archive(["n1", "n3"])
            assert ctx.newsletter_list() is inbox
            assert ctx.unread_counts() is counts
            assert ctx.sources() is sources

        asyncio.run(scenario())

    def test_duplicate_ids_count_once(self, ctx, remote):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.bulk_mark_read(["n1", "n1"])
            assert ctx.unread_count() == 1
            assert remote.called("write_newsletter_fields") == [("n1", {"is_read": True})]

        asyncio.run(scenario())

    def test_bulk_unarchive_and_unread(self, ctx):
        async def scenario():
            await ctx.load(ARCHIVED_ONLY)
            await ctx.newsletters.bulk_unarchive(["n4"])
            await ctx.newsletters.bulk_mark_unread(["n3", "n4"])
            assert ctx.unread_count() == 4
            await ctx.settle()
            assert ctx.unread_count() == 4
            assert source_count(ctx, "s2") == 2

        asyncio.run(scenario())

    def test_empty_ids_rejected_before_any_change(self, ctx, remote):
        async def scenario():
            await ctx.load()
            inbox = ctx.newsletter_list()
            with pytest.raises(ValidationError):
                await ctx.newsletters.bulk_mark_read([])
            assert ctx.newsletter_list() is inbox
            assert remote.called("write_newsletter_fields_bulk") == []

        asyncio.run(scenario())


# ── Delete ──────────────────────────────────────────────────
class TestDelete:
    def test_removes_record_queue_entry_and_counts(self, ctx, remote):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.delete("n1")
            assert "n1" not in {r.id for r in ctx.newsletter_list()}
            assert "n1" not in {e.newsletter_id for e in ctx.reading_queue()}
            assert ctx.unread_count() == 1
            assert source_count(ctx, "s1") == 1
            assert remote.called("delete_newsletter") == [("n1",)]

            await ctx.settle()
            assert [e.id for e in ctx.reading_queue()] == ["qb", "qc"]
            assert ctx.unread_count() == 1

        asyncio.run(scenario())

    def test_failure_restores_list_and_queue(self, ctx, remote):
        async def scenario():
            await ctx.load()
            inbox, queue = ctx.newsletter_list(), ctx.reading_queue()
            remote.fail("delete_newsletter")
            with pytest.raises(RemoteWriteError):
                await ctx.newsletters.delete("n1")
            assert ctx.newsletter_list() is inbox
            assert ctx.reading_queue() is queue
            assert ctx.unread_count() == 2

        asyncio.run(scenario())

    def test_bulk_delete(self, ctx, remote):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.bulk_delete(["n1", "n3"])
            assert [r.id for r in ctx.newsletter_list()] == ["n2"]
            assert ctx.unread_count() == 1
            assert source_count(ctx, "s1") == 1
            assert source_count(ctx, "s2") == 0
            assert remote.called("delete_newsletters") == [(("n1", "n3"),)]

        asyncio.run(scenario())

    def test_detail_view_is_dropped(self, ctx):
        async def scenario():
            await ctx.load()
            ctx.watch_newsletter("n2")
            await ctx.cache.fetch(keys.newsletter_detail("n2"))
            await ctx.newsletters.delete("n2")
            assert not ctx.cache.has(keys.newsletter_detail("n2"))
            await ctx.settle()
            assert not ctx.cache.is_active(keys.newsletter_detail("n2"))

        asyncio.run(scenario())


# ── Tags ────────────────────────────────────────────────────
class TestTags:
    def test_update_tags_uses_known_tags(self, ctx, remote):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.update_tags("n1", ["t1", "t1"])
            tags = ctx.newsletter("n1").tags
            assert [(t.id, t.name) for t in tags] == [("t1", "ml")]
            assert remote.called("set_newsletter_tags") == [("n1", ("t1",))]

        asyncio.run(scenario())

    def test_invalid_tag_ids_rejected(self, ctx, remote):
        async def scenario():
            await ctx.load()
            with pytest.raises(ValidationError):
                await ctx.newsletters.update_tags("n1", [""])
            assert remote.called("set_newsletter_tags") == []

        asyncio.run(scenario())

    def test_remove_tag_everywhere(self, ctx):
        async def scenario():
            await ctx.load(ListFilter(tag_id="t1"))
            assert ctx.newsletters.remove_tag_everywhere("t1") == 1
            assert ctx.newsletter("n2").tags == ()
            assert ctx.newsletter_list(ListFilter(tag_id="t1"))[0].tags == ()

        asyncio.run(scenario())


# ── Guards and error mapping ────────────────────────────────
class TestGuards:
    def test_requires_signed_in_user(self, ctx, remote):
        async def scenario():
            ctx.session.sign_out()
            with pytest.raises(NotAuthenticatedError):
                await ctx.newsletters.mark_read("n1")
            assert remote.calls == []

        asyncio.run(scenario())

    def test_sign_out_drops_the_users_views(self, ctx, remote):
        async def scenario():
            await ctx.load()
            ctx.watch_newsletter("n1")
            ctx.sign_out()
            assert not ctx.session.is_authenticated
            assert ctx.cache.keys(keys.newsletter_lists(USER_ID)) == []
            assert not ctx.cache.has(keys.queue_list(USER_ID))
            assert not ctx.cache.is_active(keys.unread_count(USER_ID))
            assert not ctx.cache.is_active(keys.newsletter_detail("n1"))

            ctx.session.sign_in(USER_ID)
            assert ctx.newsletter_list() == ()
            assert ctx.unread_count() == 0

        asyncio.run(scenario())

    def test_remote_not_found_is_rolled_back_as_write_error(self, ctx, remote):
        async def scenario():
            await ctx.load()
            del remote.newsletters["n1"]
            with pytest.raises(RemoteWriteError) as excinfo:
                await ctx.newsletters.mark_read("n1")
            assert isinstance(excinfo.value.__cause__, NotFoundError)
            assert excinfo.value.operation == "mark_read"
            assert not ctx.newsletter("n1").is_read
            await ctx.settle()
            assert ctx.newsletter("n1") is None

        asyncio.run(scenario())

    def test_unexpected_errors_surface_as_write_errors(self, ctx, remote):
        async def scenario():
            await ctx.load()
            remote.fail("write_newsletter_fields", RuntimeError("boom"))
            with pytest.raises(RemoteWriteError) as excinfo:
                await ctx.newsletters.mark_read("n1")
            assert excinfo.value.operation == "mark_read"
            assert isinstance(excinfo.value.__cause__, RuntimeError)
            assert ctx.unread_count() == 2

        asyncio.run(scenario())


# ── Races with background reads ─────────────────────────────
class TestStaleReads:
    def test_read_in_flight_during_write_never_lands(self, ctx, remote):
        async def scenario():
            await ctx.load()
            key = keys.unread_count(USER_ID)
            seen = []
            ctx.cache.subscribe(lambda k: seen.append(ctx.cache.get(k).total) if k == key and ctx.cache.has(k) else None)

            gate = remote.hold("read_unread_count")
            ctx.cache.invalidate(key)
            await remote.reached("read_unread_count", times=2)

            await ctx.newsletters.mark_read("n1")
            gate.set()
            await ctx.settle()

            assert ctx.unread_count() == 1
            assert 2 not in seen

        asyncio.run(scenario())

    def test_counts_agree_with_lists_after_refresh(self, ctx):
        async def scenario():
            await ctx.load()
            await ctx.newsletters.mark_read("n1")
            await ctx.newsletters.archive("n2")
            await ctx.newsletters.mark_unread("n3")
            await ctx.refresh()

            inbox = ctx.newsletter_list()
            assert ctx.unread_count() == sum(1 for r in inbox if r.counts_as_unread)
            for source in ctx.sources():
                assert source.newsletter_count == sum(1 for r in inbox if r.source_id == source.id)

        asyncio.run(scenario())
