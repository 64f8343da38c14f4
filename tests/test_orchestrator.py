"""
Source Orchestrator engine tests.

Tests verify:
- Full vs incremental runs and cursor advancement
- Stale items discarded and pagination stopped at known history
- Order of checks: stale, relevance, dedup
- Flush threshold, phase isolation, deadline handling
- A failed or cancelled run is recorded, flushes its buffer and leaves the cursor untouched
"""

import asyncio

import pytest

from agents.base import Deadline, FetchedPage, Phase
from conftest import FakeHttp, FakeSessions, FakeStore, ScriptedOrchestrator, at, cursor_at, make_mention
from models.ingestion import CollectionMode, RunStatus
from services.errors import FatalRunError


def build(store, governor, test_settings, clock, pages, **kwargs):
    return ScriptedOrchestrator(
        store,
        governor,
        FakeSessions(),
        settings=test_settings,
        http_factory=lambda: FakeHttp(lambda url, params: None),
        clock=clock,
        pages=pages,
        **kwargs,
    )


class TestFullRun:

    def test_first_run_is_full_and_creates_cursor(self, store, governor, test_settings, clock):
        pages = [FetchedPage([make_mention("a", at(3)), make_mention("b", at(1)), make_mention("c", at(2))])]
        result = asyncio.run(build(store, governor, test_settings, clock, pages).run())

        assert result.status == RunStatus.SUCCESS
        assert result.mode == CollectionMode.FULL
        assert result.items_found == 3
        assert result.items_new == 3
        cursor = store.cursors["reddit"]
        assert cursor.last_item_date == at(1)
        assert cursor.recent_item_ids == ["b", "c", "a"]
        assert store.runs[0]["status"] == RunStatus.SUCCESS

    def test_empty_run_creates_cursor_without_watermark(self, store, governor, test_settings, clock):
        result = asyncio.run(build(store, governor, test_settings, clock, []).run())
        assert result.status == RunStatus.SUCCESS
        assert store.cursors["reddit"].last_item_date is None

    def test_items_scored_before_persisting(self, store, governor, test_settings, clock):
        pages = [FetchedPage([make_mention("a", at(1), content="brand.co is amazing, I love it")])]
        asyncio.run(build(store, governor, test_settings, clock, pages).run())
        item = store.items[("reddit", "a")]
        assert item.sentiment_label == "positive"
        assert item.sentiment_score > 0

    def test_flush_threshold(self, store, governor, test_settings, clock):
        pages = [FetchedPage([make_mention(i, at(1)) for i in ("a", "b", "c")])]
        asyncio.run(build(store, governor, test_settings, clock, pages).run())
        assert store.insert_batches == [2, 1]


class TestIncrementalRun:

    def test_only_newer_items_accepted(self, store, governor, test_settings, clock):
        """3 newer + 2 older than the watermark: 3 accepted, cursor moves to the newest."""
        store.cursors["reddit"] = cursor_at("reddit", at(5))
        items = [
            make_mention("n1", at(1)), make_mention("n2", at(2)), make_mention("n3", at(3)),
            make_mention("o1", at(6)), make_mention("o2", at(7)),
        ]
        orchestrator = build(store, governor, test_settings, clock, [FetchedPage(items, next_token="p2")])
        result = asyncio.run(orchestrator.run())

        assert result.mode == CollectionMode.INCREMENTAL
        assert result.items_found == 3
        assert result.stats["stale_skipped"] == 2
        assert store.cursors["reddit"].last_item_date == at(1)
        assert set(store.cursors["reddit"].recent_item_ids) == {"n1", "n2", "n3"}

    def test_pagination_stops_at_known_history(self, store, governor, test_settings, clock):
        store.cursors["reddit"] = cursor_at("reddit", at(5))
        served = []

        class Orchestrator(ScriptedOrchestrator):
            async def scripted_phase(self, ctx):
                async def fetch(token):
                    served.append(token)
                    return FetchedPage([make_mention(f"x{len(served)}", at(9))], next_token="more")
                return await self.walk_pages(ctx, fetch, max_pages=10)

        orchestrator = Orchestrator(
            store, governor, FakeSessions(), settings=test_settings,
            http_factory=lambda: FakeHttp(lambda url, params: None), clock=clock,
        )
        asyncio.run(orchestrator.run())
        assert served == [None]

    def test_known_ids_deduplicated(self, store, governor, test_settings, clock):
        store.cursors["reddit"] = cursor_at("reddit", at(10), ids=["a"])
        pages = [FetchedPage([make_mention("a", at(1)), make_mention("b", at(1))])]
        result = asyncio.run(build(store, governor, test_settings, clock, pages).run())
        assert result.items_found == 1
        assert result.stats["duplicates_skipped"] == 1

    def test_watermark_never_regresses(self, store, governor, test_settings, clock):
        store.cursors["reddit"] = cursor_at("reddit", at(1))
        result = asyncio.run(build(store, governor, test_settings, clock, []).run())
        assert result.status == RunStatus.SUCCESS
        assert store.cursors["reddit"].last_item_date == at(1)


class TestItemPipeline:

    def test_irrelevant_items_filtered(self, store, governor, test_settings, clock):
        pages = [FetchedPage([
            make_mention("a", at(1), content="nothing to see here"),
            make_mention("b", at(1), content="the brand app is great"),
        ])]
        result = asyncio.run(build(store, governor, test_settings, clock, pages).run())
        assert result.items_found == 1
        assert result.stats["filtered_out"] == 1

    def test_first_party_community_bypasses_filter(self, store, governor, test_settings, clock):
        pages = [FetchedPage([make_mention("a", at(1), content="weekly thread", community="brandapp")])]
        result = asyncio.run(build(store, governor, test_settings, clock, pages).run())
        assert result.items_found == 1

    def test_stale_checked_before_relevance(self, store, governor, test_settings, clock):
        store.cursors["reddit"] = cursor_at("reddit", at(5))
        pages = [FetchedPage([make_mention("a", at(9), content="nothing to see here")])]
        result = asyncio.run(build(store, governor, test_settings, clock, pages).run())
        assert result.stats["stale_skipped"] == 1
        assert result.stats["filtered_out"] == 0


class TestFailureHandling:

    def test_phase_failure_is_isolated(self, store, governor, test_settings, clock):
        async def broken(ctx):
            raise RuntimeError("selector drifted")

        pages = [FetchedPage([make_mention("a", at(1))])]
        orchestrator = build(
            store, governor, test_settings, clock, pages,
            extra_phases=[Phase("PHASE 2: Broken", broken)],
        )
        result = asyncio.run(orchestrator.run())

        assert result.status == RunStatus.SUCCESS
        assert result.items_new == 1
        assert any("selector drifted" in e for e in result.errors)

    def test_failed_run_recorded_and_cursor_untouched(self, store, governor, test_settings, clock):
        class Failing(ScriptedOrchestrator):
            def prepare(self, ctx):
                raise FatalRunError("missing configuration")

        orchestrator = Failing(
            store, governor, FakeSessions(), settings=test_settings,
            http_factory=lambda: FakeHttp(lambda url, params: None), clock=clock,
        )
        result = asyncio.run(orchestrator.run())

        assert result.status == RunStatus.FAILED
        assert "missing configuration" in result.errors
        assert "reddit" not in store.cursors
        assert store.runs[0]["status"] == RunStatus.FAILED
        assert store.runs[0]["error"] == "missing configuration"

    def test_buffered_items_flushed_when_run_fails(self, governor, test_settings, clock):
        """The phase-boundary flush fails once; the best-effort flush still persists the item."""
        class LockedOnceStore(FakeStore):
            def __init__(self):
                super().__init__()
                self.locked = True

            def insert_many(self, items):
                if self.locked:
                    self.locked = False
                    raise RuntimeError("database is locked")
                return super().insert_many(items)

        locked = LockedOnceStore()
        pages = [FetchedPage([make_mention("a", at(1))])]
        result = asyncio.run(build(locked, governor, test_settings, clock, pages).run())

        assert result.status == RunStatus.FAILED
        assert "database is locked" in result.errors
        assert ("reddit", "a") in locked.items
        assert "reddit" not in locked.cursors
        assert locked.runs[0]["status"] == RunStatus.FAILED

    def test_cancelled_run_flushes_and_is_logged(self, store, governor, test_settings, clock):
        """Cancellation persists the buffer and closes the run log before propagating."""
        pages = [FetchedPage([make_mention("a", at(2))])]
        orchestrator = build(store, governor, test_settings, clock, pages)

        async def go():
            parked = asyncio.Event()

            async def hangs(ctx):
                orchestrator.offer(ctx, make_mention("b", at(1)))
                parked.set()
                await asyncio.Event().wait()

            orchestrator.extra_phases.append(Phase("PHASE 2: Hangs", hangs))
            task = asyncio.create_task(orchestrator.run())
            await parked.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(go())
        assert set(store.items) == {("reddit", "a"), ("reddit", "b")}
        assert store.runs[0]["status"] == RunStatus.FAILED
        assert store.runs[0]["error"] == "cancelled"
        assert "reddit" not in store.cursors

    def test_phases_skipped_after_deadline(self, store, governor, test_settings, clock):
        calls = []

        async def slow(ctx):
            calls.append("slow")
            clock.advance(10_000)
            return 0

        async def never(ctx):
            calls.append("never")
            return 0

        orchestrator = build(
            store, governor, test_settings, clock, [],
            extra_phases=[Phase("PHASE 2: Slow", slow), Phase("PHASE 3: Never", never)],
        )
        result = asyncio.run(orchestrator.run())
        assert calls == ["slow"]
        assert result.status == RunStatus.SUCCESS


class TestDeadline:

    def test_remaining_and_expired(self, clock):
        deadline = Deadline(30, clock=clock)
        clock.advance(10)
        assert deadline.remaining() == pytest.approx(20)
        assert not deadline.expired()
        clock.advance(20)
        assert deadline.expired()
        assert deadline.remaining() == 0
