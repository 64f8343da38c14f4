"""
Pytest configuration for the collector tests.

Shared fakes: an in-memory store honouring the persistence contract, a
manual clock whose sleep advances time, a scripted JSON client and a
browser session manager that is never expected to launch anything.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from agents.base import FetchedPage, Phase, SourceOrchestrator
from config import Settings
from models.ingestion import Cursor, ItemKind, Mention, RunStatus, SourceName, utcnow
from services.rate_governor import RateGovernor


# =============================================================================
# FAKES
# =============================================================================


class FakeClock:
    """Monotonic clock advanced only by `sleep` or `advance`."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeStore:
    """In-memory persistence collaborator."""

    def __init__(self):
        self.cursors: Dict[str, Cursor] = {}
        self.items: Dict[tuple, object] = {}
        self.insert_batches: List[int] = []
        self.runs: List[dict] = []

    def get_cursor(self, source):
        return self.cursors.get(source)

    def update_cursor(self, source, last_item_date=None, recent_item_ids=None):
        previous = self.cursors.get(source)
        self.cursors[source] = Cursor(
            source=source,
            last_scraped_at=utcnow(),
            last_item_date=last_item_date if last_item_date is not None else (previous.last_item_date if previous else None),
            recent_item_ids=recent_item_ids if recent_item_ids is not None else (previous.recent_item_ids if previous else []),
        )

    def get_recent_external_ids(self, source, limit=1000):
        return [sid for (src, sid) in self.items if src == source][:limit]

    def insert_many(self, items):
        new = 0
        for item in items:
            key = (item.source.value, item.source_id)
            if key not in self.items:
                new += 1
            self.items[key] = item
        self.insert_batches.append(len(items))
        return new

    def log_run_start(self, source):
        self.runs.append({"source": source, "status": RunStatus.RUNNING})
        return len(self.runs)

    def log_run_end(self, run_id, status, items_found, items_new, error=None):
        self.runs[run_id - 1].update(
            status=status, items_found=items_found, items_new=items_new, error=error
        )


class FakeHttp:
    """Stands in for SourceHttpClient; `handler(url, params)` returns decoded JSON or None."""

    def __init__(self, handler: Callable[[str, Optional[dict]], object]):
        self.handler = handler
        self.calls: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def get_json(self, url, *, source_key, params=None, stats=None, deadline=None):
        if deadline is not None and deadline.expired():
            return None
        self.calls.append((url, dict(params or {})))
        if stats is not None:
            stats.network_calls += 1
        return self.handler(url, params)


class FakeSessions:
    """Session manager whose browser is never needed by HTTP-only tests."""

    def __init__(self, page=None):
        self.page = page
        self.sessions_opened = 0
        self.closed = 0

    @asynccontextmanager
    async def session(self, source, use_proxy=False, load_cookies=True):
        self.sessions_opened += 1
        yield self.page

    async def close(self):
        self.closed += 1


class ScriptedOrchestrator(SourceOrchestrator):
    """Orchestrator whose single phase walks pre-built pages."""

    source = SourceName.REDDIT

    def __init__(self, *args, pages=None, extra_phases=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.pages: List[FetchedPage] = pages or []
        self.extra_phases: List[Phase] = extra_phases or []

    async def scripted_phase(self, ctx):
        pages = iter(self.pages)

        async def fetch(token):
            return next(pages, None)

        return await self.walk_pages(ctx, fetch, max_pages=len(self.pages) or 1)

    def phases(self, ctx):
        return [Phase("PHASE 1: Scripted", self.scripted_phase)] + self.extra_phases


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def test_settings(tmp_path):
    """Settings pinned to a tmp directory and a known brand vocabulary."""
    return Settings(
        data_dir=tmp_path,
        db_path=tmp_path / "brandwatch.db",
        cookies_dir=tmp_path / "cookies",
        logs_dir=tmp_path / "logs",
        search_terms=["brand"],
        brand_required_terms=["brand.co"],
        brand_keyword="brand",
        brand_communities=["brandapp"],
        context_keywords=["app", "game"],
        search_variants=["app"],
        exclude_patterns=[r"\bbrand new\b"],
        exclude_communities=["spamhub"],
        secondary_communities=["androidapps", "spamhub"],
        playstore_app_id="com.brand.app",
        appstore_app_id="123456",
        flush_threshold=2,
    )


@pytest.fixture
def governor(clock):
    return RateGovernor(clock=clock, sleep=clock.sleep, jitter_range=(0.0, 0.0))


def make_mention(
    source_id: str,
    timestamp: datetime,
    content: str = "brand.co is my favourite app",
    kind: ItemKind = ItemKind.POST,
    community: Optional[str] = "androidapps",
) -> Mention:
    return Mention(
        source=SourceName.REDDIT,
        kind=kind,
        source_id=source_id,
        content_fingerprint=f"fp-{source_id}",
        timestamp=timestamp,
        author="someone",
        content=content,
        community=community,
    )


def at(hours_ago: float) -> datetime:
    """Aware UTC timestamp `hours_ago` before a fixed reference point."""
    return datetime(2024, 6, 1, 12, tzinfo=timezone.utc) - timedelta(hours=hours_ago)


def cursor_at(source: str, watermark: Optional[datetime], ids=(), scraped_hours_ago: float = 1) -> Cursor:
    return Cursor(
        source=source,
        last_scraped_at=utcnow() - timedelta(hours=scraped_hours_ago),
        last_item_date=watermark,
        recent_item_ids=list(ids),
    )

