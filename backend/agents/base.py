"""
Source Orchestrator - shared run engine for every collector.

A run is an ordered list of phases executed under a wall-clock deadline:

    load cursor -> pick mode/budget -> log run start -> seed dedup ledger
    -> phase 1 .. phase N (each isolated, flushed at its boundary)
    -> final flush -> advance cursor -> log run end

The buffer, dedup ledger and counters live on an explicit RunContext handed
to every phase; nothing is shared through instance state between runs. A run
never raises: anything that escapes is logged, the buffer is flushed on a
best-effort basis and the run is recorded as failed. Cancellation gets the
same flush and run-log treatment before it propagates.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from config import settings as default_settings
from models.ingestion import (
    CanonicalItem, CollectionMode, Cursor, RunResult, RunStats, RunStatus, SourceName, utcnow,
)
from services.cursor_protocol import CursorTracker, is_newer, page_exhausted, select_mode, watermark_of
from services.dedup_ledger import DedupLedger
from services.rate_governor import RateGovernor
from services.relevance_filter import RelevanceFilter
from services.sentiment import SentimentScorer, sentiment_scorer
from services.source_http import SourceHttpClient
from services.stealth_browser import StealthSessionManager

logger = logging.getLogger(__name__)


class Deadline:
    """Cooperative wall-clock budget for one run."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.budget_seconds = budget_seconds
        self.started_at = clock()

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self.budget_seconds


@dataclass
class RunContext:
    """Everything a phase reads or mutates during one run."""
    source: SourceName
    mode: CollectionMode
    cursor: Optional[Cursor]
    deadline: Deadline
    ledger: DedupLedger
    stats: RunStats = field(default_factory=RunStats)
    buffer: List[CanonicalItem] = field(default_factory=list)
    tracker: CursorTracker = field(default_factory=CursorTracker)
    http: Optional[SourceHttpClient] = None
    primary_new: int = 0  # marketplace phase 1 additions, read by the browser pass

    @property
    def incremental(self) -> bool:
        return self.mode == CollectionMode.INCREMENTAL

    @property
    def watermark(self) -> Optional[datetime]:
        return watermark_of(self.cursor)


@dataclass
class Phase:
    name: str
    run: Callable[[RunContext], Awaitable[int]]


@dataclass
class FetchedPage:
    """One page of normalized items plus the token for the next page."""
    items: List[CanonicalItem]
    next_token: Optional[str] = None


class SourceOrchestrator:
    """Base class for per-source collectors. Subclasses provide `phases()`."""

    source: SourceName

    def __init__(
        self,
        store,
        governor: RateGovernor,
        sessions: StealthSessionManager,
        relevance: Optional[RelevanceFilter] = None,
        settings=None,
        sentiment: Optional[SentimentScorer] = None,
        http_factory: Optional[Callable[[], SourceHttpClient]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or default_settings
        self.store = store
        self.governor = governor
        self.sessions = sessions
        self.relevance = relevance or RelevanceFilter.from_settings(self.settings)
        self.sentiment = sentiment or sentiment_scorer
        self._http_factory = http_factory or (lambda: SourceHttpClient(self.governor))
        self._clock = clock

    # =========================================================================
    # Subclass hooks
    # =========================================================================

    def phases(self, ctx: RunContext) -> List[Phase]:
        raise NotImplementedError

    def prepare(self, ctx: RunContext) -> None:
        """Validate per-source preconditions; raise to fail the run."""

    def is_relevant(self, item: CanonicalItem) -> bool:
        return self.relevance.is_relevant(item.relevance_text, item.community)

    # =========================================================================
    # Item pipeline
    # =========================================================================

    def offer(self, ctx: RunContext, item: CanonicalItem, always_include: bool = False) -> bool:
        """stale -> relevance -> dedup -> buffer. Returns True if accepted."""
        if ctx.incremental and not is_newer(item.timestamp, ctx.watermark):
            ctx.stats.stale_skipped += 1
            return False
        if not always_include and not self.is_relevant(item):
            ctx.stats.filtered_out += 1
            return False
        if not ctx.ledger.admit(item):
            ctx.stats.duplicates_skipped += 1
            return False

        ctx.stats.count_found(item.kind)
        ctx.buffer.append(item)
        ctx.tracker.observe(item)
        if len(ctx.buffer) >= self.settings.flush_threshold:
            self.flush(ctx)
        return True

    def flush(self, ctx: RunContext) -> int:
        """Score and persist the buffer. Returns how many rows were new."""
        if not ctx.buffer:
            return 0
        for item in ctx.buffer:
            result = self.sentiment.score(item.content or getattr(item, "title", None))
            item.sentiment_score = result.value
            item.sentiment_label = result.label

        saved = self.store.insert_many(ctx.buffer)
        ctx.stats.saved += saved
        if saved > 0:
            logger.info(f"  Saved {saved} to database (total: {ctx.stats.saved})")
        ctx.buffer.clear()
        return saved

    async def walk_pages(
        self,
        ctx: RunContext,
        fetch_page: Callable[[Optional[str]], Awaitable[Optional[FetchedPage]]],
        max_pages: int,
        always_include: bool = False,
    ) -> int:
        """Drive a paginated query, stopping early once a page holds nothing newer than the watermark."""
        token: Optional[str] = None
        added = 0
        for _ in range(max_pages):
            if ctx.deadline.expired():
                break
            page = await fetch_page(token)
            if page is None or not page.items:
                break
            for item in page.items:
                if self.offer(ctx, item, always_include=always_include):
                    added += 1
            if page_exhausted([i.timestamp for i in page.items], ctx.watermark):
                logger.debug(f"  Reached known history for {self.source.value}, stopping pagination")
                break
            token = page.next_token
            if not token:
                break
        return added

    # =========================================================================
    # Browser helpers
    # =========================================================================

    @asynccontextmanager
    async def browser_page(self, label: str) -> AsyncIterator:
        """Stealth page for one browser phase; screenshot to logs/debug if the phase fails."""
        async with self.sessions.session(
            self.source.value, use_proxy=self.settings.proxy is not None
        ) as page:
            try:
                yield page
            except Exception:
                await self.save_debug_screenshot(page, label)
                raise

    async def save_debug_screenshot(self, page, label: str) -> Optional[Path]:
        debug_dir = self.settings.logs_dir / "debug"
        path = debug_dir / f"{self.source.value}-{label}-{utcnow().strftime('%Y%m%dT%H%M%S')}.png"
        try:
            debug_dir.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path), full_page=True)
            logger.info(f"Saved error screenshot to {path}")
            return path
        except Exception as e:
            logger.debug(f"Could not capture screenshot: {e}")
            return None

    async def goto(self, ctx: RunContext, page, url: str, timeout: int = 20000,
                   wait_until: str = "domcontentloaded") -> bool:
        """Rate-governed navigation. False if the deadline passed or the load failed."""
        if ctx.deadline.expired():
            return False
        await self.governor.acquire(self.source.value)
        ctx.stats.network_calls += 1
        try:
            await page.goto(url, wait_until=wait_until, timeout=timeout)
        except Exception as e:
            self.governor.on_failure(self.source.value)
            logger.debug(f"  Navigation to {url} failed: {e}")
            return False
        self.governor.on_success(self.source.value)
        return True

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    def _seed_ledger(self, ctx: RunContext) -> None:
        if not ctx.incremental:
            return
        ctx.ledger.seed(ctx.cursor.recent_item_ids)
        ctx.ledger.seed(self.store.get_recent_external_ids(self.source.value, self.settings.recent_ids_lookup))
        logger.info(f"Loaded {len(ctx.ledger.known_ids)} known IDs for deduplication")

    async def _run_phases(self, ctx: RunContext) -> None:
        for phase in self.phases(ctx):
            if ctx.deadline.expired():
                logger.info(f"Time budget exhausted, skipping {phase.name}")
                continue

            logger.info("")
            logger.info(phase.name)
            logger.info("-" * len(phase.name))
            try:
                added = await phase.run(ctx)
                if added:
                    logger.info(f"  {phase.name}: +{added}")
            except Exception as e:
                logger.error(f"{phase.name} failed: {e}")
                ctx.stats.errors.append(f"{phase.name}: {e}")
            self.flush(ctx)

    def _log_summary(self, ctx: RunContext) -> None:
        stats = ctx.stats
        logger.info("========================================")
        logger.info(f"{self.source.value.upper()} RUN COMPLETE - FINAL STATS")
        logger.info("========================================")
        logger.info(f"Duration: {ctx.deadline.elapsed():.1f}s")
        logger.info(f"Network Calls: {stats.network_calls}")
        logger.info(f"Rate Limit Hits: {stats.rate_limit_hits}")
        logger.info(f"Posts Found: {stats.posts_found}")
        logger.info(f"Comments Found: {stats.comments_found}")
        logger.info(f"Reviews Found: {stats.reviews_found}")
        logger.info(f"Duplicates Skipped: {stats.duplicates_skipped}")
        logger.info(f"Filtered Out: {stats.filtered_out}")
        logger.info(f"Stale Skipped: {stats.stale_skipped}")
        logger.info(f"Saved: {stats.saved}")

    async def run(self) -> RunResult:
        """Execute one collection run.

        Never raises, except to let cancellation of the calling task through
        once the buffer is flushed and the run is logged as failed.
        """
        source = self.source.value
        started_at = utcnow()
        ctx: Optional[RunContext] = None
        run_id: Optional[int] = None
        status = RunStatus.FAILED
        error: Optional[str] = None

        try:
            cursor = self.store.get_cursor(source)
            mode = select_mode(cursor)
            budget = self.settings.time_budget(source, mode == CollectionMode.INCREMENTAL)
            ctx = RunContext(
                source=self.source,
                mode=mode,
                cursor=cursor,
                deadline=Deadline(budget, clock=self._clock),
                ledger=DedupLedger(),
                tracker=CursorTracker(self.settings.cursor_recent_ids),
            )

            logger.info("========================================")
            logger.info(f"Starting {source} collection (mode: {mode.value}, budget: {budget}s)")
            if ctx.watermark:
                logger.info(f"Fetching items newer than {ctx.watermark.isoformat()}")

            run_id = self.store.log_run_start(source)
            self.prepare(ctx)
            self._seed_ledger(ctx)

            async with self._http_factory() as http:
                ctx.http = http
                await self._run_phases(ctx)

            self.flush(ctx)
            advance = ctx.tracker.advance(cursor)
            self.store.update_cursor(source, advance.last_item_date, advance.recent_item_ids)
            if advance.last_item_date:
                logger.info(f"Cursor advanced to {advance.last_item_date.isoformat()}")
            status = RunStatus.SUCCESS

        except asyncio.CancelledError:
            error = "cancelled"
            logger.warning(f"{source} run cancelled, flushing buffered items")
            self._fail_softly(ctx, error)
            self._record_run_end(run_id, status, ctx, error)
            raise

        except Exception as e:
            error = str(e) or type(e).__name__
            logger.exception(f"{source} run failed: {error}")
            self._fail_softly(ctx, error)

        stats = self._record_run_end(run_id, status, ctx, error)
        if ctx is not None:
            self._log_summary(ctx)

        return RunResult(
            source=source,
            mode=ctx.mode if ctx is not None else CollectionMode.FULL,
            status=status,
            items_found=stats.items_found,
            items_new=stats.saved,
            errors=list(stats.errors) if ctx is not None else [error or "unknown error"],
            started_at=started_at,
            completed_at=utcnow(),
            stats=stats.to_dict(),
        )

    def _fail_softly(self, ctx: Optional[RunContext], error: str) -> None:
        """Record the error and persist whatever is still buffered."""
        if ctx is None:
            return
        ctx.stats.errors.append(error)
        try:
            self.flush(ctx)
        except Exception as flush_error:
            logger.error(f"Best-effort flush failed: {flush_error}")

    def _record_run_end(self, run_id: Optional[int], status: RunStatus,
                        ctx: Optional[RunContext], error: Optional[str]) -> RunStats:
        stats = ctx.stats if ctx is not None else RunStats()
        if run_id is not None:
            try:
                self.store.log_run_end(run_id, status, stats.items_found, stats.saved, error)
            except Exception as e:
                logger.error(f"Could not record run end for {self.source.value}: {e}")
        return stats
