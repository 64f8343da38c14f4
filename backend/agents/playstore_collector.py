"""
Play Store Collector - reviews for the configured Android app.

Phase 1 pages through the review feed via google-play-scraper, one sort
order at a time. Phase 2 opens the "See all reviews" modal in a stealth
browser and scrolls it; in incremental mode it only runs when phase 1 found
something new or the last scrape is over a day old.

Reviews of the configured app are relevant by construction, so they skip
the text-based relevance filter.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from google_play_scraper import Sort, reviews

from agents.base import FetchedPage, Phase, RunContext, SourceOrchestrator
from models.ingestion import CanonicalItem, Review, SourceName, utcnow
from services.cursor_protocol import browser_pass_due
from services.dedup_ledger import content_fingerprint
from services.dom_extract import PLAY_REVIEWS, PlayReviewCard, extract
from services.errors import FatalRunError, TransientItemError
from services.humanize import human_click, human_hover, human_scroll, random_delay, wait_for_page_load
from services.retry import with_retry
from utils.timeparse import ensure_utc, parse_timestamp

logger = logging.getLogger(__name__)

PAGE_SIZE = 150
MAX_PAGES = 50
MAX_CONSECUTIVE_KNOWN = 20
SCROLLS_INCREMENTAL = 15
SCROLLS_FULL = 100
MAX_IDLE_SCROLLS = 3

FULL_SORTS = (Sort.NEWEST, Sort.MOST_RELEVANT, Sort.RATING)
INCREMENTAL_SORTS = (Sort.NEWEST,)
REVIEW_MODAL = '[role="dialog"]'


def api_review_to_item(raw: Dict[str, Any]) -> Review:
    review_id = raw.get("reviewId")
    if not review_id:
        raise TransientItemError("review without an identifier")
    at = raw.get("at")
    timestamp = ensure_utc(at) if at else utcnow()
    author = raw.get("userName") or "Anonymous"
    content = raw.get("content") or ""
    rating = int(raw.get("score") or 0)
    return Review(
        source=SourceName.PLAYSTORE,
        source_id=review_id,
        content_fingerprint=content_fingerprint(author, content, timestamp.date().isoformat(), rating),
        timestamp=timestamp,
        author=author,
        content=content,
        rating=rating,
        app_version=raw.get("reviewCreatedVersion") or raw.get("appVersion"),
        helpful_count=int(raw.get("thumbsUpCount") or 0),
        developer_reply=raw.get("replyContent"),
    )


def card_to_item(card: PlayReviewCard) -> Review:
    timestamp = parse_timestamp(card.date) or utcnow()
    author = card.user_name or "Anonymous"
    return Review(
        source=SourceName.PLAYSTORE,
        source_id=card.review_id,
        content_fingerprint=content_fingerprint(author, card.text, timestamp.date().isoformat(), card.rating),
        timestamp=timestamp,
        author=author,
        content=card.text,
        rating=card.rating,
        app_version=card.version,
        helpful_count=card.helpful_count,
    )


class PlayStoreCollector(SourceOrchestrator):
    source = SourceName.PLAYSTORE

    def __init__(self, *args, fetch_reviews=None, **kwargs):
        super().__init__(*args, **kwargs)
        # Synchronous google_play_scraper.reviews signature
        self._fetch_reviews = fetch_reviews or reviews

    @property
    def app_id(self) -> Optional[str]:
        return self.settings.playstore_app_id

    def prepare(self, ctx: RunContext) -> None:
        if not self.app_id:
            raise FatalRunError("PLAYSTORE_APP_ID is not configured")

    def is_relevant(self, item: CanonicalItem) -> bool:
        return True

    def phases(self, ctx: RunContext) -> List[Phase]:
        return [
            Phase("PHASE 1: Review Feed", self.collect_primary),
            Phase("PHASE 2: Browser Review Modal", self.collect_via_browser),
        ]

    # -------------------------------------------------------------------------
    # Phase 1
    # -------------------------------------------------------------------------

    async def _fetch_page(self, ctx: RunContext, sort: Sort, token) -> tuple:
        def call():
            return self._fetch_reviews(
                self.app_id,
                lang="en",
                country="us",
                sort=sort,
                count=PAGE_SIZE,
                continuation_token=token,
            )

        ctx.stats.network_calls += 1
        return await with_retry(
            lambda: asyncio.to_thread(call),
            governor=self.governor,
            source_key=self.source.value,
            max_retries=3,
            base_delay=2.0,
        )

    async def collect_sort(self, ctx: RunContext, sort: Sort) -> int:
        consecutive_known = 0

        async def fetch_page(token) -> Optional[FetchedPage]:
            nonlocal consecutive_known
            try:
                results, next_token = await self._fetch_page(ctx, sort, token)
            except Exception as e:
                logger.warning(f"  Review feed ({sort.name}) failed: {e}")
                return None

            items = []
            for raw in results or []:
                try:
                    items.append(api_review_to_item(raw))
                except (TransientItemError, ValueError) as e:
                    logger.debug(f"Skipping malformed review: {e}")

            stop = False
            if sort == Sort.NEWEST:
                for item in items:
                    if item.source_id in ctx.ledger.known_ids:
                        consecutive_known += 1
                    else:
                        consecutive_known = 0
                    if consecutive_known > MAX_CONSECUTIVE_KNOWN:
                        logger.info(f"  Hit {consecutive_known} consecutive known reviews, stopping")
                        stop = True
                        break
            if not results or len(results) < PAGE_SIZE:
                stop = True
            return FetchedPage(items=items, next_token=None if stop else next_token)

        logger.info(f"  Sort: {sort.name}")
        return await self.walk_pages(ctx, fetch_page, MAX_PAGES)

    async def collect_primary(self, ctx: RunContext) -> int:
        sorts = INCREMENTAL_SORTS if ctx.incremental else FULL_SORTS
        added = 0
        for sort in sorts:
            if ctx.deadline.expired():
                break
            added += await self.collect_sort(ctx, sort)
        ctx.primary_new = added
        return added

    # -------------------------------------------------------------------------
    # Phase 2
    # -------------------------------------------------------------------------

    async def collect_via_browser(self, ctx: RunContext) -> int:
        if not browser_pass_due(ctx.mode, ctx.primary_new, ctx.cursor, utcnow()):
            logger.info("  Skipped: no new reviews and last scrape is under 24h old")
            return 0

        max_scrolls = SCROLLS_INCREMENTAL if ctx.incremental else SCROLLS_FULL
        url = f"https://play.google.com/store/apps/details?id={self.app_id}&hl=en"
        added = 0
        async with self.browser_page("reviews") as page:
            if not await self.goto(ctx, page, url, timeout=30000):
                return 0
            await wait_for_page_load(page)
            try:
                await human_click(page, 'button:has-text("See all reviews")')
                await random_delay(1500, 2500)
            except LookupError:
                logger.info("  No 'See all reviews' button, reading reviews on the details page")

            try:
                # wheel events go to the element under the pointer
                await human_hover(page, REVIEW_MODAL)
            except LookupError:
                logger.debug("  No review modal, scrolling the page")

            idle = 0
            for _ in range(max_scrolls):
                if ctx.deadline.expired() or idle >= MAX_IDLE_SCROLLS:
                    break
                found = 0
                for card in await extract(page, PLAY_REVIEWS):
                    if self.offer(ctx, card_to_item(card)):
                        found += 1
                added += found
                idle = 0 if found else idle + 1
                await human_scroll(page, 1000)
                await random_delay(800, 1500)
        if added:
            logger.info(f"  +{added} from browser")
        return added
