"""
App Store Collector - reviews for the configured iOS app.

Phase 1 walks the public customer-review RSS feed across regional
storefronts. Phase 2 scrolls the web review listing for a few key
storefronts; browser reviews carry no native ID, so they get a stable hash.
"""
import hashlib
import logging
from typing import Any, Dict, List, Optional

from agents.base import FetchedPage, Phase, RunContext, SourceOrchestrator
from models.ingestion import CanonicalItem, Review, SourceName, utcnow
from services.cursor_protocol import browser_pass_due
from services.dedup_ledger import content_fingerprint
from services.dom_extract import APPSTORE_REVIEWS, AppStoreReviewCard, extract
from services.errors import FatalRunError, TransientItemError
from services.humanize import human_click, human_scroll, random_delay, wait_for_page_load
from utils.timeparse import parse_timestamp

logger = logging.getLogger(__name__)

RSS_URL = "https://itunes.apple.com/{country}/rss/customerreviews/page={page}/id={app_id}/sortBy=mostRecent/json"
RSS_MAX_PAGES = 10

STOREFRONTS = (
    "in", "us", "gb", "ca", "au", "nz", "sg", "my", "ph", "id",
    "th", "vn", "pk", "bd", "lk", "np", "ae", "sa", "za", "eg",
    "ng", "ke", "de", "fr", "it", "es", "nl", "be", "pt", "pl",
    "ru", "tr", "se", "no", "dk", "fi", "at", "ch", "ie", "mx",
    "br", "ar", "cl", "co", "pe", "jp", "kr", "tw", "hk", "cn",
)
BROWSER_STOREFRONTS = ("in", "us", "gb")

SCROLLS_INCREMENTAL = 25
SCROLLS_FULL = 50
MAX_IDLE_SCROLLS = 3


def _label(entry: Dict[str, Any], *path: str) -> Optional[str]:
    node: Any = entry
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if isinstance(node, dict):
        node = node.get("label")
    return node if isinstance(node, str) else None


def rss_entries(data: Any) -> List[Dict[str, Any]]:
    """Review entries from one feed page; the app metadata entry is dropped."""
    if not isinstance(data, dict):
        return []
    entries = (data.get("feed") or {}).get("entry") or []
    if isinstance(entries, dict):
        entries = [entries]
    return [e for e in entries if isinstance(e, dict) and "im:name" not in e]


def rss_entry_to_item(entry: Dict[str, Any], country: str) -> Review:
    review_id = _label(entry, "id")
    if not review_id:
        raise TransientItemError("feed entry without an identifier")
    timestamp = parse_timestamp(_label(entry, "updated")) or utcnow()
    author = _label(entry, "author", "name") or "Anonymous"
    title = _label(entry, "title") or ""
    content = _label(entry, "content") or ""
    rating = int(_label(entry, "im:rating") or 0)
    return Review(
        source=SourceName.APPSTORE,
        source_id=review_id,
        content_fingerprint=content_fingerprint(author, title, content, rating),
        timestamp=timestamp,
        author=author,
        title=title,
        content=content,
        rating=rating,
        app_version=_label(entry, "im:version"),
        community=country.upper(),
    )


def browser_review_id(country: str, card: AppStoreReviewCard) -> str:
    key = "|".join([country, card.author, card.title, card.content, card.date, str(card.rating)]).lower()
    return "browser-" + hashlib.sha1(key.encode()).hexdigest()


def card_to_item(card: AppStoreReviewCard, country: str) -> Review:
    return Review(
        source=SourceName.APPSTORE,
        source_id=browser_review_id(country, card),
        content_fingerprint=content_fingerprint(card.author, card.title, card.content, card.rating),
        timestamp=parse_timestamp(card.date) or utcnow(),
        author=card.author,
        title=card.title,
        content=card.content,
        rating=card.rating,
        community=country.upper(),
    )


class AppStoreCollector(SourceOrchestrator):
    source = SourceName.APPSTORE

    @property
    def app_id(self) -> Optional[str]:
        return self.settings.appstore_app_id

    def prepare(self, ctx: RunContext) -> None:
        if not self.app_id:
            raise FatalRunError("APPSTORE_APP_ID is not configured")

    def is_relevant(self, item: CanonicalItem) -> bool:
        return True

    def phases(self, ctx: RunContext) -> List[Phase]:
        return [
            Phase("PHASE 1: Regional Review Feeds", self.collect_primary),
            Phase("PHASE 2: Browser Review Listing", self.collect_via_browser),
        ]

    async def _fetch_feed_page(self, ctx: RunContext, country: str, token: Optional[str]) -> Optional[FetchedPage]:
        page_number = int(token or 1)
        data = await ctx.http.get_json(
            RSS_URL.format(country=country, page=page_number, app_id=self.app_id),
            source_key=self.source.value,
            stats=ctx.stats,
            deadline=ctx.deadline,
        )
        items = []
        for entry in rss_entries(data):
            try:
                items.append(rss_entry_to_item(entry, country))
            except (TransientItemError, ValueError) as e:
                logger.debug(f"Skipping malformed feed entry: {e}")
        return FetchedPage(items=items, next_token=str(page_number + 1))

    async def collect_primary(self, ctx: RunContext) -> int:
        added = 0
        for country in STOREFRONTS:
            if ctx.deadline.expired():
                break
            found = await self.walk_pages(
                ctx,
                lambda token, country=country: self._fetch_feed_page(ctx, country, token),
                RSS_MAX_PAGES,
            )
            if found:
                logger.info(f"  {country.upper()}: +{found}")
            added += found
        ctx.primary_new = added
        return added

    async def collect_via_browser(self, ctx: RunContext) -> int:
        if not browser_pass_due(ctx.mode, ctx.primary_new, ctx.cursor, utcnow()):
            logger.info("  Skipped: no new reviews and last scrape is under 24h old")
            return 0

        max_scrolls = SCROLLS_INCREMENTAL if ctx.incremental else SCROLLS_FULL
        added = 0
        async with self.browser_page("reviews") as page:
            for country in BROWSER_STOREFRONTS:
                if ctx.deadline.expired():
                    break
                url = f"https://apps.apple.com/{country}/app/id{self.app_id}"
                if not await self.goto(ctx, page, url, timeout=30000):
                    continue
                await wait_for_page_load(page)
                try:
                    await human_click(page, 'a[href*="see-all/reviews"]')
                    await wait_for_page_load(page)
                except LookupError:
                    logger.debug(f"  No review listing link for {country.upper()}")

                found = 0
                idle = 0
                for _ in range(max_scrolls):
                    if ctx.deadline.expired() or idle >= MAX_IDLE_SCROLLS:
                        break
                    new_here = 0
                    for card in await extract(page, APPSTORE_REVIEWS):
                        if self.offer(ctx, card_to_item(card, country)):
                            new_here += 1
                    found += new_here
                    idle = 0 if new_here else idle + 1
                    await human_scroll(page, 1000)
                    await random_delay(800, 1500)
                if found:
                    logger.info(f"  {country.upper()}: +{found} from browser")
                added += found
        return added
