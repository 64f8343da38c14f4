"""
Reddit Collector - exhaustive, incremental mention harvesting.

Six phases, cheapest and most precise first:
  1. brand community listings (always included)
  2. search grid: term x sort x time window, fully paginated
  3. search inside related communities
  4. comment search
  5. historical archive (full mode only)
  6. stealth browser pass over the search UI
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from agents.base import FetchedPage, Phase, RunContext, SourceOrchestrator
from models.ingestion import ItemKind, Mention, SourceName, utcnow
from services.dedup_ledger import content_fingerprint
from services.dom_extract import REDDIT_POSTS, RedditPostCard, extract
from services.errors import TransientItemError
from services.humanize import human_scroll, wait_for_page_load, warmup_session
from utils.timeparse import from_epoch

logger = logging.getLogger(__name__)

REDDIT_BASE = "https://www.reddit.com"
ARCHIVE_BASE = "https://api.pullpush.io/reddit/search"
ARCHIVE_KEY = "archive"

LISTING_PAGES = 10
SEARCH_PAGES = 10
COMMUNITY_PAGES = 5
COMMENT_PAGES = 5
BROWSER_SCROLLS = 5

FULL_SORTS = ("relevance", "new", "top", "comments")
FULL_WINDOWS = ("all", "year", "month", "week", "day")
INCREMENTAL_SORTS = ("new", "relevance")
INCREMENTAL_WINDOWS = ("day", "week")

REMOVED_BODIES = ("[removed]", "[deleted]")


# =============================================================================
# Normalization
# =============================================================================

def _permalink_url(permalink: Optional[str]) -> Optional[str]:
    if not permalink:
        return None
    return permalink if permalink.startswith("http") else f"https://reddit.com{permalink}"


def _author_url(author: Optional[str]) -> Optional[str]:
    if author and author != "[deleted]":
        return f"https://reddit.com/u/{author}"
    return None


def post_to_mention(post: Dict[str, Any]) -> Mention:
    """Normalize a t3 listing child."""
    name = post.get("name") or (f"t3_{post['id']}" if post.get("id") else None)
    if not name:
        raise TransientItemError("post without an identifier")

    title = post.get("title") or ""
    content = title
    selftext = post.get("selftext") or ""
    if selftext and selftext not in REMOVED_BODIES:
        content += "\n\n" + selftext
    images = (post.get("preview") or {}).get("images") or []
    if images:
        image_url = ((images[0] or {}).get("source") or {}).get("url")
        if image_url:
            content += "\n\n" + image_url.replace("&amp;", "&")

    author = post.get("author") or "[deleted]"
    link = post.get("url")
    return Mention(
        source=SourceName.REDDIT,
        kind=ItemKind.POST,
        source_id=name,
        content_fingerprint=content_fingerprint(title, author),
        timestamp=from_epoch(post.get("created_utc")) or utcnow(),
        author=author,
        author_url=_author_url(author),
        title=title,
        content=content.strip(),
        url=_permalink_url(post.get("permalink")),
        link_url=link if link and "reddit.com/r/" not in link else None,
        community=post.get("subreddit"),
        engagement_likes=post.get("score") or 0,
        engagement_comments=post.get("num_comments") or 0,
    )


def comment_to_mention(comment: Dict[str, Any]) -> Mention:
    """Normalize a t1 listing child."""
    name = comment.get("name") or (f"t1_{comment['id']}" if comment.get("id") else None)
    if not name:
        raise TransientItemError("comment without an identifier")

    body = (comment.get("body") or "").strip()
    author = comment.get("author") or "[deleted]"
    return Mention(
        source=SourceName.REDDIT,
        kind=ItemKind.COMMENT,
        source_id=name,
        content_fingerprint=content_fingerprint("comment", body[:100], author),
        timestamp=from_epoch(comment.get("created_utc")) or utcnow(),
        author=author,
        author_url=_author_url(author),
        content=body,
        url=_permalink_url(comment.get("permalink")),
        community=comment.get("subreddit"),
        engagement_likes=comment.get("score") or 0,
    )


def archive_to_post(item: Dict[str, Any]) -> Dict[str, Any]:
    """Reshape an archive submission into the listing post shape."""
    subreddit = item.get("subreddit") or "unknown"
    return {
        "id": item.get("id"),
        "name": item.get("name") or (f"t3_{item['id']}" if item.get("id") else None),
        "title": item.get("title") or "",
        "author": item.get("author") or "[deleted]",
        "subreddit": subreddit,
        "permalink": item.get("permalink") or f"/r/{subreddit}/comments/{item.get('id')}",
        "selftext": item.get("selftext") or "",
        "url": item.get("url"),
        "score": item.get("score") or 0,
        "num_comments": item.get("num_comments") or 0,
        "created_utc": item.get("created_utc"),
    }


def archive_to_comment(item: Dict[str, Any]) -> Dict[str, Any]:
    """Reshape an archive comment into the listing comment shape."""
    subreddit = item.get("subreddit") or "unknown"
    link_id = (item.get("link_id") or "").split("_")[-1]
    return {
        "id": item.get("id"),
        "name": item.get("name") or (f"t1_{item['id']}" if item.get("id") else None),
        "author": item.get("author") or "[deleted]",
        "body": item.get("body") or "",
        "score": item.get("score") or 0,
        "created_utc": item.get("created_utc"),
        "permalink": item.get("permalink") or f"/r/{subreddit}/comments/{link_id}/c/{item.get('id')}",
        "subreddit": subreddit,
    }


def card_to_post(card: RedditPostCard) -> Dict[str, Any]:
    post_id = card.post_id[3:] if card.post_id.startswith("t3_") else card.post_id
    return {
        "id": post_id,
        "name": f"t3_{post_id}",
        "title": card.title,
        "author": card.author or "[deleted]",
        "subreddit": card.subreddit or "unknown",
        "permalink": card.permalink or "",
        "selftext": "",
        "score": card.score,
        "num_comments": 0,
    }


def normalize_children(children: Sequence[Dict[str, Any]], kinds: Tuple[str, ...]) -> List[Mention]:
    items = []
    for child in children:
        kind = child.get("kind")
        if kind not in kinds:
            continue
        try:
            if kind == "t3":
                items.append(post_to_mention(child.get("data") or {}))
            else:
                items.append(comment_to_mention(child.get("data") or {}))
        except (TransientItemError, ValueError) as e:
            logger.debug(f"Skipping malformed {kind}: {e}")
    return items


# =============================================================================
# Orchestrator
# =============================================================================

class RedditCollector(SourceOrchestrator):
    source = SourceName.REDDIT

    def phases(self, ctx: RunContext) -> List[Phase]:
        return [
            Phase("PHASE 1: Brand Community Listings", self.collect_brand_listings),
            Phase("PHASE 2: Exhaustive Search Grid", self.collect_search_grid),
            Phase("PHASE 3: Related Community Search", self.collect_related_communities),
            Phase("PHASE 4: Comment Search", self.collect_comments),
            Phase("PHASE 5: Historical Archive", self.collect_archive),
            Phase("PHASE 6: Browser Verification", self.collect_via_browser),
        ]

    # -------------------------------------------------------------------------
    # Query plans
    # -------------------------------------------------------------------------

    def search_terms(self) -> List[str]:
        keyword = self.settings.brand_keyword
        terms = list(self.settings.search_terms)
        terms.extend(self.relevance.anchors.required_terms)
        if keyword:
            terms.append(keyword)
            terms.append(f'"{keyword}"')
            terms.extend(f"{keyword} {variant}" for variant in self.settings.search_variants)
        return list(dict.fromkeys(t for t in terms if t))

    def comment_terms(self) -> List[str]:
        keyword = self.settings.brand_keyword
        terms = list(self.relevance.anchors.required_terms)
        if keyword:
            terms.extend([keyword, f'"{keyword}"', f"{keyword} app", f"{keyword} game"])
        return list(dict.fromkeys(t for t in terms if t))

    @staticmethod
    def search_grid(incremental: bool) -> List[Tuple[str, str]]:
        sorts = INCREMENTAL_SORTS if incremental else FULL_SORTS
        windows = INCREMENTAL_WINDOWS if incremental else FULL_WINDOWS
        return [(sort, window) for sort in sorts for window in windows]

    # -------------------------------------------------------------------------
    # HTTP listing helper
    # -------------------------------------------------------------------------

    async def _fetch_listing(
        self,
        ctx: RunContext,
        path: str,
        params: Dict[str, Any],
        kinds: Tuple[str, ...],
        after: Optional[str],
    ) -> Optional[FetchedPage]:
        query = dict(params, limit=100, raw_json=1, include_over_18=1)
        if after:
            query["after"] = after
        data = await ctx.http.get_json(
            f"{REDDIT_BASE}{path}",
            source_key=self.source.value,
            params=query,
            stats=ctx.stats,
            deadline=ctx.deadline,
        )
        if not isinstance(data, dict):
            return None
        listing = data.get("data") or {}
        return FetchedPage(
            items=normalize_children(listing.get("children") or [], kinds),
            next_token=listing.get("after"),
        )

    async def _walk_listing(
        self,
        ctx: RunContext,
        path: str,
        params: Dict[str, Any],
        kinds: Tuple[str, ...],
        max_pages: int,
        always_include: bool = False,
    ) -> int:
        return await self.walk_pages(
            ctx,
            lambda after: self._fetch_listing(ctx, path, params, kinds, after),
            max_pages,
            always_include=always_include,
        )

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def collect_brand_listings(self, ctx: RunContext) -> int:
        added = 0
        for community in self.settings.brand_communities:
            if ctx.deadline.expired():
                break
            logger.info(f"  Fetching all posts in r/{community}")
            for sort in ("new", "hot"):
                added += await self._walk_listing(
                    ctx, f"/r/{community}/{sort}.json", {}, ("t3",), LISTING_PAGES, always_include=True
                )
            added += await self._walk_listing(
                ctx, f"/r/{community}/comments.json", {}, ("t1",), COMMENT_PAGES, always_include=True
            )
        return added

    async def collect_search_grid(self, ctx: RunContext) -> int:
        terms = self.search_terms()
        grid = self.search_grid(ctx.incremental)
        added = 0
        for index, term in enumerate(terms, start=1):
            if ctx.deadline.expired():
                break
            logger.info(f"  [{index}/{len(terms)}] \"{term}\"")
            for sort, window in grid:
                if ctx.deadline.expired():
                    break
                added += await self._walk_listing(
                    ctx, "/search.json", {"q": term, "sort": sort, "t": window}, ("t3",), SEARCH_PAGES
                )
        return added

    async def collect_related_communities(self, ctx: RunContext) -> int:
        excluded = {c.lower() for c in self.settings.exclude_communities}
        communities = [c for c in self.settings.secondary_communities if c.lower() not in excluded]
        sort, window = ("new", "month") if ctx.incremental else ("relevance", "all")
        added = 0
        for index, community in enumerate(communities, start=1):
            if ctx.deadline.expired():
                break
            found = await self._walk_listing(
                ctx,
                f"/r/{community}/search.json",
                {"q": self.settings.brand_keyword, "restrict_sr": "on", "sort": sort, "t": window},
                ("t3",),
                COMMUNITY_PAGES,
            )
            if found:
                logger.info(f"  [{index}/{len(communities)}] r/{community}: +{found}")
            added += found
        return added

    async def collect_comments(self, ctx: RunContext) -> int:
        sort, window = ("new", "week") if ctx.incremental else ("relevance", "all")
        added = 0
        for term in self.comment_terms():
            if ctx.deadline.expired():
                break
            logger.info(f"  Searching comments for: \"{term}\"")
            added += await self._walk_listing(
                ctx, "/search.json", {"q": term, "type": "comment", "sort": sort, "t": window},
                ("t1",), COMMENT_PAGES,
            )
        return added

    def archive_queries(self) -> List[Tuple[str, str, int]]:
        keyword = self.settings.brand_keyword
        queries = [
            ("submission", keyword, 500),
            ("submission", f'"{keyword} app"', 200),
            ("submission", f'"{keyword} game"', 200),
            ("comment", keyword, 500),
            ("comment", f'"{keyword} app"', 200),
        ]
        for anchor in self.relevance.anchors.required_terms:
            queries.append(("submission", anchor, 200))
            queries.append(("comment", anchor, 200))
        return queries

    async def collect_archive(self, ctx: RunContext) -> int:
        if ctx.incremental:
            logger.info("  Skipped for incremental run")
            return 0

        added = 0
        for kind, query, size in self.archive_queries():
            if ctx.deadline.expired():
                break
            logger.info(f"  Fetching archive {kind}s for \"{query}\"")
            data = await ctx.http.get_json(
                f"{ARCHIVE_BASE}/{kind}/",
                source_key=ARCHIVE_KEY,
                params={"q": query, "size": size},
                stats=ctx.stats,
                deadline=ctx.deadline,
            )
            if not isinstance(data, dict):
                continue

            found = 0
            for raw in data.get("data") or []:
                try:
                    if raw.get("title"):
                        item = post_to_mention(archive_to_post(raw))
                    elif raw.get("body"):
                        item = comment_to_mention(archive_to_comment(raw))
                    else:
                        continue
                except (TransientItemError, ValueError) as e:
                    logger.debug(f"Skipping malformed archive item: {e}")
                    continue
                if self.offer(ctx, item):
                    found += 1
            if found:
                logger.info(f"    +{found} items")
            added += found
        return added

    def browser_urls(self) -> List[str]:
        keyword = self.settings.brand_keyword
        urls = [
            f"{REDDIT_BASE}/search/?q={keyword}&sort=new",
            f"{REDDIT_BASE}/search/?q={keyword}&sort=relevance&t=all",
            f"{REDDIT_BASE}/search/?q={keyword}&type=comment&sort=new",
        ]
        urls.extend(f"{REDDIT_BASE}/search/?q={anchor}&sort=new" for anchor in self.relevance.anchors.required_terms)
        return urls

    async def collect_via_browser(self, ctx: RunContext) -> int:
        keyword = self.settings.brand_keyword.lower()
        added = 0
        async with self.browser_page("verification") as page:
            await warmup_session(page, [f"{REDDIT_BASE}/", f"{REDDIT_BASE}/r/popular/"])

            for url in self.browser_urls():
                if not await self.goto(ctx, page, url):
                    continue
                logger.info(f"  Visiting: {url.split('?', 1)[-1]}")
                await wait_for_page_load(page)
                for _ in range(BROWSER_SCROLLS):
                    if ctx.deadline.expired():
                        break
                    await human_scroll(page, 800)

                found = 0
                for card in await extract(page, REDDIT_POSTS):
                    if keyword not in card.title.lower():
                        continue
                    try:
                        item = post_to_mention(card_to_post(card))
                    except TransientItemError as e:
                        logger.debug(f"Skipping browser card: {e}")
                        continue
                    if self.offer(ctx, item):
                        found += 1
                if found:
                    logger.info(f"    +{found} from browser")
                added += found
        return added
