"""
Reddit collector tests: payload normalization, query plans and HTTP phases
against a scripted JSON client.
"""

import asyncio

import pytest

from agents.base import Deadline, RunContext
from agents.reddit_collector import (
    RedditCollector,
    archive_to_comment,
    archive_to_post,
    card_to_post,
    comment_to_mention,
    normalize_children,
    post_to_mention,
)
from conftest import FakeHttp, FakeSessions, cursor_at, at
from models.ingestion import CollectionMode, ItemKind, SourceName
from services.dedup_ledger import DedupLedger
from services.dom_extract import RedditPostCard
from services.errors import TransientItemError

POST = {
    "name": "t3_abc",
    "id": "abc",
    "title": "Brand app review",
    "selftext": "Loving the duels",
    "author": "alice",
    "subreddit": "androidapps",
    "permalink": "/r/androidapps/comments/abc/brand_app_review/",
    "url": "https://brand.co/download",
    "score": 42,
    "num_comments": 7,
    "created_utc": 1717243200,
    "preview": {"images": [{"source": {"url": "https://i.redd.it/x.png?a=1&amp;b=2"}}]},
}

COMMENT = {
    "name": "t1_def",
    "body": "  brand app is great  ",
    "author": "bob",
    "subreddit": "androidapps",
    "permalink": "/r/androidapps/comments/abc/x/def/",
    "score": 3,
    "created_utc": 1717243300,
}


def listing(*children, after=None):
    return {"data": {"children": list(children), "after": after}}


def make_ctx(http, mode=CollectionMode.FULL, cursor=None, clock=None):
    return RunContext(
        source=SourceName.REDDIT,
        mode=mode,
        cursor=cursor,
        deadline=Deadline(600, clock=clock) if clock else Deadline(600),
        ledger=DedupLedger(),
        http=http,
    )


@pytest.fixture
def collector(store, governor, test_settings, clock):
    return RedditCollector(store, governor, FakeSessions(), settings=test_settings, clock=clock)


class TestNormalization:

    def test_post_content_and_links(self):
        mention = post_to_mention(POST)
        assert mention.kind == ItemKind.POST
        assert mention.source_id == "t3_abc"
        assert mention.content.startswith("Brand app review\n\nLoving the duels")
        assert mention.content.endswith("https://i.redd.it/x.png?a=1&b=2")
        assert mention.url == "https://reddit.com/r/androidapps/comments/abc/brand_app_review/"
        assert mention.link_url == "https://brand.co/download"
        assert mention.author_url == "https://reddit.com/u/alice"
        assert mention.engagement_likes == 42
        assert mention.engagement_comments == 7
        assert mention.community == "androidapps"
        assert mention.timestamp.tzinfo is not None

    def test_removed_selftext_omitted(self):
        mention = post_to_mention(dict(POST, selftext="[removed]", preview=None))
        assert mention.content == "Brand app review"

    def test_deleted_author_has_no_profile(self):
        assert post_to_mention(dict(POST, author="[deleted]")).author_url is None

    def test_post_without_identifier(self):
        with pytest.raises(TransientItemError):
            post_to_mention({"title": "orphan"})

    def test_comment(self):
        mention = comment_to_mention(COMMENT)
        assert mention.kind == ItemKind.COMMENT
        assert mention.content == "brand app is great"
        assert mention.url == "https://reddit.com/r/androidapps/comments/abc/x/def/"

    def test_normalize_children_filters_kinds(self):
        children = [{"kind": "t3", "data": POST}, {"kind": "t1", "data": COMMENT}, {"kind": "t5", "data": {}}]
        assert [m.kind for m in normalize_children(children, ("t3",))] == [ItemKind.POST]
        assert len(normalize_children(children, ("t3", "t1"))) == 2

    def test_archive_shapes(self):
        post = archive_to_post({"id": "zz", "title": "brand", "subreddit": "apps", "created_utc": 1})
        assert post["name"] == "t3_zz"
        assert post["permalink"] == "/r/apps/comments/zz"
        comment = archive_to_comment({"id": "cc", "body": "hi", "link_id": "t3_zz", "subreddit": "apps"})
        assert comment["name"] == "t1_cc"
        assert comment["permalink"] == "/r/apps/comments/zz/c/cc"

    def test_card_to_post(self):
        card = RedditPostCard(post_id="t3_q1", title="brand rocks", permalink="/r/apps/comments/q1/x/", score="12")
        mention = post_to_mention(card_to_post(card))
        assert mention.source_id == "t3_q1"
        assert mention.community == "apps"
        assert mention.engagement_likes == 12


class TestQueryPlans:

    def test_search_terms_deduplicated(self, collector):
        terms = collector.search_terms()
        assert terms[0] == "brand"
        assert '"brand"' in terms
        assert "brand app" in terms
        assert "brand.co" in terms
        assert len(terms) == len(set(terms))

    def test_grid_narrows_in_incremental_mode(self):
        assert len(RedditCollector.search_grid(incremental=True)) == 4
        assert len(RedditCollector.search_grid(incremental=False)) == 20


class TestPhases:

    def test_brand_listings_always_included(self, collector, clock):
        def handler(url, params):
            if url.endswith("/comments.json"):
                return listing({"kind": "t1", "data": dict(COMMENT, body="weekly thread", subreddit="brandapp")})
            return listing({"kind": "t3", "data": dict(POST, title="Weekly thread", selftext="", url=None,
                                                       preview=None, subreddit="brandapp")})

        http = FakeHttp(handler)
        ctx = make_ctx(http, clock=clock)
        added = asyncio.run(collector.collect_brand_listings(ctx))

        assert added == 2
        assert ctx.stats.duplicates_skipped == 1
        assert [url.rsplit("/", 1)[-1] for url, _ in http.calls] == ["new.json", "hot.json", "comments.json"]
        assert http.calls[0][1]["limit"] == 100

    def test_listing_follows_after_token(self, collector, clock):
        pages = {
            None: listing({"kind": "t3", "data": POST}, after="t3_abc"),
            "t3_abc": listing({"kind": "t3", "data": dict(POST, name="t3_ghi", title="Brand app again")}),
        }
        http = FakeHttp(lambda url, params: pages[params.get("after")])
        ctx = make_ctx(http, clock=clock)
        added = asyncio.run(collector._walk_listing(ctx, "/search.json", {"q": "brand"}, ("t3",), 10))
        assert added == 2
        assert len(http.calls) == 2

    def test_related_communities_skip_denied(self, collector, clock):
        http = FakeHttp(lambda url, params: listing())
        ctx = make_ctx(http, clock=clock)
        asyncio.run(collector.collect_related_communities(ctx))
        urls = [url for url, _ in http.calls]
        assert urls == ["https://www.reddit.com/r/androidapps/search.json"]
        assert http.calls[0][1]["restrict_sr"] == "on"

    def test_archive_skipped_incrementally(self, collector, clock):
        http = FakeHttp(lambda url, params: {"data": []})
        ctx = make_ctx(http, mode=CollectionMode.INCREMENTAL, cursor=cursor_at("reddit", at(100)), clock=clock)
        assert asyncio.run(collector.collect_archive(ctx)) == 0
        assert http.calls == []

    def test_archive_full_mode(self, collector, clock):
        def handler(url, params):
            if "/submission/" in url:
                return {"data": [{"id": "p1", "title": "brand app is neat", "subreddit": "apps", "created_utc": 1}]}
            return {"data": [{"id": "c1", "body": "the brand game rules", "subreddit": "apps",
                              "link_id": "t3_p1", "created_utc": 2}]}

        http = FakeHttp(handler)
        ctx = make_ctx(http, clock=clock)
        added = asyncio.run(collector.collect_archive(ctx))
        assert added == 2
        assert ctx.stats.posts_found == 1
        assert ctx.stats.comments_found == 1
