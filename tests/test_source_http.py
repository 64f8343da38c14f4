"""
Rate-governed JSON client tests, driven through httpx.MockTransport.
"""

import asyncio
import random

import httpx

from agents.base import Deadline
from models.ingestion import RunStats
from services.source_http import DESKTOP_USER_AGENTS, SourceHttpClient


def make_client(governor, clock, handler, max_retries=2):
    governor.configure("reddit", 600)
    return SourceHttpClient(
        governor,
        max_retries=max_retries,
        rng=random.Random(1),
        transport=httpx.MockTransport(handler),
        sleep=clock.sleep,
    )


class TestGetJson:

    def test_success_decodes_json_and_counts_call(self, governor, clock):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"children": []}})

        stats = RunStats()

        async def go():
            async with make_client(governor, clock, handler) as client:
                return await client.get_json(
                    "https://www.reddit.com/search.json", source_key="reddit",
                    params={"q": "brand"}, stats=stats,
                )

        assert asyncio.run(go()) == {"data": {"children": []}}
        assert stats.network_calls == 1
        assert seen[0].url.params["q"] == "brand"
        assert seen[0].headers["user-agent"] in DESKTOP_USER_AGENTS

    def test_429_counted_then_retried(self, governor, clock):
        responses = iter([
            httpx.Response(429, headers={"retry-after": "5"}),
            httpx.Response(200, json={"ok": True}),
        ])
        stats = RunStats()

        async def go():
            async with make_client(governor, clock, lambda request: next(responses)) as client:
                return await client.get_json("https://x.test/a", source_key="reddit", stats=stats)

        assert asyncio.run(go()) == {"ok": True}
        assert stats.rate_limit_hits == 1
        assert stats.network_calls == 2

    def test_exhausted_retries_return_none(self, governor, clock):
        stats = RunStats()

        async def go():
            async with make_client(governor, clock, lambda request: httpx.Response(503)) as client:
                return await client.get_json("https://x.test/a", source_key="reddit", stats=stats)

        assert asyncio.run(go()) is None
        assert stats.network_calls == 3

    def test_invalid_json_is_a_network_error(self, governor, clock):
        async def go():
            handler = lambda request: httpx.Response(200, text="<html>blocked</html>")
            async with make_client(governor, clock, handler, max_retries=0) as client:
                return await client.get_json("https://x.test/a", source_key="reddit")

        assert asyncio.run(go()) is None

    def test_expired_deadline_skips_request(self, governor, clock):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        deadline = Deadline(10, clock=clock)
        clock.advance(11)

        async def go():
            async with make_client(governor, clock, handler) as client:
                return await client.get_json("https://x.test/a", source_key="reddit", deadline=deadline)

        assert asyncio.run(go()) is None
        assert calls == []
