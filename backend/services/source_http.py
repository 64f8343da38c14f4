"""Rate-governed JSON client for the structured HTTP surfaces.

Every request goes through the Retry Executor, which acquires from the Rate
Governor before each attempt. Exhausted retries return None: the caller's
pagination loop stops, the run carries on.
"""
import logging
import random
from typing import Any, Dict, List, Optional

import httpx

from models.ingestion import RunStats
from services.errors import NetworkError, RateLimited
from services.rate_governor import RateGovernor
from services.retry import with_retry

logger = logging.getLogger(__name__)

# Desktop user agents rotated per request
DESKTOP_USER_AGENTS: List[str] = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:123.0) Gecko/20100101 Firefox/123.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:122.0) Gecko/20100101 Firefox/122.0",
]


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class SourceHttpClient:
    """httpx.AsyncClient wrapper with user-agent rotation and governed retries.

    Use as an async context manager so the connection pool is closed at the
    end of a run.
    """

    def __init__(
        self,
        governor: RateGovernor,
        user_agents: Optional[List[str]] = None,
        timeout: float = 20.0,
        max_retries: int = 3,
        base_delay: float = 2.0,
        rng: Optional[random.Random] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=None,
    ):
        self.governor = governor
        self.user_agents = user_agents or DESKTOP_USER_AGENTS
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._rng = rng or random.Random()
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "SourceHttpClient":
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def random_user_agent(self) -> str:
        return self._rng.choice(self.user_agents)

    async def _get_once(
        self,
        url: str,
        params: Optional[Dict[str, Any]],
        stats: Optional[RunStats],
    ) -> Any:
        if self._client is None:
            raise RuntimeError("SourceHttpClient used outside of 'async with'")

        if stats is not None:
            stats.network_calls += 1
        headers = {
            "User-Agent": self.random_user_agent(),
            "Accept": "application/json",
            "Accept-Language": "en-US,en;q=0.9",
        }
        try:
            response = await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"GET {url} failed: {e}", original_error=e) from e

        if response.status_code == 429:
            if stats is not None:
                stats.rate_limit_hits += 1
            raise RateLimited(f"429 from {url}", retry_after=_retry_after(response))
        if not response.is_success:
            raise NetworkError(f"HTTP {response.status_code} from {url}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {url}", original_error=e) from e

    async def get_json(
        self,
        url: str,
        *,
        source_key: str,
        params: Optional[Dict[str, Any]] = None,
        stats: Optional[RunStats] = None,
        deadline=None,
    ) -> Optional[Any]:
        """Fetch and decode JSON, or None if the deadline passed or retries ran out."""
        if deadline is not None and deadline.expired():
            return None

        retry_kwargs = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        try:
            return await with_retry(
                lambda: self._get_once(url, params, stats),
                governor=self.governor,
                source_key=source_key,
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                retry_on=(NetworkError,),
                rng=self._rng,
                **retry_kwargs,
            )
        except NetworkError as e:
            logger.warning(f"Request abandoned for {source_key}: {e}")
            return None
