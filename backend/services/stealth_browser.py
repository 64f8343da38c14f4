"""Stealth Session Manager - one shared Chromium, many disguised contexts.

Owns at most one live browser process, launched lazily and relaunched after
a disconnect. Each context gets a randomized but internally consistent
fingerprint (viewport, user agent, platform, hardware hints), an init script
that masks the usual automation probes, optional proxy, and per-source
cookie persistence.

Callers receive the manager explicitly and use `session()`:

    async with sessions.session("reddit") as page:
        await page.goto(url)

The context is always closed (and its cookies saved) when the block exits.
"""
import asyncio
import json
import logging
import os
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from services.errors import SessionError
from utils.json_io import atomic_write_json, read_json

logger = logging.getLogger(__name__)


def _ensure_playwright_browsers_path():
    """Point Playwright at the user-level browser cache when nothing is set."""
    if os.environ.get("PLAYWRIGHT_BROWSERS_PATH"):
        return
    for candidate in (
        Path.home() / "Library" / "Caches" / "ms-playwright",
        Path.home() / ".cache" / "ms-playwright",
    ):
        if candidate.is_dir():
            os.environ["PLAYWRIGHT_BROWSERS_PATH"] = str(candidate)
            return


LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--window-size=1366,768",
]

VIEWPORTS: List[Dict[str, int]] = [
    {"width": 1366, "height": 768},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1280, "height": 720},
]

USER_AGENTS: List[str] = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
]

HARDWARE_CONCURRENCY = [4, 8, 12, 16]
DEVICE_MEMORY = [4, 8]


@dataclass
class Fingerprint:
    """Browser identity presented by one context."""
    viewport: Dict[str, int]
    user_agent: str
    platform: str
    hardware_concurrency: int
    device_memory: int
    languages: List[str] = field(default_factory=lambda: ["en-US", "en"])


def platform_for_user_agent(user_agent: str) -> str:
    if "Windows" in user_agent:
        return "Win32"
    if "Macintosh" in user_agent or "Mac OS X" in user_agent:
        return "MacIntel"
    return "Linux x86_64"


def choose_fingerprint(rng: Optional[random.Random] = None) -> Fingerprint:
    """Pick a random fingerprint whose platform agrees with its user agent."""
    rng = rng or random.Random()
    user_agent = rng.choice(USER_AGENTS)
    return Fingerprint(
        viewport=dict(rng.choice(VIEWPORTS)),
        user_agent=user_agent,
        platform=platform_for_user_agent(user_agent),
        hardware_concurrency=rng.choice(HARDWARE_CONCURRENCY),
        device_memory=rng.choice(DEVICE_MEMORY),
    )


# Runs before any page script. Values are substituted as JSON literals.
STEALTH_INIT_SCRIPT = """
(() => {
  const fp = %(fingerprint)s;
  Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
  Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
  Object.defineProperty(navigator, 'languages', { get: () => fp.languages });
  Object.defineProperty(navigator, 'platform', { get: () => fp.platform });
  Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => fp.hardwareConcurrency });
  Object.defineProperty(navigator, 'deviceMemory', { get: () => fp.deviceMemory });
  window.chrome = { runtime: {} };
  const originalQuery = window.navigator.permissions.query;
  window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications'
      ? Promise.resolve({ state: Notification.permission })
      : originalQuery(parameters)
  );
})();
"""


def build_init_script(fingerprint: Fingerprint) -> str:
    payload = json.dumps({
        "languages": fingerprint.languages,
        "platform": fingerprint.platform,
        "hardwareConcurrency": fingerprint.hardware_concurrency,
        "deviceMemory": fingerprint.device_memory,
    })
    return STEALTH_INIT_SCRIPT % {"fingerprint": payload}


class StealthSessionManager:
    """Explicitly owned handle on the shared browser process."""

    def __init__(
        self,
        cookies_dir: Path,
        headless: bool = True,
        slow_mo: int = 0,
        proxy: Optional[Dict[str, str]] = None,
        launcher: Optional[Callable[[], Awaitable[Any]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.cookies_dir = Path(cookies_dir)
        self.headless = headless
        self.slow_mo = slow_mo
        self.proxy = proxy
        self._launcher = launcher or self._launch_chromium
        self._rng = rng or random.Random()
        self._playwright = None
        self._browser = None
        self._lock = asyncio.Lock()
        self._closing = False

    @classmethod
    def from_settings(cls, settings) -> "StealthSessionManager":
        return cls(
            cookies_dir=settings.cookies_dir,
            headless=settings.headless,
            slow_mo=settings.slow_mo,
            proxy=settings.proxy,
        )

    # =========================================================================
    # Browser lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def _launch_chromium(self):
        _ensure_playwright_browsers_path()
        from playwright.async_api import async_playwright

        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.headless,
            slow_mo=self.slow_mo,
            args=LAUNCH_ARGS,
        )

    def _on_disconnected(self, *_args) -> None:
        logger.warning("Browser disconnected unexpectedly")
        self._browser = None

    async def get_browser(self):
        """Return the live browser, launching one if needed."""
        async with self._lock:
            if self.is_running:
                return self._browser
            if self._closing:
                raise SessionError("Browser is closing, cannot launch a new instance")

            logger.info("Launching browser with stealth configuration")
            try:
                browser = await self._launcher()
            except Exception as e:
                err_str = str(e)
                if "Executable doesn't exist" in err_str:
                    raise SessionError(
                        "Chromium not found. Run: playwright install chromium", original_error=e
                    ) from e
                raise SessionError(f"Failed to launch browser: {e}", original_error=e) from e

            browser.on("disconnected", self._on_disconnected)
            self._browser = browser
            return browser

    async def close(self) -> None:
        """Close the browser. Safe to call repeatedly and concurrently."""
        if self._closing:
            return
        self._closing = True
        try:
            async with self._lock:
                browser, self._browser = self._browser, None
                if browser is not None:
                    try:
                        await browser.close()
                        logger.info("Browser closed")
                    except Exception as e:
                        logger.error(f"Error closing browser: {e}")
                if self._playwright is not None:
                    try:
                        await self._playwright.stop()
                    except Exception as e:
                        logger.debug(f"Error stopping playwright driver: {e}")
                    self._playwright = None
        finally:
            self._closing = False

    # =========================================================================
    # Contexts
    # =========================================================================

    def cookie_path(self, source: str) -> Path:
        return self.cookies_dir / f"{source}.json"

    async def new_context(self, source: str, use_proxy: bool = False, load_cookies: bool = True):
        """Mint an isolated context with a fresh fingerprint."""
        browser = await self.get_browser()
        fingerprint = choose_fingerprint(self._rng)

        options: Dict[str, Any] = {
            "viewport": fingerprint.viewport,
            "user_agent": fingerprint.user_agent,
            "locale": "en-US",
            "timezone_id": "America/New_York",
            "permissions": ["geolocation"],
            "geolocation": {"latitude": 40.7128, "longitude": -74.0060},
            "color_scheme": "light",
        }
        if use_proxy and self.proxy:
            options["proxy"] = self.proxy
            logger.debug(f"Using proxy {self.proxy['server']} for {source}")

        try:
            context = await browser.new_context(**options)
        except Exception as e:
            raise SessionError(f"Could not create browser context: {e}", original_error=e) from e

        try:
            await context.add_init_script(build_init_script(fingerprint))
        except Exception as e:
            await self._close_context(context, source)
            raise SessionError(f"Could not prepare browser context: {e}", original_error=e) from e

        if load_cookies:
            cookies = self.load_cookie_jar(source)
            if cookies:
                try:
                    await context.add_cookies(cookies)
                    logger.debug(f"Loaded {len(cookies)} cookies for {source}")
                except Exception as e:
                    logger.warning(f"Browser rejected saved cookies for {source}, continuing without them: {e}")

        return context

    def load_cookie_jar(self, source: str) -> List[Dict[str, Any]]:
        """Saved cookies for a source; an unreadable or malformed jar counts as empty."""
        try:
            cookies = read_json(self.cookie_path(source), default=[])
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cookie file for {source}: {e}")
            return []
        if not isinstance(cookies, list) or not all(isinstance(c, dict) for c in cookies):
            logger.warning(f"Ignoring malformed cookie file for {source}")
            return []
        return cookies

    async def _close_context(self, context, source: str) -> None:
        try:
            await context.close()
        except Exception as e:
            logger.debug(f"Context close failed for {source}: {e}")

    async def save_cookies(self, context, source: str) -> None:
        cookies = await context.cookies()
        atomic_write_json(self.cookie_path(source), cookies)
        logger.debug(f"Saved {len(cookies)} cookies for {source}")

    @asynccontextmanager
    async def session(
        self,
        source: str,
        use_proxy: bool = False,
        load_cookies: bool = True,
    ) -> AsyncIterator[Any]:
        """Yield a page in a fresh stealth context; save cookies and close on exit."""
        context = await self.new_context(source, use_proxy=use_proxy, load_cookies=load_cookies)
        try:
            page = await context.new_page()
            yield page
        finally:
            try:
                await self.save_cookies(context, source)
            except Exception as e:
                logger.warning(f"Could not save cookies for {source}: {e}")
            await self._close_context(context, source)
