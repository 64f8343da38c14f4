"""Human-like interaction primitives for stealth browser pages.

Every primitive is a suspension point of the calling task. Randomness comes
from a module-level Random that tests may reseed.
"""
import asyncio
import logging
import random
import string
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

_rng = random.Random()

TYPO_PROBABILITY = 0.01
THINK_PAUSE_PROBABILITY = 0.05
READING_PAUSE_PROBABILITY = 0.2


async def random_delay(min_ms: float, max_ms: float) -> None:
    await asyncio.sleep((min_ms + _rng.random() * (max_ms - min_ms)) / 1000)


async def human_type(page, selector: str, text: str) -> None:
    """Type one character at a time, with the odd typo corrected by backspace."""
    await page.click(selector)
    await random_delay(100, 300)

    for i, char in enumerate(text):
        await page.type(selector, char, delay=50 + _rng.random() * 100)

        if _rng.random() < THINK_PAUSE_PROBABILITY:
            await random_delay(200, 500)

        if _rng.random() < TYPO_PROBABILITY and i < len(text) - 1:
            await page.type(selector, _rng.choice(string.ascii_lowercase), delay=80)
            await random_delay(100, 200)
            await page.keyboard.press("Backspace")
            await random_delay(50, 150)


def quadratic_bezier_path(
    start: Tuple[float, float],
    end: Tuple[float, float],
    control: Tuple[float, float],
    steps: int,
) -> List[Tuple[float, float]]:
    """Points along a quadratic curve from start to end, inclusive."""
    points = []
    for i in range(steps + 1):
        t = i / steps
        mt = 1 - t
        x = mt * mt * start[0] + 2 * mt * t * control[0] + t * t * end[0]
        y = mt * mt * start[1] + 2 * mt * t * control[1] + t * t * end[1]
        points.append((x, y))
    return points


async def human_mouse_move(
    page,
    x: float,
    y: float,
    start: Tuple[float, float] = (0.0, 0.0),
) -> None:
    """Move the pointer along a randomized curve instead of a straight line."""
    steps = 10 + _rng.randint(0, 14)
    control = (
        start[0] + (x - start[0]) * (0.3 + _rng.random() * 0.4),
        start[1] + (y - start[1]) * (0.3 + _rng.random() * 0.4),
    )
    for px, py in quadratic_bezier_path(start, (x, y), control, steps):
        await page.mouse.move(px, py)
        await random_delay(5, 15)


async def human_hover(page, selector: str) -> Tuple[float, float]:
    """Bring the pointer to a random point inside an element; wheel events then land on it."""
    element = await page.query_selector(selector)
    if element is None:
        raise LookupError(f"Element not found: {selector}")
    box = await element.bounding_box()
    if box is None:
        raise LookupError(f"Element has no bounding box: {selector}")

    # Somewhere inside the element, not dead centre
    x = box["x"] + box["width"] * (0.3 + _rng.random() * 0.4)
    y = box["y"] + box["height"] * (0.3 + _rng.random() * 0.4)

    await human_mouse_move(page, x, y)
    await random_delay(50, 150)
    return x, y


async def human_click(page, selector: str) -> None:
    x, y = await human_hover(page, selector)
    await page.mouse.click(x, y)
    await random_delay(100, 300)


async def human_scroll(page, distance: float) -> None:
    """Scroll in 3-5 uneven steps with an occasional reading pause."""
    steps = 5 if abs(distance) > 500 else 3
    step_distance = distance / steps

    for _ in range(steps):
        await page.mouse.wheel(0, step_distance + (_rng.random() - 0.5) * 50)
        await random_delay(100, 300)
        if _rng.random() < READING_PAUSE_PROBABILITY:
            await random_delay(500, 1500)


async def warmup_session(page, urls: Iterable[str]) -> None:
    """Browse one or two seed pages before the real target."""
    for url in list(urls)[:2]:
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=15000)
            await random_delay(2000, 4000)
            await human_scroll(page, 300 + _rng.random() * 400)
            await random_delay(1000, 2000)
        except Exception as e:
            logger.debug(f"Warm-up visit to {url} failed: {e}")


async def wait_for_page_load(page, timeout: int = 10000) -> None:
    try:
        await page.wait_for_load_state("domcontentloaded", timeout=timeout)
    except Exception:
        logger.debug("Page load wait timed out, continuing")
        return
    await random_delay(500, 1000)


def seed(value: Optional[int]) -> None:
    _rng.seed(value)
