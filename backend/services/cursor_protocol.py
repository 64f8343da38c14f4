"""Incremental fetch protocol.

A stored Cursor selects incremental mode; its absence selects full mode.
Pagination stops at the first page whose items are all at or before the
watermark. At run end the watermark advances to the newest accepted item and
never moves backwards.
"""
import heapq
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from models.ingestion import CanonicalItem, CollectionMode, Cursor

BROWSER_REFRESH_INTERVAL = timedelta(hours=24)


def select_mode(cursor: Optional[Cursor]) -> CollectionMode:
    return CollectionMode.INCREMENTAL if cursor is not None else CollectionMode.FULL


def watermark_of(cursor: Optional[Cursor]) -> Optional[datetime]:
    return cursor.last_item_date if cursor is not None else None


def is_newer(timestamp: datetime, watermark: Optional[datetime]) -> bool:
    return watermark is None or timestamp > watermark


def page_exhausted(timestamps: Sequence[datetime], watermark: Optional[datetime]) -> bool:
    """True when a non-empty page has nothing newer than the watermark."""
    if watermark is None or not timestamps:
        return False
    return all(ts <= watermark for ts in timestamps)


@dataclass
class CursorAdvance:
    """Arguments for `update_cursor`; None fields keep the stored value."""
    last_item_date: Optional[datetime]
    recent_item_ids: Optional[List[str]]


class CursorTracker:
    """Newest timestamp plus the newest N identifiers seen in a run.

    Memory stays bounded by `recent_limit` however many items a run accepts.
    """

    def __init__(self, recent_limit: int = 100):
        self.recent_limit = recent_limit
        self.newest: Optional[datetime] = None
        self._heap: List[Tuple[datetime, int, str]] = []
        self._ids: Set[str] = set()
        self._seq = 0

    def observe(self, item: CanonicalItem) -> None:
        if self.newest is None or item.timestamp > self.newest:
            self.newest = item.timestamp
        if item.source_id in self._ids or self.recent_limit <= 0:
            return
        # among equal timestamps the later arrival is evicted first
        self._seq += 1
        heapq.heappush(self._heap, (item.timestamp, -self._seq, item.source_id))
        self._ids.add(item.source_id)
        if len(self._heap) > self.recent_limit:
            _, _, evicted = heapq.heappop(self._heap)
            self._ids.discard(evicted)

    def advance(self, previous: Optional[Cursor]) -> CursorAdvance:
        if self.newest is None:
            return CursorAdvance(last_item_date=None, recent_item_ids=None)
        newest = self.newest
        prior = watermark_of(previous)
        if prior is not None and prior > newest:
            newest = prior
        recent_ids = [source_id for _, _, source_id in sorted(self._heap, reverse=True)]
        return CursorAdvance(last_item_date=newest, recent_item_ids=recent_ids)


def advance_cursor(
    previous: Optional[Cursor],
    accepted: Iterable[CanonicalItem],
    recent_limit: int = 100,
) -> CursorAdvance:
    tracker = CursorTracker(recent_limit)
    for item in accepted:
        tracker.observe(item)
    return tracker.advance(previous)


def browser_pass_due(
    mode: CollectionMode,
    primary_new: int,
    cursor: Optional[Cursor],
    now: datetime,
) -> bool:
    """Marketplace browser pass: skip it for quiet incremental runs within a day of the last scrape."""
    if mode == CollectionMode.FULL or cursor is None or primary_new > 0:
        return True
    return now - cursor.last_scraped_at > BROWSER_REFRESH_INTERVAL
