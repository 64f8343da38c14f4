"""Dedup Ledger - rejects items already seen in this run or recently stored.

Two keys per item: the source's native ID and a content fingerprint over
normalized salient fields. The fingerprint catches the same post re-indexed
under a different native ID.
"""
import hashlib
import logging
from typing import Iterable, Optional, Set

from models.ingestion import CanonicalItem

logger = logging.getLogger(__name__)


def content_fingerprint(*fields: Optional[object]) -> str:
    """Hash of the lowercased, whitespace-collapsed fields joined by '|'."""
    normalized = "|".join(" ".join(str(f or "").lower().split()) for f in fields)
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


class DedupLedger:
    """Per-run dedup state.

    `known_ids` is the cross-run cache seeded from the cursor and persistence;
    it only holds native IDs.
    """

    def __init__(self, known_ids: Optional[Iterable[str]] = None):
        self.seen_ids: Set[str] = set()
        self.seen_fingerprints: Set[str] = set()
        self.known_ids: Set[str] = set(known_ids or ())

    def seed(self, ids: Iterable[str]) -> None:
        self.known_ids.update(i for i in ids if i)

    def is_duplicate(self, item: CanonicalItem) -> bool:
        return (
            item.source_id in self.seen_ids
            or item.source_id in self.known_ids
            or item.content_fingerprint in self.seen_fingerprints
        )

    def record(self, item: CanonicalItem) -> None:
        self.seen_ids.add(item.source_id)
        self.seen_fingerprints.add(item.content_fingerprint)

    def admit(self, item: CanonicalItem) -> bool:
        """Record and return True for a new item; False for a duplicate."""
        if self.is_duplicate(item):
            return False
        self.record(item)
        return True

    def __len__(self) -> int:
        return len(self.seen_ids)
