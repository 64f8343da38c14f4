"""Ingestion data models.

Canonical shape for everything the collectors produce. Each source normalizes
its raw payload into one of the CanonicalItem variants immediately at the
point of ingestion; relevance filtering, dedup, cursor tracking and
persistence only ever see these types.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class SourceName(str, Enum):
    """External sources we harvest"""
    REDDIT = "reddit"
    PLAYSTORE = "playstore"
    APPSTORE = "appstore"


class ItemKind(str, Enum):
    POST = "post"
    COMMENT = "comment"
    REVIEW = "review"


class CollectionMode(str, Enum):
    FULL = "full"                # No cursor: exhaustive sweep
    INCREMENTAL = "incremental"  # Cursor present: narrow windows, shorter budget


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CanonicalItem(BaseModel):
    """Normalized inbound record.

    `source_id` is the source's native identifier, `content_fingerprint` a hash
    over normalized salient fields used when the native ID is unstable.
    """
    source: SourceName
    kind: ItemKind
    source_id: str
    content_fingerprint: str
    timestamp: datetime
    author: Optional[str] = None
    content: str = ""
    url: Optional[str] = None
    community: Optional[str] = None  # subreddit / storefront country

    # Filled by the sentiment collaborator right before flush
    sentiment_score: Optional[float] = None
    sentiment_label: Optional[str] = None

    @property
    def relevance_text(self) -> str:
        """Text the relevance filter looks at."""
        return " ".join(part for part in (self.content, self.url or "") if part)


class Mention(CanonicalItem):
    """A discussion-site post or comment."""
    kind: Literal[ItemKind.POST, ItemKind.COMMENT] = ItemKind.POST
    title: str = ""
    author_url: Optional[str] = None
    link_url: Optional[str] = None  # outbound link of a link post
    engagement_likes: int = 0
    engagement_comments: int = 0

    @property
    def relevance_text(self) -> str:
        return " ".join(part for part in (self.content, self.url or "", self.link_url or "") if part)


class Review(CanonicalItem):
    """A marketplace review."""
    kind: Literal[ItemKind.REVIEW] = ItemKind.REVIEW
    rating: int = 0
    title: Optional[str] = None
    app_version: Optional[str] = None
    helpful_count: int = 0
    developer_reply: Optional[str] = None

    @property
    def relevance_text(self) -> str:
        return " ".join(part for part in (self.title or "", self.content) if part)


class Cursor(BaseModel):
    """Persisted per-source watermark. Absence means full mode."""
    source: str
    last_scraped_at: datetime
    last_item_date: Optional[datetime] = None
    recent_item_ids: List[str] = Field(default_factory=list)


@dataclass
class RunStats:
    """Per-run counters, logged at the end and written to the run log."""
    network_calls: int = 0
    rate_limit_hits: int = 0
    posts_found: int = 0
    comments_found: int = 0
    reviews_found: int = 0
    duplicates_skipped: int = 0
    filtered_out: int = 0
    stale_skipped: int = 0
    saved: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def items_found(self) -> int:
        return self.posts_found + self.comments_found + self.reviews_found

    def count_found(self, kind: ItemKind) -> None:
        if kind == ItemKind.POST:
            self.posts_found += 1
        elif kind == ItemKind.COMMENT:
            self.comments_found += 1
        else:
            self.reviews_found += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network_calls": self.network_calls,
            "rate_limit_hits": self.rate_limit_hits,
            "posts_found": self.posts_found,
            "comments_found": self.comments_found,
            "reviews_found": self.reviews_found,
            "duplicates_skipped": self.duplicates_skipped,
            "filtered_out": self.filtered_out,
            "stale_skipped": self.stale_skipped,
            "saved": self.saved,
            "errors": list(self.errors),
        }


class RunResult(BaseModel):
    """Outcome of one orchestrator run"""
    source: str
    mode: CollectionMode
    status: RunStatus
    items_found: int = 0
    items_new: int = 0
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    stats: Dict[str, Any] = Field(default_factory=dict)
