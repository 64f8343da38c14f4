"""Typed DOM extraction.

Each extraction need is declared as an ExtractionRequest: a card selector, the
fields to read from every card, and the pydantic model the raw values are
validated into. One generic in-page function executes every request, so no
ad hoc script text lives next to the collectors.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldSpec:
    """One value read from a card.

    `sources` are (selector, attribute) pairs tried in order; a None selector
    means the card element itself, a None attribute means its text content.
    With `count=True` the value is the number of elements matching the first
    selector.
    """
    name: str
    sources: Tuple[Tuple[Optional[str], Optional[str]], ...]
    count: bool = False

    def to_js(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "sources": [list(pair) for pair in self.sources],
            "count": self.count,
        }


@dataclass(frozen=True)
class ExtractionRequest:
    card_selector: str
    fields: Tuple[FieldSpec, ...]
    model: Type[BaseModel]


_EXTRACT_CARDS_JS = """
(cards, fields) => cards.map((card) => {
  const out = {};
  for (const field of fields) {
    if (field.count) {
      const selector = field.sources[0][0];
      out[field.name] = selector ? card.querySelectorAll(selector).length : 0;
      continue;
    }
    let value = null;
    for (const [selector, attribute] of field.sources) {
      const el = selector ? card.querySelector(selector) : card;
      if (!el) continue;
      const raw = attribute ? el.getAttribute(attribute) : el.textContent;
      if (raw && raw.trim()) { value = raw.trim(); break; }
    }
    out[field.name] = value;
  }
  return out;
})
"""


def parse_cards(request: ExtractionRequest, raw_cards: List[Dict[str, Any]]) -> List[BaseModel]:
    """Validate raw card dicts; malformed cards are skipped."""
    cards = []
    for raw in raw_cards:
        try:
            cards.append(request.model.model_validate(raw))
        except ValidationError as e:
            logger.debug(f"Skipping malformed {request.model.__name__}: {e.errors()[0]['msg']}")
    return cards


async def extract(page, request: ExtractionRequest) -> List[BaseModel]:
    """Run `request` against every card currently in the page."""
    raw = await page.eval_on_selector_all(
        request.card_selector,
        _EXTRACT_CARDS_JS,
        [f.to_js() for f in request.fields],
    )
    return parse_cards(request, raw or [])


def _digits(value: Optional[str]) -> int:
    if not value:
        return 0
    digits = re.sub(r"[^0-9]", "", value)
    return int(digits) if digits else 0


# =============================================================================
# Reddit search results
# =============================================================================

class RedditPostCard(BaseModel):
    post_id: str
    title: str
    author: Optional[str] = None
    permalink: Optional[str] = None
    score: int = 0

    @field_validator("score", mode="before")
    @classmethod
    def _parse_score(cls, value):
        return _digits(value) if isinstance(value, str) else (value or 0)

    @property
    def subreddit(self) -> Optional[str]:
        # /r/<sub>/comments/<id>/...
        parts = (self.permalink or "").split("/")
        return parts[2] if len(parts) > 2 and parts[2] else None


REDDIT_POSTS = ExtractionRequest(
    card_selector='shreddit-post, [data-testid="post-container"]',
    fields=(
        FieldSpec("post_id", ((None, "id"),)),
        FieldSpec("title", ((None, "post-title"), ("h3", None))),
        FieldSpec("author", ((None, "author"),)),
        FieldSpec("permalink", ((None, "permalink"),)),
        FieldSpec("score", ((None, "score"),)),
    ),
    model=RedditPostCard,
)


# =============================================================================
# Play marketplace review modal
# =============================================================================

class PlayReviewCard(BaseModel):
    review_id: str
    user_name: Optional[str] = None
    rating: int = 0
    date: Optional[str] = None
    text: str = ""
    helpful_count: int = 0
    version: Optional[str] = None

    @field_validator("rating", mode="before")
    @classmethod
    def _parse_rating(cls, value):
        # aria-label like "Rated 5 stars out of five stars"
        if isinstance(value, str):
            match = re.search(r"Rated (\d)", value)
            return int(match.group(1)) if match else 0
        return value or 0

    @field_validator("helpful_count", mode="before")
    @classmethod
    def _parse_helpful(cls, value):
        return _digits(value) if isinstance(value, str) else (value or 0)

    @field_validator("text", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    @field_validator("version", mode="before")
    @classmethod
    def _strip_version(cls, value):
        if isinstance(value, str):
            return value.replace("Version", "").strip() or None
        return value


PLAY_REVIEWS = ExtractionRequest(
    card_selector="[data-review-id]",
    fields=(
        FieldSpec("review_id", ((None, "data-review-id"),)),
        FieldSpec("user_name", (('[class*="X43Kjb"]', None),)),
        FieldSpec("rating", (('[role="img"]', "aria-label"),)),
        FieldSpec("date", (('[class*="bp9Aid"]', None),)),
        FieldSpec("text", (('[class*="h3YV2d"]', None),)),
        FieldSpec("helpful_count", (('[class*="AJTPZc"]', None),)),
        FieldSpec("version", (('[class*="sPPcBf"]', None),)),
    ),
    model=PlayReviewCard,
)


# =============================================================================
# App marketplace customer reviews
# =============================================================================

class AppStoreReviewCard(BaseModel):
    author: str = "Anonymous"
    title: str = ""
    content: str = ""
    date: str = ""
    rating: int = 0

    @field_validator("author", mode="before")
    @classmethod
    def _default_author(cls, value):
        return value or "Anonymous"

    @field_validator("title", "content", "date", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""


APPSTORE_REVIEWS = ExtractionRequest(
    card_selector=".we-customer-review",
    fields=(
        FieldSpec("author", ((".we-customer-review__user", None),)),
        FieldSpec("title", ((".we-customer-review__title", None),)),
        FieldSpec("content", ((".we-customer-review__body", None),)),
        FieldSpec("date", ((".we-customer-review__date", None),)),
        FieldSpec("rating", ((".we-star-rating-stars-outlines use[href=\"#star-full\"]", None),), count=True),
    ),
    model=AppStoreReviewCard,
)
