"""Sentiment scoring for accepted items.

VADER compound score, with a small social-slang lexicon layered on top of the
stock lexicon. Pure and synchronous; called once per item right before a
flush.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

logger = logging.getLogger(__name__)

POSITIVE_THRESHOLD = 0.1
NEGATIVE_THRESHOLD = -0.1

# VADER valences run roughly -4..4
SOCIAL_LEXICON: Dict[str, float] = {
    "fire": 3.0,
    "lit": 3.0,
    "based": 2.0,
    "goat": 3.5,
    "trash": -3.0,
    "mid": -1.0,
    "cringe": -2.0,
    "scam": -3.5,
    "rug": -3.5,
    "laggy": -2.0,
    "buggy": -2.5,
    "addictive": 2.0,
    "\U0001F525": 3.0,   # fire
    "\U0001F680": 3.0,   # rocket
    "\U0001F48E": 3.0,   # gem
    "\U0001F44E": -2.0,  # thumbs down
    "\U0001F922": -3.0,  # nauseated
    "\U0001F60D": 3.0,   # heart eyes
    "\U0001F62D": -1.0,  # crying
    "\U0001F480": 2.0,   # skull
}


@dataclass
class SentimentResult:
    value: float  # -1..1
    label: str    # positive | neutral | negative
    confidence: float


def label_for(value: float) -> str:
    if value >= POSITIVE_THRESHOLD:
        return "positive"
    if value <= NEGATIVE_THRESHOLD:
        return "negative"
    return "neutral"


class SentimentScorer:
    def __init__(self, extra_lexicon: Optional[Dict[str, float]] = None):
        self._analyzer = SentimentIntensityAnalyzer()
        self._analyzer.lexicon.update(SOCIAL_LEXICON)
        if extra_lexicon:
            self._analyzer.lexicon.update(extra_lexicon)

    def score(self, text: Optional[str]) -> SentimentResult:
        if not text or not text.strip():
            return SentimentResult(value=0.0, label="neutral", confidence=0.0)

        compound = self._analyzer.polarity_scores(text)["compound"]
        value = round(max(-1.0, min(1.0, compound)), 3)
        tokens = len(text.split())
        return SentimentResult(
            value=value,
            label=label_for(value),
            confidence=min(1.0, abs(value) + tokens * 0.05),
        )


sentiment_scorer = SentimentScorer()
