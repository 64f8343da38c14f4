"""Relevance Filter - is this text actually about the brand?

Strict mode only trusts strong anchors (domains, store URLs, app ids) and
falls back to plain required terms, then generic search terms, when no strong
anchor is configured. Balanced mode accepts strict matches outright and
otherwise wants the bare brand keyword plus a context keyword, vetoed by the
exclusion patterns. First-party communities bypass all of it; deny-listed
communities never pass.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

PLAY_DOMAIN = "play.google.com"
APPLE_DOMAIN = "apps.apple.com"


def _dedupe(terms: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for term in terms:
        term = (term or "").strip()
        if term and term not in seen:
            seen.append(term)
    return tuple(seen)


def is_strong_anchor(term: str) -> bool:
    """Domain-, path- or app-id-shaped strings."""
    lowered = term.lower()
    return (
        "." in lowered
        or "/" in lowered
        or lowered.startswith("id")
        or PLAY_DOMAIN in lowered
        or APPLE_DOMAIN in lowered
    )


@dataclass(frozen=True)
class BrandAnchorSet:
    """Derived from configuration at process start, immutable afterwards."""
    required_terms: Tuple[str, ...]
    generic_search_terms: Tuple[str, ...]

    @property
    def strong_anchors(self) -> Tuple[str, ...]:
        return tuple(t for t in self.required_terms if is_strong_anchor(t))

    @classmethod
    def build(
        cls,
        required_terms: Iterable[str],
        search_terms: Iterable[str] = (),
        playstore_app_id: Optional[str] = None,
        appstore_app_id: Optional[str] = None,
    ) -> "BrandAnchorSet":
        terms = list(required_terms)
        if playstore_app_id:
            terms.append(playstore_app_id)
            terms.append(f"{PLAY_DOMAIN}/store/apps/details?id={playstore_app_id}")
        if appstore_app_id:
            terms.append(f"id{appstore_app_id}")
            terms.append(f"{APPLE_DOMAIN}/app/id{appstore_app_id}")
        return cls(required_terms=_dedupe(terms), generic_search_terms=_dedupe(search_terms))

    @classmethod
    def from_settings(cls, settings) -> "BrandAnchorSet":
        return cls.build(
            settings.brand_required_terms,
            settings.search_terms,
            settings.playstore_app_id,
            settings.appstore_app_id,
        )


class RelevanceFilter:
    def __init__(
        self,
        anchors: BrandAnchorSet,
        mode: str = "balanced",
        brand_keyword: str = "",
        context_keywords: Iterable[str] = (),
        exclude_patterns: Iterable[str] = (),
        always_include: Iterable[str] = (),
        exclude_communities: Iterable[str] = (),
    ):
        if mode not in ("strict", "balanced"):
            raise ValueError(f"Unknown relevance mode: {mode}")
        self.anchors = anchors
        self.mode = mode
        self.brand_keyword = brand_keyword.lower().strip()
        self.context_keywords = [k.lower() for k in context_keywords if k.strip()]
        self.exclude_patterns: List[Pattern] = [re.compile(p, re.IGNORECASE) for p in exclude_patterns]
        self.always_include = {c.lower() for c in always_include}
        self.exclude_communities = {c.lower() for c in exclude_communities}

    @classmethod
    def from_settings(cls, settings) -> "RelevanceFilter":
        return cls(
            anchors=BrandAnchorSet.from_settings(settings),
            mode=settings.relevance_mode,
            brand_keyword=settings.brand_keyword,
            context_keywords=settings.context_keywords,
            exclude_patterns=settings.exclude_patterns,
            always_include=settings.brand_communities,
            exclude_communities=settings.exclude_communities,
        )

    def matches_strict(self, text: str) -> bool:
        if not text:
            return False
        haystack = text.lower()
        for candidates in (
            self.anchors.strong_anchors,
            self.anchors.required_terms,
            self.anchors.generic_search_terms,
        ):
            if candidates:
                return any(term.lower() in haystack for term in candidates)
        return False

    def matches_balanced(self, text: str) -> bool:
        if not text:
            return False
        if self.matches_strict(text):
            return True
        haystack = text.lower()
        if not self.brand_keyword or self.brand_keyword not in haystack:
            return False
        if not any(keyword in haystack for keyword in self.context_keywords):
            return False
        return not any(pattern.search(haystack) for pattern in self.exclude_patterns)

    def is_always_included(self, community: Optional[str]) -> bool:
        return bool(community) and community.lower() in self.always_include

    def is_relevant(self, text: str, community: Optional[str] = None) -> bool:
        if self.is_always_included(community):
            return True
        if community and community.lower() in self.exclude_communities:
            return False
        if self.mode == "strict":
            return self.matches_strict(text)
        return self.matches_balanced(text)
