"""Application configuration"""
import json
import re
import sys
from pathlib import Path
from typing import Annotated, List, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode


def get_data_directory() -> Path:
    """Get the appropriate data directory based on environment.

    - Development: ./data (relative to project)
    - Production (bundled app): ~/.brandwatch/
    """
    if getattr(sys, 'frozen', False):
        return Path.home() / ".brandwatch"
    return Path("data")


# Comma-separated list in the environment, e.g. SEARCH_TERMS=matiks,matiks app
CsvList = Annotated[List[str], NoDecode]
# Regexes in the environment: a JSON array, or one pattern per line
PatternList = Annotated[List[str], NoDecode]


class Settings(BaseSettings):
    # Data paths - computed based on environment
    data_dir: Path = get_data_directory()
    db_path: Path = get_data_directory() / "brandwatch.db"
    cookies_dir: Path = get_data_directory() / "cookies"
    logs_dir: Path = get_data_directory() / "logs"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Brand terms
    search_terms: CsvList = ["matiks"]
    brand_required_terms: CsvList = ["matiks.in"]
    brand_keyword: str = "matiks"
    relevance_mode: Literal["strict", "balanced"] = "balanced"
    brand_communities: CsvList = ["matiks"]  # first-party communities, never filtered
    context_keywords: CsvList = [
        "app", "game", "math", "mental", "brain", "puzzle", "duel", "streak",
        "android", "ios", "download", "play store", "app store", "mobile",
        "arithmetic", "calculation", "speed", "training", "challenge", "leaderboard",
        "score", "level", "addicted", "playing", "installed", "tried", "recommended",
    ]
    search_variants: CsvList = [
        "app", "game", "math", "mental math", "brain", "brain training", "puzzle",
        "duel", "streak", "challenge", "leaderboard", "android", "ios", "download",
        "play store", "app store", "mobile",
    ]
    # Regexes for known false-positive clusters (homonyms, slang, unrelated communities)
    exclude_patterns: PatternList = [
        r"\b(pinoy|pinay|tagalog|pilipinas|philippines|filipino|filipina)\b",
        r"\b(kuya|ate|bata|galing|sarap|talaga|kasi|parang|yung|naman|lang|dito|tayo|siya|basta|pogi)\b",
        r"\bmatik\s*(dribble|shoot|shot|pass|ball|basketball|hoop|three|score)\b",
        r"\b(tattoo|tattooist|inked|ritual\s*tattoo|matt\s*matik)\b",
        r"\b(counter[\-\s]?strike|csgo|cs2|hunger\s*games\s*server)\b",
        r"\b(dream\s*school|horoscope|zodiac|astrology|superstition)\b",
    ]
    exclude_communities: CsvList = [
        "philippines", "phr4r", "casualph", "alasjuicy", "phinvest", "phcareers",
        "phclassifieds", "offmychestph", "phremix", "phmoneysaving",
    ]
    secondary_communities: CsvList = [
        "androidapps", "iosapps", "AppHookup", "apps",
        "androidgaming", "iosgaming", "MobileGaming", "IndieGaming", "playmygame",
        "math", "learnmath", "matheducation", "mathematics", "askmath",
        "education", "edtech", "homeschool", "teachers",
        "braingames", "puzzles", "braintraining", "mentalmath",
        "productivity", "selfimprovement", "getdisciplined",
        "india", "indiasocial", "IndianGaming", "developersIndia",
        "Android", "iphone",
    ]

    # Marketplace identifiers; a marketplace job is disabled when unset
    playstore_app_id: Optional[str] = None
    appstore_app_id: Optional[str] = None

    # Proxy (applied only to contexts that ask for it)
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None
    proxy_username: Optional[str] = None
    proxy_password: Optional[str] = None

    # Rate budgets (requests per minute)
    reddit_rpm: float = 25
    archive_rpm: float = 30
    playstore_rpm: float = 12
    appstore_rpm: float = 12

    # Wall-clock budgets per run (seconds)
    reddit_full_budget: int = 600
    reddit_incremental_budget: int = 300
    marketplace_full_budget: int = 900
    marketplace_incremental_budget: int = 300

    # Browser controls
    headless: bool = True
    slow_mo: int = 0

    # Schedule intervals (minutes)
    reddit_interval: int = 240
    playstore_interval: int = 180
    appstore_interval: int = 180

    # Buffering / cursor bounds
    flush_threshold: int = 25
    cursor_recent_ids: int = 100
    recent_ids_lookup: int = 1000

    class Config:
        env_file = ".env"
        extra = "ignore"
        frozen = True

    @field_validator(
        "search_terms", "brand_required_terms", "brand_communities", "context_keywords",
        "search_variants", "exclude_communities", "secondary_communities",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("exclude_patterns", mode="before")
    @classmethod
    def _split_patterns(cls, value):
        # Commas are regex syntax ({1,3}), so patterns come as a JSON array or one per line
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                except ValueError:
                    parsed = None
                if isinstance(parsed, list):
                    return parsed
            return [line.strip() for line in stripped.splitlines() if line.strip()]
        return value

    @field_validator("exclude_patterns")
    @classmethod
    def _compile_patterns(cls, value):
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid exclude pattern {pattern!r}: {e}") from e
        return value

    @property
    def proxy(self) -> Optional[dict]:
        """Playwright proxy settings, or None when no proxy is configured."""
        if not self.proxy_host:
            return None
        proxy = {"server": f"http://{self.proxy_host}:{self.proxy_port or 80}"}
        if self.proxy_username:
            proxy["username"] = self.proxy_username
            proxy["password"] = self.proxy_password or ""
        return proxy

    def rate_budget(self, source: str) -> float:
        return {
            "reddit": self.reddit_rpm,
            "archive": self.archive_rpm,
            "playstore": self.playstore_rpm,
            "appstore": self.appstore_rpm,
        }.get(source, 5)

    def time_budget(self, source: str, incremental: bool) -> int:
        if source == "reddit":
            return self.reddit_incremental_budget if incremental else self.reddit_full_budget
        return self.marketplace_incremental_budget if incremental else self.marketplace_full_budget


settings = Settings()

# Ensure data directories exist
settings.data_dir.mkdir(parents=True, exist_ok=True)
settings.cookies_dir.mkdir(parents=True, exist_ok=True)
settings.logs_dir.mkdir(parents=True, exist_ok=True)
