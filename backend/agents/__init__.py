"""Source collectors

One orchestrator per external source, all built on agents.base.SourceOrchestrator.
"""

from agents.appstore_collector import AppStoreCollector
from agents.playstore_collector import PlayStoreCollector
from agents.reddit_collector import RedditCollector

__all__ = [
    "AppStoreCollector",
    "PlayStoreCollector",
    "RedditCollector",
]
