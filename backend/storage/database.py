"""
SQLite database manager for collected mentions and reviews.

Single brandwatch.db file holding items, per-source cursors and the run log.
Thread-safe with WAL journal mode so the scheduler and ad hoc CLI runs can
share it.
"""
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

from config import settings


class Database:
    """Thread-safe SQLite connection manager with WAL mode."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path: Path = Path(db_path) if db_path else settings.db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_schema()

    def get_connection(self) -> sqlite3.Connection:
        """Get a thread-local SQLite connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
        return conn

    def _init_schema(self):
        """Create all tables if they don't exist."""
        conn = self.get_connection()
        cursor = conn.cursor()

        # -- mentions (discussion-site posts and comments) --
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS mentions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                external_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                author TEXT,
                author_url TEXT,
                link_url TEXT,
                title TEXT,
                content TEXT,
                url TEXT,
                community TEXT,
                engagement_likes INTEGER DEFAULT 0,
                engagement_comments INTEGER DEFAULT 0,
                sentiment_score REAL,
                sentiment_label TEXT,
                content_fingerprint TEXT,
                created_at TEXT NOT NULL,
                scraped_at TEXT NOT NULL,
                UNIQUE(source, external_id)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_mentions_source_created ON mentions(source, created_at)
        """)

        # -- reviews (marketplaces) --
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reviews (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                external_id TEXT NOT NULL,
                author TEXT,
                rating INTEGER,
                title TEXT,
                content TEXT,
                app_version TEXT,
                helpful_count INTEGER DEFAULT 0,
                developer_reply TEXT,
                community TEXT,
                sentiment_score REAL,
                sentiment_label TEXT,
                content_fingerprint TEXT,
                review_date TEXT NOT NULL,
                scraped_at TEXT NOT NULL,
                UNIQUE(source, external_id)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_reviews_source_date ON reviews(source, review_date)
        """)

        # -- incremental cursors --
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scrape_cursors (
                source TEXT PRIMARY KEY,
                last_scraped_at TEXT NOT NULL,
                last_item_date TEXT,
                recent_item_ids TEXT DEFAULT '[]',
                updated_at TEXT NOT NULL
            )
        """)

        # -- run log --
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scrape_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                status TEXT NOT NULL,
                items_found INTEGER DEFAULT 0,
                items_new INTEGER DEFAULT 0,
                error TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT
            )
        """)

        conn.commit()

    def close(self):
        """Close the thread-local connection if open."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None


_db: Optional[Database] = None
_db_lock = threading.Lock()


def get_db() -> Database:
    """Get the process-wide Database instance."""
    global _db
    if _db is None:
        with _db_lock:
            if _db is None:
                _db = Database()
    return _db
