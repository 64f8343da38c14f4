"""Persistence for collected items, cursors and the run log"""
import json
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from models.ingestion import CanonicalItem, Cursor, ItemKind, Mention, Review, RunStatus, utcnow
from storage.database import Database, get_db

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class IngestStore:
    def __init__(self, db: Optional[Database] = None):
        self._db = db

    def _get_db(self):
        return (self._db or get_db()).get_connection()

    # =========================================================================
    # Cursors
    # =========================================================================

    def get_cursor(self, source: str) -> Optional[Cursor]:
        row = self._get_db().execute(
            "SELECT * FROM scrape_cursors WHERE source = ?", (source,)
        ).fetchone()
        if row is None:
            return None
        return Cursor(
            source=row["source"],
            last_scraped_at=_parse(row["last_scraped_at"]),
            last_item_date=_parse(row["last_item_date"]),
            recent_item_ids=json.loads(row["recent_item_ids"] or "[]"),
        )

    def update_cursor(
        self,
        source: str,
        last_item_date: Optional[datetime] = None,
        recent_item_ids: Optional[List[str]] = None,
    ) -> None:
        """Upsert the cursor. `last_scraped_at` always moves to now; None arguments keep stored values."""
        now = _iso(utcnow())
        ids_json = json.dumps(recent_item_ids) if recent_item_ids is not None else None
        conn = self._get_db()
        conn.execute(
            """
            INSERT INTO scrape_cursors (source, last_scraped_at, last_item_date, recent_item_ids, updated_at)
            VALUES (?, ?, ?, COALESCE(?, '[]'), ?)
            ON CONFLICT(source) DO UPDATE SET
                last_scraped_at = excluded.last_scraped_at,
                last_item_date = COALESCE(?, scrape_cursors.last_item_date),
                recent_item_ids = COALESCE(?, scrape_cursors.recent_item_ids),
                updated_at = excluded.updated_at
            """,
            (source, now, _iso(last_item_date), ids_json, now, _iso(last_item_date), ids_json),
        )
        conn.commit()

    # =========================================================================
    # Items
    # =========================================================================

    @staticmethod
    def _table_for(source: str) -> tuple:
        if source in ("playstore", "appstore"):
            return "reviews", "review_date"
        return "mentions", "created_at"

    def get_recent_external_ids(self, source: str, limit: int = 1000) -> List[str]:
        table, order_by = self._table_for(source)
        rows = self._get_db().execute(
            f"SELECT external_id FROM {table} WHERE source = ? ORDER BY {order_by} DESC LIMIT ?",
            (source, limit),
        ).fetchall()
        return [r["external_id"] for r in rows]

    def _exists(self, conn, table: str, source: str, external_id: str) -> bool:
        return conn.execute(
            f"SELECT 1 FROM {table} WHERE source = ? AND external_id = ?",
            (source, external_id),
        ).fetchone() is not None

    def insert_many(self, items: Sequence[CanonicalItem]) -> int:
        """Upsert items keyed by (source, external_id). Returns how many were new."""
        if not items:
            return 0
        conn = self._get_db()
        scraped_at = _iso(utcnow())
        new_count = 0
        with conn:
            for item in items:
                table = "reviews" if item.kind == ItemKind.REVIEW else "mentions"
                if not self._exists(conn, table, item.source.value, item.source_id):
                    new_count += 1
                if isinstance(item, Review):
                    self._upsert_review(conn, item, scraped_at)
                elif isinstance(item, Mention):
                    self._upsert_mention(conn, item, scraped_at)
                else:
                    raise TypeError(f"Unsupported item type: {type(item).__name__}")
        return new_count

    def _upsert_mention(self, conn, item: Mention, scraped_at: str) -> None:
        conn.execute(
            """
            INSERT INTO mentions (source, external_id, kind, author, author_url, link_url, title, content, url,
                community, engagement_likes, engagement_comments, sentiment_score, sentiment_label,
                content_fingerprint, created_at, scraped_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source, external_id) DO UPDATE SET
                content = excluded.content,
                engagement_likes = excluded.engagement_likes,
                engagement_comments = excluded.engagement_comments,
                sentiment_score = excluded.sentiment_score,
                sentiment_label = excluded.sentiment_label
            """,
            (
                item.source.value, item.source_id, item.kind.value, item.author, item.author_url, item.link_url,
                item.title, item.content, item.url, item.community, item.engagement_likes,
                item.engagement_comments, item.sentiment_score, item.sentiment_label,
                item.content_fingerprint, _iso(item.timestamp), scraped_at,
            ),
        )

    def _upsert_review(self, conn, item: Review, scraped_at: str) -> None:
        conn.execute(
            """
            INSERT INTO reviews (source, external_id, author, rating, title, content, app_version,
                helpful_count, developer_reply, community, sentiment_score, sentiment_label,
                content_fingerprint, review_date, scraped_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source, external_id) DO UPDATE SET
                author = excluded.author,
                rating = excluded.rating,
                title = excluded.title,
                content = excluded.content,
                app_version = excluded.app_version,
                helpful_count = excluded.helpful_count,
                developer_reply = excluded.developer_reply,
                sentiment_score = excluded.sentiment_score,
                sentiment_label = excluded.sentiment_label
            """,
            (
                item.source.value, item.source_id, item.author, item.rating, item.title, item.content,
                item.app_version, item.helpful_count, item.developer_reply, item.community,
                item.sentiment_score, item.sentiment_label, item.content_fingerprint,
                _iso(item.timestamp), scraped_at,
            ),
        )

    # =========================================================================
    # Run log
    # =========================================================================

    def log_run_start(self, source: str) -> int:
        conn = self._get_db()
        cursor = conn.execute(
            "INSERT INTO scrape_logs (source, status, started_at) VALUES (?, ?, ?)",
            (source, RunStatus.RUNNING.value, _iso(utcnow())),
        )
        conn.commit()
        return cursor.lastrowid

    def log_run_end(
        self,
        run_id: int,
        status: RunStatus,
        items_found: int,
        items_new: int,
        error: Optional[str] = None,
    ) -> None:
        conn = self._get_db()
        conn.execute(
            """
            UPDATE scrape_logs SET status = ?, items_found = ?, items_new = ?, error = ?, completed_at = ?
            WHERE id = ?
            """,
            (RunStatus(status).value, items_found, items_new, error, _iso(utcnow()), run_id),
        )
        conn.commit()

    def recent_runs(self, limit: int = 20) -> List[dict]:
        rows = self._get_db().execute(
            "SELECT * FROM scrape_logs ORDER BY started_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(r) for r in rows]


ingest_store = IngestStore()
