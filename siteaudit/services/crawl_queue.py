"""Durable crawl frontier backed by SQLite."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from siteaudit.config.settings import get_config
from siteaudit.errors.exceptions import PersistenceError
from siteaudit.services.database import (
    connect,
    init_schema,
    parse_timestamp,
    to_iso,
    utc_now,
)


@dataclass
class CrawlQueueEntry:
    """A discovered URL. crawled_at is None while the URL is pending."""

    id: int
    audit_id: str
    url: str
    depth: int
    discovered_at: datetime
    crawled_at: datetime | None = None


def _row_to_entry(row: sqlite3.Row) -> CrawlQueueEntry:
    return CrawlQueueEntry(
        id=row["id"],
        audit_id=row["audit_id"],
        url=row["url"],
        depth=row["depth"],
        discovered_at=parse_timestamp(row["discovered_at"]),  # type: ignore[arg-type]
        crawled_at=parse_timestamp(row["crawled_at"]),
    )


class CrawlQueue:
    """
    Thread-safe, per-audit crawl frontier.

    URLs are unique per audit. An entry is claimed by setting crawled_at, which
    happens at most once and is never cleared, so a claimed URL is never
    fetched again.
    """

    _instance: CrawlQueue | None = None
    _lock = threading.Lock()

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_lock = threading.Lock()
        init_schema(db_path)

    @classmethod
    def get_instance(cls, db_path: Path | None = None) -> CrawlQueue:
        """Get or create the singleton queue instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls(db_path or get_config().db_path)
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        with cls._lock:
            cls._instance = None

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._conn_lock:
            try:
                conn = connect(self.db_path)
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not open crawl queue: {e}") from e
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"Crawl queue error: {e}") from e
            finally:
                conn.close()

    def seed(self, audit_id: str, url: str) -> bool:
        """Add the start URL at depth 0. Returns False if already present."""
        return self.enqueue_many(audit_id, [url], depth=0) == 1

    def enqueue_many(self, audit_id: str, urls: Iterable[str], depth: int) -> int:
        """
        Add newly discovered URLs.

        URLs already in the queue (pending or crawled) are ignored. Returns the
        number of new entries.
        """
        now = to_iso(utc_now())
        rows = [(audit_id, url, depth, now) for url in dict.fromkeys(urls)]
        if not rows:
            return 0
        with self._connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO crawl_queue (audit_id, url, depth, discovered_at)
                VALUES (?, ?, ?, ?)
                """,
                rows,
            )
            return conn.total_changes - before

    def claim(self, audit_id: str, limit: int) -> list[CrawlQueueEntry]:
        """
        Atomically take up to ``limit`` pending entries in breadth-first order.

        Claimed entries are marked crawled before they are fetched.
        """
        now = to_iso(utc_now())
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                """
                SELECT * FROM crawl_queue
                WHERE audit_id = ? AND crawled_at IS NULL
                ORDER BY depth ASC, discovered_at ASC, id ASC
                LIMIT ?
                """,
                (audit_id, limit),
            ).fetchall()
            claimed: list[CrawlQueueEntry] = []
            for row in rows:
                cursor = conn.execute(
                    "UPDATE crawl_queue SET crawled_at = ? WHERE id = ? AND crawled_at IS NULL",
                    (now, row["id"]),
                )
                if cursor.rowcount > 0:
                    entry = _row_to_entry(row)
                    entry.crawled_at = parse_timestamp(now)
                    claimed.append(entry)
        return claimed

    def mark_crawled(self, audit_id: str, url: str, depth: int = 0) -> bool:
        """
        Mark a URL as crawled, inserting it if it was never discovered.

        Used for redirect targets. Returns False if the URL was already crawled.
        """
        now = to_iso(utc_now())
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT crawled_at FROM crawl_queue WHERE audit_id = ? AND url = ?",
                (audit_id, url),
            ).fetchone()
            if row is None:
                conn.execute(
                    """
                    INSERT INTO crawl_queue (audit_id, url, depth, discovered_at, crawled_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (audit_id, url, depth, now, now),
                )
                return True
            if row["crawled_at"] is not None:
                return False
            conn.execute(
                "UPDATE crawl_queue SET crawled_at = ? "
                "WHERE audit_id = ? AND url = ? AND crawled_at IS NULL",
                (now, audit_id, url),
            )
            return True

    def is_crawled(self, audit_id: str, url: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT crawled_at FROM crawl_queue WHERE audit_id = ? AND url = ?",
                (audit_id, url),
            ).fetchone()
        return row is not None and row["crawled_at"] is not None

    def pending_count(self, audit_id: str) -> int:
        """Number of discovered URLs not yet crawled."""
        with self._connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM crawl_queue WHERE audit_id = ? AND crawled_at IS NULL",
                (audit_id,),
            ).fetchone()[0]

    def discovered_count(self, audit_id: str) -> int:
        with self._connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM crawl_queue WHERE audit_id = ?", (audit_id,)
            ).fetchone()[0]

    def clear(self, audit_id: str) -> int:
        """Drop the whole frontier of an audit. Returns rows deleted."""
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM crawl_queue WHERE audit_id = ?", (audit_id,))
            return cursor.rowcount
