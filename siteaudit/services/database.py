"""SQLite connection helpers and schema for audits, crawl queue, pages and checks."""

from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Paths whose schema has been created in this process
_initialized_paths: set[str] = set()
_init_lock = threading.Lock()

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS audits (
        id TEXT PRIMARY KEY,
        url TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        updated_at TEXT NOT NULL,
        current_batch INTEGER NOT NULL DEFAULT 0,
        urls_discovered INTEGER NOT NULL DEFAULT 0,
        pages_crawled INTEGER NOT NULL DEFAULT 0,
        seo_score INTEGER,
        ai_readiness_score INTEGER,
        technical_score INTEGER,
        overall_score INTEGER,
        passed_count INTEGER,
        warning_count INTEGER,
        failed_count INTEGER,
        error_message TEXT,
        use_relaxed_ssl INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audits_status ON audits(status)",
    """
    CREATE TABLE IF NOT EXISTS crawl_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        audit_id TEXT NOT NULL,
        url TEXT NOT NULL,
        depth INTEGER NOT NULL DEFAULT 0,
        discovered_at TEXT NOT NULL,
        crawled_at TEXT,
        UNIQUE (audit_id, url)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_queue_pending
    ON crawl_queue(audit_id, crawled_at, depth, discovered_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS pages (
        id TEXT PRIMARY KEY,
        audit_id TEXT NOT NULL,
        url TEXT NOT NULL,
        title TEXT,
        meta_description TEXT,
        status_code INTEGER,
        last_modified TEXT,
        crawled_at TEXT NOT NULL,
        is_resource INTEGER NOT NULL DEFAULT 0,
        resource_type TEXT,
        redirect_hops INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        UNIQUE (audit_id, url)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pages_audit ON pages(audit_id)",
    """
    CREATE TABLE IF NOT EXISTS check_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        audit_id TEXT NOT NULL,
        page_id TEXT,
        check_name TEXT NOT NULL,
        category TEXT NOT NULL,
        priority TEXT NOT NULL,
        status TEXT NOT NULL,
        details TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_checks_audit ON check_results(audit_id)",
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime for storage (always UTC, ISO-8601)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored timestamp, assuming UTC when no offset is present."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a new connection with row access by column name."""
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    # Enable WAL mode for better concurrent performance
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def init_schema(db_path: Path) -> None:
    """Create all tables once per database path."""
    key = str(db_path)
    with _init_lock:
        if key in _initialized_paths and db_path.exists():
            return
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = connect(db_path)
        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()
        _initialized_paths.add(key)


def check_database_connection(db_path: Path) -> dict[str, Any]:
    """
    Check if the audit database is accessible and healthy.

    Returns a dict with connection status and details.
    """
    try:
        init_schema(db_path)

        with sqlite3.connect(db_path, timeout=5.0) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            cursor = conn.execute("SELECT 1")
            cursor.fetchone()

            cursor = conn.execute("PRAGMA integrity_check")
            integrity_result = cursor.fetchone()[0]

            cursor = conn.execute("PRAGMA journal_mode")
            journal_mode = cursor.fetchone()[0]

        return {
            "connected": True,
            "path": str(db_path),
            "exists": db_path.exists(),
            "integrity": integrity_result,
            "journal_mode": journal_mode,
            "error": None,
        }
    except Exception as e:
        return {
            "connected": False,
            "path": str(db_path),
            "exists": db_path.exists(),
            "integrity": "unknown",
            "journal_mode": "unknown",
            "error": str(e),
        }
