"""Audit record store backed by SQLite.

The store is the single source of truth for audit phase and progress. Every
status change goes through :meth:`AuditStore.transition`, a conditional update
that only succeeds when the audit is still in one of the expected states.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from siteaudit.config.settings import get_config
from siteaudit.errors.exceptions import (
    AuditNotFoundError,
    InvalidTransitionError,
    PersistenceError,
)
from siteaudit.schemas.common import (
    TERMINAL_STATUSES,
    AuditStatus,
    CheckCategory,
    CheckPriority,
    CheckStatus,
    is_legal_transition,
)
from siteaudit.services.database import (
    connect,
    init_schema,
    parse_timestamp,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

# Columns that may be written through transition()/update_audit()
_AUDIT_FIELDS = frozenset(
    {
        "started_at",
        "completed_at",
        "current_batch",
        "urls_discovered",
        "pages_crawled",
        "seo_score",
        "ai_readiness_score",
        "technical_score",
        "overall_score",
        "passed_count",
        "warning_count",
        "failed_count",
        "error_message",
        "use_relaxed_ssl",
        "updated_at",
    }
)


@dataclass
class Audit:
    """Persisted audit record."""

    id: str
    url: str
    status: AuditStatus
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    current_batch: int = 0
    urls_discovered: int = 0
    pages_crawled: int = 0
    seo_score: int | None = None
    ai_readiness_score: int | None = None
    technical_score: int | None = None
    overall_score: int | None = None
    passed_count: int | None = None
    warning_count: int | None = None
    failed_count: int | None = None
    error_message: str | None = None
    use_relaxed_ssl: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_scores(self) -> bool:
        return self.overall_score is not None


@dataclass
class Page:
    """A fetched URL. Degraded pages carry an error or a non-2xx status."""

    id: str
    audit_id: str
    url: str
    crawled_at: datetime
    title: str | None = None
    meta_description: str | None = None
    status_code: int | None = None
    last_modified: str | None = None
    is_resource: bool = False
    resource_type: str | None = None
    redirect_hops: int = 0
    error: str | None = None

    @property
    def is_ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300


@dataclass
class CheckResult:
    """One execution of one check (page_id is None for site-wide checks)."""

    id: int
    audit_id: str
    check_name: str
    category: CheckCategory
    priority: CheckPriority
    status: CheckStatus
    created_at: datetime
    page_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _row_to_audit(row: sqlite3.Row) -> Audit:
    return Audit(
        id=row["id"],
        url=row["url"],
        status=AuditStatus(row["status"]),
        created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
        updated_at=parse_timestamp(row["updated_at"]),  # type: ignore[arg-type]
        started_at=parse_timestamp(row["started_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
        current_batch=row["current_batch"],
        urls_discovered=row["urls_discovered"],
        pages_crawled=row["pages_crawled"],
        seo_score=row["seo_score"],
        ai_readiness_score=row["ai_readiness_score"],
        technical_score=row["technical_score"],
        overall_score=row["overall_score"],
        passed_count=row["passed_count"],
        warning_count=row["warning_count"],
        failed_count=row["failed_count"],
        error_message=row["error_message"],
        use_relaxed_ssl=bool(row["use_relaxed_ssl"]),
    )


def _row_to_page(row: sqlite3.Row) -> Page:
    return Page(
        id=row["id"],
        audit_id=row["audit_id"],
        url=row["url"],
        crawled_at=parse_timestamp(row["crawled_at"]),  # type: ignore[arg-type]
        title=row["title"],
        meta_description=row["meta_description"],
        status_code=row["status_code"],
        last_modified=row["last_modified"],
        is_resource=bool(row["is_resource"]),
        resource_type=row["resource_type"],
        redirect_hops=row["redirect_hops"],
        error=row["error"],
    )


def _row_to_check(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        id=row["id"],
        audit_id=row["audit_id"],
        page_id=row["page_id"],
        check_name=row["check_name"],
        category=CheckCategory(row["category"]),
        priority=CheckPriority(row["priority"]),
        status=CheckStatus(row["status"]),
        details=json.loads(row["details"]) if row["details"] else {},
        created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
    )


def _serialize_field(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, bool):
        return int(value)
    return value


class AuditStore:
    """
    Thread-safe store for audits, pages and check results.

    Opens a short-lived SQLite connection per operation.
    """

    _instance: AuditStore | None = None
    _lock = threading.Lock()

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_lock = threading.Lock()
        init_schema(db_path)

    @classmethod
    def get_instance(cls, db_path: Path | None = None) -> AuditStore:
        """Get or create the singleton store instance."""
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
        """Serialize access, commit on success and wrap sqlite errors."""
        with self._conn_lock:
            try:
                conn = connect(self.db_path)
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not open audit database: {e}") from e
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"Audit database error: {e}") from e
            finally:
                conn.close()

    # === Audits ===

    def create_audit(self, url: str) -> Audit:
        """Insert a new audit in the pending state."""
        audit_id = str(uuid.uuid4())
        now = to_iso(utc_now())
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO audits (id, url, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (audit_id, url, AuditStatus.PENDING.value, now, now),
            )
        return self.require_audit(audit_id)

    def get_audit(self, audit_id: str) -> Audit | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM audits WHERE id = ?", (audit_id,)).fetchone()
        return _row_to_audit(row) if row else None

    def require_audit(self, audit_id: str) -> Audit:
        """Like get_audit() but raises AuditNotFoundError."""
        audit = self.get_audit(audit_id)
        if audit is None:
            raise AuditNotFoundError(f"Audit {audit_id} not found")
        return audit

    def list_audits(
        self, statuses: Iterable[AuditStatus] | None = None
    ) -> list[Audit]:
        """List audits, optionally filtered by status, oldest first."""
        query = "SELECT * FROM audits"
        params: list[Any] = []
        if statuses is not None:
            status_values = [s.value for s in statuses]
            placeholders = ", ".join("?" for _ in status_values)
            query += f" WHERE status IN ({placeholders})"
            params.extend(status_values)
        query += " ORDER BY created_at ASC, rowid ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_audit(row) for row in rows]

    def transition(
        self,
        audit_id: str,
        from_statuses: Iterable[AuditStatus],
        to_status: AuditStatus,
        *,
        increment_batch: bool = False,
        **fields: Any,
    ) -> bool:
        """
        Atomically move an audit to ``to_status`` if it is in ``from_statuses``.

        Returns True if this call won the compare-and-swap. Raises
        InvalidTransitionError when asked for an edge the state machine does
        not have.
        """
        sources = list(from_statuses)
        for source in sources:
            if not is_legal_transition(source, to_status):
                raise InvalidTransitionError(
                    f"Illegal transition {source.value} -> {to_status.value}"
                )

        assignments = ["status = ?"]
        params: list[Any] = [to_status.value]
        if increment_batch:
            assignments.append("current_batch = current_batch + 1")
        fields.setdefault("updated_at", utc_now())
        for name, value in fields.items():
            if name not in _AUDIT_FIELDS:
                raise ValueError(f"Unknown audit field: {name}")
            assignments.append(f"{name} = ?")
            params.append(_serialize_field(value))

        placeholders = ", ".join("?" for _ in sources)
        params.append(audit_id)
        params.extend(s.value for s in sources)

        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE audits SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            won = cursor.rowcount > 0

        if won:
            logger.info(
                f"Audit {audit_id}: {'/'.join(s.value for s in sources)} -> {to_status.value}"
            )
        return won

    def update_audit(
        self,
        audit_id: str,
        expected_statuses: Iterable[AuditStatus],
        **fields: Any,
    ) -> bool:
        """
        Write progress fields without changing status.

        The write only lands if the audit is still in one of
        ``expected_statuses``, so a racing stop or failure is never overwritten.
        """
        statuses = [s.value for s in expected_statuses]
        fields.setdefault("updated_at", utc_now())
        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            if name not in _AUDIT_FIELDS:
                raise ValueError(f"Unknown audit field: {name}")
            assignments.append(f"{name} = ?")
            params.append(_serialize_field(value))
        params.append(audit_id)
        params.extend(statuses)
        placeholders = ", ".join("?" for _ in statuses)

        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE audits SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            return cursor.rowcount > 0

    def refresh_counts(self, audit_id: str, expected_statuses: Iterable[AuditStatus]) -> bool:
        """Recompute urls_discovered and pages_crawled from the underlying rows."""
        statuses = [s.value for s in expected_statuses]
        placeholders = ", ".join("?" for _ in statuses)
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE audits SET
                    urls_discovered = (SELECT COUNT(*) FROM crawl_queue WHERE audit_id = ?),
                    pages_crawled = (SELECT COUNT(*) FROM pages WHERE audit_id = ?),
                    updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                [audit_id, audit_id, to_iso(utc_now()), audit_id, *statuses],
            )
            return cursor.rowcount > 0

    # === Pages ===

    def add_page(
        self,
        audit_id: str,
        url: str,
        *,
        title: str | None = None,
        meta_description: str | None = None,
        status_code: int | None = None,
        last_modified: str | None = None,
        is_resource: bool = False,
        resource_type: str | None = None,
        redirect_hops: int = 0,
        error: str | None = None,
    ) -> Page | None:
        """
        Persist a fetched page.

        Returns None if the URL was already recorded for this audit (pages are
        append-only per URL).
        """
        page_id = str(uuid.uuid4())
        crawled_at = utc_now()
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO pages (
                    id, audit_id, url, title, meta_description, status_code,
                    last_modified, crawled_at, is_resource, resource_type,
                    redirect_hops, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    page_id,
                    audit_id,
                    url,
                    title,
                    meta_description,
                    status_code,
                    last_modified,
                    to_iso(crawled_at),
                    int(is_resource),
                    resource_type,
                    redirect_hops,
                    error,
                ),
            )
            if cursor.rowcount == 0:
                return None

        return Page(
            id=page_id,
            audit_id=audit_id,
            url=url,
            crawled_at=crawled_at,
            title=title,
            meta_description=meta_description,
            status_code=status_code,
            last_modified=last_modified,
            is_resource=is_resource,
            resource_type=resource_type,
            redirect_hops=redirect_hops,
            error=error,
        )

    def get_pages(self, audit_id: str) -> list[Page]:
        """All pages of an audit in crawl order."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pages WHERE audit_id = ? ORDER BY crawled_at ASC, rowid ASC",
                (audit_id,),
            ).fetchall()
        return [_row_to_page(row) for row in rows]

    def has_page(self, audit_id: str, url: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM pages WHERE audit_id = ? AND url = ?", (audit_id, url)
            ).fetchone()
        return row is not None

    def count_pages(self, audit_id: str) -> int:
        with self._connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM pages WHERE audit_id = ?", (audit_id,)
            ).fetchone()[0]

    # === Check results ===

    def add_check_result(
        self,
        audit_id: str,
        check_name: str,
        category: CheckCategory,
        priority: CheckPriority,
        status: CheckStatus,
        details: dict[str, Any] | None = None,
        page_id: str | None = None,
    ) -> CheckResult:
        """Append one check result row."""
        created_at = utc_now()
        details = details or {}
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO check_results (
                    audit_id, page_id, check_name, category, priority, status,
                    details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    audit_id,
                    page_id,
                    check_name,
                    category.value,
                    priority.value,
                    status.value,
                    json.dumps(details, default=str),
                    to_iso(created_at),
                ),
            )
            result_id = cursor.lastrowid
        return CheckResult(
            id=result_id or 0,
            audit_id=audit_id,
            page_id=page_id,
            check_name=check_name,
            category=category,
            priority=priority,
            status=status,
            details=details,
            created_at=created_at,
        )

    def get_check_results(self, audit_id: str) -> list[CheckResult]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM check_results WHERE audit_id = ? ORDER BY id ASC",
                (audit_id,),
            ).fetchall()
        return [_row_to_check(row) for row in rows]

    def recent_check_results(self, audit_id: str, limit: int) -> list[CheckResult]:
        """Most recent results first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM check_results WHERE audit_id = ? ORDER BY id DESC LIMIT ?",
                (audit_id, limit),
            ).fetchall()
        return [_row_to_check(row) for row in rows]

    def has_site_checks(self, audit_id: str) -> bool:
        """True once site-wide checks have been recorded for the audit."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM check_results WHERE audit_id = ? AND page_id IS NULL LIMIT 1",
                (audit_id,),
            ).fetchone()
        return row is not None

    # === Retention ===

    def purge_audit_data(self, older_than: datetime) -> dict[str, int]:
        """
        Delete pages, check results and queue rows of terminal audits created
        before ``older_than``. Audit rows themselves are kept.

        Queue rows of every terminal audit are removed regardless of age.
        """
        terminal = [s.value for s in TERMINAL_STATUSES]
        placeholders = ", ".join("?" for _ in terminal)
        cutoff = to_iso(older_than)
        with self._connection() as conn:
            audit_ids = [
                row["id"]
                for row in conn.execute(
                    f"SELECT id FROM audits WHERE status IN ({placeholders}) AND created_at < ?",
                    [*terminal, cutoff],
                ).fetchall()
            ]
            pages_deleted = 0
            checks_deleted = 0
            for audit_id in audit_ids:
                pages_deleted += conn.execute(
                    "DELETE FROM pages WHERE audit_id = ?", (audit_id,)
                ).rowcount
                checks_deleted += conn.execute(
                    "DELETE FROM check_results WHERE audit_id = ?", (audit_id,)
                ).rowcount
            queue_deleted = conn.execute(
                f"""
                DELETE FROM crawl_queue WHERE audit_id IN (
                    SELECT id FROM audits WHERE status IN ({placeholders})
                ) OR audit_id NOT IN (SELECT id FROM audits)
                """,
                terminal,
            ).rowcount

        return {
            "audits_purged": len(audit_ids),
            "pages_deleted": pages_deleted,
            "checks_deleted": checks_deleted,
            "queue_entries_deleted": queue_deleted,
        }
