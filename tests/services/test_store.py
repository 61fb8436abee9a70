"""Tests for the SQLite audit store."""

from __future__ import annotations

from datetime import timedelta

import pytest

from siteaudit.errors.exceptions import AuditNotFoundError, InvalidTransitionError
from siteaudit.schemas.common import AuditStatus, CheckCategory, CheckPriority, CheckStatus
from siteaudit.services.database import check_database_connection, utc_now
from siteaudit.services.store import AuditStore


class TestAuditStoreBasics:
    def test_singleton_instance(self):
        assert AuditStore.get_instance() is AuditStore.get_instance()

    def test_create_audit_is_pending(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        assert audit.status == AuditStatus.PENDING
        assert audit.current_batch == 0
        assert audit.pages_crawled == 0
        assert audit.has_scores is False
        assert audit.started_at is None

    def test_require_missing_audit(self, store: AuditStore):
        with pytest.raises(AuditNotFoundError):
            store.require_audit("does-not-exist")
        assert store.get_audit("does-not-exist") is None

    def test_list_audits_by_status(self, store: AuditStore):
        first = store.create_audit("https://a.example.com")
        second = store.create_audit("https://b.example.com")
        store.transition(second.id, [AuditStatus.PENDING], AuditStatus.STOPPED)

        pending = store.list_audits([AuditStatus.PENDING])
        assert [a.id for a in pending] == [first.id]
        assert len(store.list_audits()) == 2


class TestTransitions:
    def test_compare_and_swap_wins_once(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        assert store.transition(audit.id, [AuditStatus.PENDING], AuditStatus.CRAWLING) is True
        assert store.transition(audit.id, [AuditStatus.PENDING], AuditStatus.CRAWLING) is False
        assert store.require_audit(audit.id).status == AuditStatus.CRAWLING

    def test_illegal_edge_raises(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        with pytest.raises(InvalidTransitionError):
            store.transition(audit.id, [AuditStatus.PENDING], AuditStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            store.transition(audit.id, [AuditStatus.COMPLETED], AuditStatus.CRAWLING)
        assert store.require_audit(audit.id).status == AuditStatus.PENDING

    def test_increment_batch_and_fields(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        started = utc_now()
        store.transition(
            audit.id,
            [AuditStatus.PENDING],
            AuditStatus.CRAWLING,
            increment_batch=True,
            started_at=started,
        )
        reloaded = store.require_audit(audit.id)
        assert reloaded.current_batch == 1
        assert reloaded.started_at == started

    def test_unknown_field_rejected(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        with pytest.raises(ValueError):
            store.transition(audit.id, [AuditStatus.PENDING], AuditStatus.CRAWLING, bogus=1)

    def test_update_audit_respects_expected_status(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        assert store.update_audit(audit.id, [AuditStatus.CRAWLING], use_relaxed_ssl=True) is False
        assert store.update_audit(audit.id, [AuditStatus.PENDING], use_relaxed_ssl=True) is True
        assert store.require_audit(audit.id).use_relaxed_ssl is True


class TestPagesAndResults:
    def test_add_page_is_unique_per_url(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        page = store.add_page(audit.id, "https://example.com", title="Home", status_code=200)
        assert page is not None and page.is_ok
        assert store.add_page(audit.id, "https://example.com", title="Again") is None
        assert store.count_pages(audit.id) == 1
        assert store.has_page(audit.id, "https://example.com")

    def test_degraded_page(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        page = store.add_page(audit.id, "https://example.com/x", error="ConnectError")
        assert page is not None
        assert page.is_ok is False
        assert store.get_pages(audit.id)[0].error == "ConnectError"

    def test_check_results_round_trip_details(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        store.add_check_result(
            audit.id,
            "missing_title",
            CheckCategory.SEO,
            CheckPriority.CRITICAL,
            CheckStatus.FAILED,
            {"message": "No title", "nested": {"a": [1, 2]}},
            page_id="page-1",
        )
        (result,) = store.get_check_results(audit.id)
        assert result.details == {"message": "No title", "nested": {"a": [1, 2]}}
        assert result.status == CheckStatus.FAILED
        assert store.has_site_checks(audit.id) is False

    def test_recent_results_newest_first(self, store: AuditStore):
        audit = store.create_audit("https://example.com")
        for name in ("missing_title", "missing_viewport", "mixed_content"):
            store.add_check_result(
                audit.id, name, CheckCategory.SEO, CheckPriority.OPTIONAL, CheckStatus.PASSED
            )
        recent = store.recent_check_results(audit.id, 2)
        assert [r.check_name for r in recent] == ["mixed_content", "missing_viewport"]
        assert store.has_site_checks(audit.id) is True

    def test_refresh_counts(self, store: AuditStore, queue):
        audit = store.create_audit("https://example.com")
        store.transition(audit.id, [AuditStatus.PENDING], AuditStatus.CRAWLING)
        queue.enqueue_many(audit.id, ["https://example.com", "https://example.com/a"], 0)
        store.add_page(audit.id, "https://example.com", status_code=200)

        assert store.refresh_counts(audit.id, [AuditStatus.CRAWLING]) is True
        reloaded = store.require_audit(audit.id)
        assert reloaded.urls_discovered == 2
        assert reloaded.pages_crawled == 1


class TestRetention:
    def test_purge_only_old_terminal_audits(self, store: AuditStore, queue):
        old = store.create_audit("https://old.example.com")
        active = store.create_audit("https://active.example.com")
        for audit in (old, active):
            store.add_page(audit.id, f"{audit.url}/", status_code=200)
            queue.seed(audit.id, audit.url)
        store.transition(old.id, [AuditStatus.PENDING], AuditStatus.STOPPED)

        summary = store.purge_audit_data(utc_now() + timedelta(seconds=1))

        assert summary["audits_purged"] == 1
        assert summary["pages_deleted"] == 1
        assert summary["queue_entries_deleted"] == 1
        assert store.count_pages(old.id) == 0
        assert store.count_pages(active.id) == 1
        # Audit rows are kept
        assert store.get_audit(old.id) is not None


class TestDatabaseHealth:
    def test_check_database_connection(self, config):
        status = check_database_connection(config.db_path)
        assert status["connected"] is True
        assert status["journal_mode"] == "wal"
        assert status["error"] is None
