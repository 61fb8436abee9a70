"""Tests for the audit lifecycle: batches, continue, stop and staleness."""

from __future__ import annotations

import dataclasses
from datetime import timedelta
from typing import Any

import pytest
from conftest import SITE, FakeSite, RecordingExecutor

from siteaudit.config.settings import Config
from siteaudit.core.coordinator import (
    CRAWL_BUDGET_SHARE,
    NO_PAGES_MESSAGE,
    STALE_AUDIT_MESSAGE,
    STOPPED_EMPTY_MESSAGE,
    AuditCoordinator,
    ReconcileAction,
)
from siteaudit.core.scheduler import CrawlScheduler
from siteaudit.errors.exceptions import AuditNotFoundError, InvalidTransitionError, ValidationError
from siteaudit.schemas.common import AuditStatus, CheckStatus
from siteaudit.services.crawl_queue import CrawlQueue
from siteaudit.services.database import utc_now
from siteaudit.services.store import AuditStore


def make_coordinator(
    store: AuditStore,
    queue: CrawlQueue,
    config: Config,
    fake_site: FakeSite,
    executor: RecordingExecutor | None = None,
    **overrides: Any,
) -> AuditCoordinator:
    clock = overrides.pop("clock", utc_now)
    notifier = overrides.pop("notifier", lambda audit_id, event: None)
    return AuditCoordinator(
        store,
        queue,
        config=dataclasses.replace(config, **overrides),
        executor=executor or RecordingExecutor(),
        transport=fake_site.transport,
        notifier=notifier,
        clock=clock,
    )


def results_by_name(store: AuditStore, audit_id: str) -> dict[str, CheckStatus]:
    """Site-wide results keyed by check name."""
    return {
        r.check_name: r.status for r in store.get_check_results(audit_id) if r.page_id is None
    }


class TestStart:
    def test_start_creates_pending_and_hands_off(
        self, coordinator: AuditCoordinator, executor: RecordingExecutor, store: AuditStore
    ):
        audit_id = coordinator.start("example.com/")
        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.PENDING
        assert audit.url == "https://example.com"
        assert executor.submitted == [(audit_id, None)]

    def test_start_rejects_invalid_url(
        self, coordinator: AuditCoordinator, executor: RecordingExecutor, store: AuditStore
    ):
        with pytest.raises(ValidationError):
            coordinator.start("ftp://example.com")
        assert executor.submitted == []
        assert store.list_audits() == []

    def test_unknown_audit(self, coordinator: AuditCoordinator):
        with pytest.raises(AuditNotFoundError):
            coordinator.status("missing")
        with pytest.raises(AuditNotFoundError):
            coordinator.stop("missing")
        with pytest.raises(AuditNotFoundError):
            coordinator.continue_audit("missing")


@pytest.mark.asyncio
class TestRunBatch:
    async def test_single_batch_completes(
        self,
        coordinator: AuditCoordinator,
        store: AuditStore,
        queue: CrawlQueue,
        events: list[tuple[str, dict[str, Any]]],
    ):
        audit_id = store.create_audit(SITE).id
        await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.COMPLETED
        assert audit.current_batch == 1
        assert audit.started_at is not None
        assert audit.completed_at is not None
        assert audit.pages_crawled == 5
        assert audit.urls_discovered == 7
        assert audit.has_scores
        assert audit.error_message is None
        assert queue.pending_count(audit_id) == 0

        statuses = [event["status"] for _, event in events]
        assert statuses == ["crawling", "checking", "completed"]

    async def test_results_and_counts(self, coordinator: AuditCoordinator, store: AuditStore):
        audit_id = store.create_audit(SITE).id
        await coordinator.run_batch(audit_id)

        results = store.get_check_results(audit_id)
        # 10 page checks on each of 3 HTML pages, 15 site-wide checks
        assert len([r for r in results if r.page_id is not None]) == 30
        assert len([r for r in results if r.page_id is None]) == 15

        site = results_by_name(store, audit_id)
        assert site["broken_internal_links"] == CheckStatus.FAILED
        assert site["duplicate_meta_descriptions"] == CheckStatus.WARNING
        assert site["missing_robots_txt"] == CheckStatus.PASSED
        assert site["missing_sitemap"] == CheckStatus.PASSED
        assert site["missing_llms_txt"] == CheckStatus.PASSED
        assert site["ai_crawlers_blocked"] == CheckStatus.PASSED
        assert site["missing_organization_schema"] == CheckStatus.PASSED
        assert site["invalid_ssl_certificate"] == CheckStatus.PASSED

        audit = store.require_audit(audit_id)
        assert audit.passed_count + audit.warning_count + audit.failed_count == len(results)

    async def test_snapshot(self, coordinator: AuditCoordinator, store: AuditStore):
        audit_id = store.create_audit(SITE).id
        await coordinator.run_batch(audit_id)

        snapshot = coordinator.status(audit_id)
        assert snapshot.status == AuditStatus.COMPLETED
        assert snapshot.remaining_in_queue == 0
        assert snapshot.reconciled is None
        assert snapshot.scores is not None
        assert len(snapshot.recent_checks) == 45

        response = snapshot.to_response()
        assert response.scores is not None
        assert response.scores.overall == snapshot.scores.overall

    async def test_batches_until_queue_drains(
        self,
        store: AuditStore,
        queue: CrawlQueue,
        config: Config,
        fake_site: FakeSite,
    ):
        executor = RecordingExecutor()
        coordinator = make_coordinator(
            store, queue, config, fake_site, executor, batch_max_pages=2
        )
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)
        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.BATCH_COMPLETE
        assert audit.pages_crawled == 2
        # Interim scores are available between batches
        assert audit.has_scores
        assert queue.pending_count(audit_id) > 0

        while store.require_audit(audit_id).status == AuditStatus.BATCH_COMPLETE:
            coordinator.continue_audit(audit_id)
            await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.COMPLETED
        assert audit.pages_crawled == 5
        # home+about, guide+missing, pdf+redirect, then the robots-skipped URL
        assert audit.current_batch == 4
        assert executor.audit_ids == [audit_id] * 3

        # Each claimed URL was fetched exactly once across batches
        paths = fake_site.get_paths()
        for path in ("/blog/widget-guide", "/missing", "/files/catalogue.pdf", "/old-about"):
            assert paths.count(path) == 1, path

    async def test_page_cap_per_audit(
        self, store: AuditStore, queue: CrawlQueue, config: Config, fake_site: FakeSite
    ):
        coordinator = make_coordinator(store, queue, config, fake_site, max_pages_per_audit=2)
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.COMPLETED
        assert store.count_pages(audit_id) == 2

    async def test_no_pages_fails(self, store: AuditStore, queue: CrawlQueue, config: Config):
        site = FakeSite()
        site.add("/robots.txt", "User-agent: *\nDisallow: /\n", content_type="text/plain")
        coordinator = make_coordinator(store, queue, config, site)
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.FAILED
        assert audit.error_message == NO_PAGES_MESSAGE
        assert store.get_check_results(audit_id) == []

    async def test_crawl_leaves_time_for_checks(
        self, coordinator: AuditCoordinator, store: AuditStore, monkeypatch
    ):
        budgets: list[float] = []
        crawl_batch = CrawlScheduler.crawl_batch

        async def record_budget(self, *args, **kwargs):
            budgets.append(kwargs["time_budget"])
            return await crawl_batch(self, *args, **kwargs)

        monkeypatch.setattr(CrawlScheduler, "crawl_batch", record_budget)
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)

        total = coordinator.config.batch_time_budget_seconds
        assert budgets == [total * CRAWL_BUDGET_SHARE]
        assert budgets[0] < total
        assert store.require_audit(audit_id).status == AuditStatus.COMPLETED

    async def test_crash_marks_failed(
        self, coordinator: AuditCoordinator, store: AuditStore, monkeypatch
    ):
        async def boom(self, *args, **kwargs):
            raise RuntimeError("database on fire")

        monkeypatch.setattr(CrawlScheduler, "crawl_batch", boom)
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.FAILED
        assert audit.error_message == "database on fire"

    async def test_run_batch_ignores_unclaimed_states(
        self, coordinator: AuditCoordinator, store: AuditStore, fake_site: FakeSite
    ):
        audit_id = store.create_audit(SITE).id
        store.transition(audit_id, [AuditStatus.PENDING], AuditStatus.STOPPED)

        await coordinator.run_batch(audit_id)
        await coordinator.run_batch("no-such-audit")

        assert store.require_audit(audit_id).status == AuditStatus.STOPPED
        assert fake_site.requests == []

    async def test_deterministic_scores(self, coordinator: AuditCoordinator):
        first = await coordinator.run_to_completion(SITE)
        second = await coordinator.run_to_completion(SITE)

        assert first.status == second.status == AuditStatus.COMPLETED
        assert first.audit.id != second.audit.id
        assert first.scores == second.scores


@pytest.mark.asyncio
class TestContinue:
    async def test_continue_claims_next_batch(
        self, store: AuditStore, queue: CrawlQueue, config: Config, fake_site: FakeSite
    ):
        executor = RecordingExecutor()
        events: list[dict[str, Any]] = []
        coordinator = make_coordinator(
            store,
            queue,
            config,
            fake_site,
            executor,
            batch_max_pages=2,
            notifier=lambda audit_id, event: events.append(event),
        )
        audit_id = store.create_audit(SITE).id
        await coordinator.run_batch(audit_id)
        pending = queue.pending_count(audit_id)

        batch_number = coordinator.continue_audit(audit_id)

        assert batch_number == 2
        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.CRAWLING
        assert executor.audit_ids == [audit_id]
        assert queue.pending_count(audit_id) == pending
        assert events[-1]["batch"] == 2

    @pytest.mark.parametrize(
        "status",
        [AuditStatus.PENDING, AuditStatus.CRAWLING, AuditStatus.STOPPED],
    )
    async def test_continue_outside_batch_complete(
        self,
        coordinator: AuditCoordinator,
        store: AuditStore,
        executor: RecordingExecutor,
        status: AuditStatus,
    ):
        audit_id = store.create_audit(SITE).id
        if status != AuditStatus.PENDING:
            store.transition(audit_id, [AuditStatus.PENDING], status)

        with pytest.raises(InvalidTransitionError):
            coordinator.continue_audit(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == status
        assert audit.current_batch == 0
        assert executor.submitted == []


@pytest.mark.asyncio
class TestStop:
    async def test_stop_pending(
        self, coordinator: AuditCoordinator, store: AuditStore, executor: RecordingExecutor
    ):
        audit_id = store.create_audit(SITE).id

        snapshot = coordinator.stop(audit_id)

        assert snapshot.status == AuditStatus.STOPPED
        assert executor.submitted == [(audit_id, coordinator.finalize_stopped)]

        await coordinator.finalize_stopped(audit_id)
        audit = store.require_audit(audit_id)
        assert audit.completed_at is not None
        assert audit.has_scores is False
        assert audit.error_message == STOPPED_EMPTY_MESSAGE

        # A batch handed off before the stop does nothing
        await coordinator.run_batch(audit_id)
        assert store.require_audit(audit_id).status == AuditStatus.STOPPED
        assert store.count_pages(audit_id) == 0

    async def test_stop_batch_complete_finalizes(
        self, store: AuditStore, queue: CrawlQueue, config: Config, fake_site: FakeSite
    ):
        executor = RecordingExecutor()
        coordinator = make_coordinator(
            store, queue, config, fake_site, executor, batch_max_pages=2
        )
        audit_id = store.create_audit(SITE).id
        await coordinator.run_batch(audit_id)
        assert store.require_audit(audit_id).status == AuditStatus.BATCH_COMPLETE
        pages_before = store.count_pages(audit_id)

        coordinator.stop(audit_id)
        assert executor.submitted == [(audit_id, coordinator.finalize_stopped)]
        await coordinator.finalize_stopped(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.STOPPED
        assert audit.completed_at is not None
        assert audit.has_scores
        assert "broken_internal_links" in results_by_name(store, audit_id)
        assert store.count_pages(audit_id) == pages_before

        # Finalizing twice does not add results
        count = len(store.get_check_results(audit_id))
        await coordinator.finalize_stopped(audit_id)
        assert len(store.get_check_results(audit_id)) == count

    @pytest.mark.parametrize("status", [AuditStatus.CRAWLING, AuditStatus.CHECKING])
    async def test_stop_while_worker_runs(
        self,
        coordinator: AuditCoordinator,
        store: AuditStore,
        executor: RecordingExecutor,
        status: AuditStatus,
    ):
        audit_id = store.create_audit(SITE).id
        store.transition(audit_id, [AuditStatus.PENDING], AuditStatus.CRAWLING)
        if status == AuditStatus.CHECKING:
            store.transition(audit_id, [AuditStatus.CRAWLING], AuditStatus.CHECKING)

        snapshot = coordinator.stop(audit_id)

        assert snapshot.status == AuditStatus.STOPPED
        # The running worker finalizes; nothing new is handed off
        assert executor.submitted == []

    async def test_stop_mid_batch(
        self, store: AuditStore, queue: CrawlQueue, config: Config, fake_site: FakeSite
    ):
        coordinator: AuditCoordinator | None = None

        def stop_when_checking(audit_id: str, event: dict[str, Any]) -> None:
            if event["status"] == "checking":
                coordinator.stop(audit_id)

        coordinator = make_coordinator(
            store, queue, config, fake_site, notifier=stop_when_checking
        )
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.STOPPED
        assert audit.completed_at is not None
        assert audit.has_scores
        assert audit.pages_crawled == 5
        results = store.get_check_results(audit_id)
        # Every HTML page fetched before the stop is still checked
        assert len([r for r in results if r.page_id is not None]) == 30
        assert len(results_by_name(store, audit_id)) == 15

    async def test_stop_as_crawl_ends(
        self, coordinator: AuditCoordinator, store: AuditStore, monkeypatch
    ):
        crawl_batch = CrawlScheduler.crawl_batch

        async def crawl_then_stop(self, audit_id, *args, **kwargs):
            result = await crawl_batch(self, audit_id, *args, **kwargs)
            coordinator.stop(audit_id)
            return result

        monkeypatch.setattr(CrawlScheduler, "crawl_batch", crawl_then_stop)
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.STOPPED
        assert audit.completed_at is not None
        assert audit.error_message is None
        results = store.get_check_results(audit_id)
        assert len([r for r in results if r.page_id is not None]) == 30
        assert len(results_by_name(store, audit_id)) == 15

    async def test_stop_before_any_page(
        self, store: AuditStore, queue: CrawlQueue, config: Config, fake_site: FakeSite
    ):
        coordinator: AuditCoordinator | None = None

        def stop_when_crawling(audit_id: str, event: dict[str, Any]) -> None:
            if event["status"] == "crawling":
                coordinator.stop(audit_id)

        coordinator = make_coordinator(
            store, queue, config, fake_site, notifier=stop_when_crawling
        )
        audit_id = store.create_audit(SITE).id

        await coordinator.run_batch(audit_id)

        audit = store.require_audit(audit_id)
        assert audit.status == AuditStatus.STOPPED
        assert audit.completed_at is not None
        assert audit.error_message == STOPPED_EMPTY_MESSAGE
        assert audit.has_scores is False
        assert store.count_pages(audit_id) == 0
        assert store.get_check_results(audit_id) == []

    async def test_stop_terminal_raises(self, coordinator: AuditCoordinator, store: AuditStore):
        audit_id = store.create_audit(SITE).id
        await coordinator.run_batch(audit_id)
        assert store.require_audit(audit_id).status == AuditStatus.COMPLETED

        with pytest.raises(InvalidTransitionError):
            coordinator.stop(audit_id)
        assert store.require_audit(audit_id).status == AuditStatus.COMPLETED

    async def test_stopped_audit_cannot_continue(
        self, coordinator: AuditCoordinator, store: AuditStore
    ):
        audit_id = store.create_audit(SITE).id
        coordinator.stop(audit_id)
        with pytest.raises(InvalidTransitionError):
            coordinator.stop(audit_id)
        with pytest.raises(InvalidTransitionError):
            coordinator.continue_audit(audit_id)


class TestStaleness:
    @pytest.fixture
    def later(self, store, queue, config, fake_site, executor) -> AuditCoordinator:
        """Coordinator whose clock runs past the stale threshold."""
        offset = timedelta(seconds=config.stale_threshold_seconds + 60)
        return make_coordinator(
            store, queue, config, fake_site, executor, clock=lambda: utc_now() + offset
        )

    @pytest.mark.parametrize("status", [AuditStatus.CRAWLING, AuditStatus.CHECKING])
    def test_stale_worker_is_failed(
        self, later: AuditCoordinator, store: AuditStore, status: AuditStatus
    ):
        audit_id = store.create_audit(SITE).id
        store.transition(audit_id, [AuditStatus.PENDING], AuditStatus.CRAWLING)
        if status == AuditStatus.CHECKING:
            store.transition(audit_id, [AuditStatus.CRAWLING], AuditStatus.CHECKING)

        snapshot = later.status(audit_id)

        assert snapshot.status == AuditStatus.FAILED
        assert snapshot.reconciled == ReconcileAction.MARKED_FAILED
        assert snapshot.audit.error_message == STALE_AUDIT_MESSAGE
        assert snapshot.to_response().reconciled == "marked_failed"

    def test_stale_batch_complete_resumes(
        self,
        later: AuditCoordinator,
        store: AuditStore,
        queue: CrawlQueue,
        executor: RecordingExecutor,
    ):
        audit_id = store.create_audit(SITE).id
        store.transition(audit_id, [AuditStatus.PENDING], AuditStatus.CRAWLING, increment_batch=True)
        store.transition(audit_id, [AuditStatus.CRAWLING], AuditStatus.CHECKING)
        store.transition(audit_id, [AuditStatus.CHECKING], AuditStatus.BATCH_COMPLETE)
        queue.enqueue_many(audit_id, [f"{SITE}/a", f"{SITE}/b"], depth=1)

        snapshot = later.status(audit_id)

        assert snapshot.status == AuditStatus.CRAWLING
        assert snapshot.reconciled == ReconcileAction.RESUMED
        assert snapshot.audit.current_batch == 2
        assert snapshot.remaining_in_queue == 2
        assert executor.audit_ids == [audit_id]

    def test_fresh_audit_untouched(self, coordinator: AuditCoordinator, store: AuditStore):
        audit_id = store.create_audit(SITE).id
        store.transition(audit_id, [AuditStatus.PENDING], AuditStatus.CRAWLING)

        snapshot = coordinator.status(audit_id)

        assert snapshot.status == AuditStatus.CRAWLING
        assert snapshot.reconciled is None

    def test_pending_is_never_stale(self, later: AuditCoordinator, store: AuditStore):
        audit_id = store.create_audit(SITE).id
        assert later.reconcile_staleness(audit_id) is None
        assert store.require_audit(audit_id).status == AuditStatus.PENDING

    def test_read_status_has_no_side_effects(self, later: AuditCoordinator, store: AuditStore):
        audit_id = store.create_audit(SITE).id
        store.transition(audit_id, [AuditStatus.PENDING], AuditStatus.CRAWLING)

        assert later.read_status(audit_id).status == AuditStatus.CRAWLING
        assert store.require_audit(audit_id).status == AuditStatus.CRAWLING

    def test_recover_stale(
        self, later: AuditCoordinator, store: AuditStore, executor: RecordingExecutor
    ):
        crawling = store.create_audit(SITE).id
        store.transition(crawling, [AuditStatus.PENDING], AuditStatus.CRAWLING)
        waiting = store.create_audit(SITE).id
        store.transition(waiting, [AuditStatus.PENDING], AuditStatus.CRAWLING)
        store.transition(waiting, [AuditStatus.CRAWLING], AuditStatus.CHECKING)
        store.transition(waiting, [AuditStatus.CHECKING], AuditStatus.BATCH_COMPLETE)
        pending = store.create_audit(SITE).id

        assert later.recover_stale() == {"marked_failed": 1, "resumed": 1, "resubmitted": 1}
        assert store.require_audit(crawling).status == AuditStatus.FAILED
        assert store.require_audit(waiting).status == AuditStatus.CRAWLING
        assert store.require_audit(pending).status == AuditStatus.PENDING
        assert executor.audit_ids == [pending, waiting]

    def test_recover_resubmits_fresh_pending(
        self, coordinator: AuditCoordinator, store: AuditStore, executor: RecordingExecutor
    ):
        audit_id = store.create_audit(SITE).id

        counts = coordinator.recover_stale()

        assert counts["resubmitted"] == 1
        assert executor.audit_ids == [audit_id]


class TestListing:
    def test_list_active_paginates(self, coordinator: AuditCoordinator, store: AuditStore):
        ids = [store.create_audit(SITE).id for _ in range(5)]
        store.transition(ids[0], [AuditStatus.PENDING], AuditStatus.STOPPED)

        first, total = coordinator.list_active(page=1, per_page=3)
        second, _ = coordinator.list_active(page=2, per_page=3)

        assert total == 4
        assert first == ids[1:4]
        assert second == ids[4:]

    @pytest.mark.parametrize("page,per_page", [(0, 10), (1, 0), (1, 101)])
    def test_list_active_rejects_bad_arguments(
        self, coordinator: AuditCoordinator, page: int, per_page: int
    ):
        with pytest.raises(ValidationError):
            coordinator.list_active(page, per_page)

    def test_cleanup_rejects_negative_retention(self, coordinator: AuditCoordinator):
        with pytest.raises(ValidationError):
            coordinator.cleanup(-1)
