"""Batch coordinator: the audit lifecycle state machine."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import httpx

from siteaudit.config.settings import Config, get_config
from siteaudit.core.runner import CheckRunner
from siteaudit.core.scheduler import BatchResult, CrawlScheduler
from siteaudit.core.scoring import Scores, calculate_scores
from siteaudit.errors.exceptions import InvalidTransitionError, ValidationError
from siteaudit.schemas.audit import (
    AuditStatusResponse,
    CheckResultOut,
    PageOut,
    ScoresOut,
)
from siteaudit.schemas.common import IN_PROGRESS_STATUSES, TERMINAL_STATUSES, AuditStatus
from siteaudit.services.cleanup import cleanup_audit_data
from siteaudit.services.concurrency import BatchExecutor, BatchRunner
from siteaudit.services.crawl_queue import CrawlQueue
from siteaudit.services.database import utc_now
from siteaudit.services.fetcher import PageFetcher
from siteaudit.services.links import is_homepage
from siteaudit.services.store import Audit, AuditStore, CheckResult, Page
from siteaudit.services.validators import validate_url
from siteaudit.services.websocket import websocket_manager

logger = logging.getLogger(__name__)

STALE_AUDIT_MESSAGE = (
    "Audit timed out - the server function was terminated before completion. "
    "Please try again."
)
NO_PAGES_MESSAGE = "No pages were crawled"
STOPPED_EMPTY_MESSAGE = "Audit was stopped before any pages were crawled"
MAX_PER_PAGE = 100

# Share of the batch time budget given to crawling; the rest is left for checks
CRAWL_BUDGET_SHARE = 0.8

# Statuses a worker may be executing in; staleness only applies to these
_WORKING_STATUSES = (AuditStatus.CRAWLING, AuditStatus.CHECKING)


class ReconcileAction(str, Enum):
    MARKED_FAILED = "marked_failed"
    RESUMED = "resumed"


class Executor(Protocol):
    def submit(self, audit_id: str, job: BatchRunner | None = None) -> Any: ...


ProgressNotifier = Callable[[str, dict[str, Any]], None]


@dataclass
class AuditSnapshot:
    """Point-in-time view of an audit returned by status() and stop()."""

    audit: Audit
    remaining_in_queue: int
    recent_checks: list[CheckResult] = field(default_factory=list)
    reconciled: ReconcileAction | None = None

    @property
    def status(self) -> AuditStatus:
        return self.audit.status

    @property
    def scores(self) -> Scores | None:
        audit = self.audit
        if not audit.has_scores:
            return None
        return Scores(
            seo=audit.seo_score or 0,
            ai_readiness=audit.ai_readiness_score or 0,
            technical=audit.technical_score or 0,
            overall=audit.overall_score or 0,
            passed_count=audit.passed_count or 0,
            warning_count=audit.warning_count or 0,
            failed_count=audit.failed_count or 0,
        )

    def to_response(self) -> AuditStatusResponse:
        audit = self.audit
        scores = self.scores
        return AuditStatusResponse(
            audit_id=audit.id,
            url=audit.url,
            status=audit.status,
            current_batch=audit.current_batch,
            urls_discovered=audit.urls_discovered,
            pages_crawled=audit.pages_crawled,
            remaining_in_queue=self.remaining_in_queue,
            scores=ScoresOut(
                seo=scores.seo,
                ai_readiness=scores.ai_readiness,
                technical=scores.technical,
                overall=scores.overall,
                passed_count=scores.passed_count,
                warning_count=scores.warning_count,
                failed_count=scores.failed_count,
            )
            if scores
            else None,
            error_message=audit.error_message,
            created_at=audit.created_at,
            started_at=audit.started_at,
            completed_at=audit.completed_at,
            updated_at=audit.updated_at,
            recent_checks=[
                CheckResultOut(
                    id=check.id,
                    page_id=check.page_id,
                    check_name=check.check_name,
                    category=check.category,
                    priority=check.priority,
                    status=check.status,
                    details=check.details,
                    created_at=check.created_at,
                )
                for check in self.recent_checks
            ],
            reconciled=self.reconciled.value if self.reconciled else None,
        )


def page_to_out(page: Page) -> PageOut:
    return PageOut(
        id=page.id,
        url=page.url,
        title=page.title,
        meta_description=page.meta_description,
        status_code=page.status_code,
        last_modified=page.last_modified,
        crawled_at=page.crawled_at,
        is_resource=page.is_resource,
        resource_type=page.resource_type,
        redirect_hops=page.redirect_hops,
        error=page.error,
    )


class AuditCoordinator:
    """
    Drives audits through pending -> crawling -> checking -> batch_complete
    -> ... -> completed, one batch at a time.

    Every status change is a compare-and-swap on the audit row, so a worker
    that loses a race (to stop(), to staleness reconciliation or to another
    worker) simply exits. Batches run on the executor; the public operations
    only validate, flip state and hand work off.
    """

    _instance: AuditCoordinator | None = None
    _lock = threading.Lock()

    def __init__(
        self,
        store: AuditStore,
        queue: CrawlQueue,
        config: Config | None = None,
        executor: Executor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        notifier: ProgressNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.config = config or get_config()
        self.executor: Executor = executor or BatchExecutor(self.run_batch)
        self.transport = transport
        self.notifier = notifier if notifier is not None else websocket_manager.enqueue_broadcast
        self.clock = clock

    @classmethod
    def get_instance(cls) -> AuditCoordinator:
        """Get or create the singleton coordinator."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls(AuditStore.get_instance(), CrawlQueue.get_instance())
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        with cls._lock:
            cls._instance = None

    # === Public operations ===

    def start(self, target_url: str) -> str:
        """Create a pending audit, hand its first batch off and return its id."""
        url = validate_url(target_url)
        audit = self.store.create_audit(url)
        logger.info(f"Audit {audit.id} created for {url}")
        self.executor.submit(audit.id)
        return audit.id

    def continue_audit(self, audit_id: str) -> int:
        """
        Claim the next batch of an audit waiting in batch_complete.

        Returns the new batch number. Raises InvalidTransitionError without
        touching the audit when it is in any other state.
        """
        audit = self.store.require_audit(audit_id)
        if audit.status != AuditStatus.BATCH_COMPLETE:
            raise InvalidTransitionError(
                f"Audit {audit_id} cannot be continued while {audit.status.value}"
            )
        if not self.store.transition(
            audit_id, [AuditStatus.BATCH_COMPLETE], AuditStatus.CRAWLING, increment_batch=True
        ):
            raise InvalidTransitionError(f"Audit {audit_id} changed state concurrently")

        self.executor.submit(audit_id)
        batch_number = self.store.require_audit(audit_id).current_batch
        self._notify(audit_id)
        return batch_number

    def read_status(
        self, audit_id: str, reconciled: ReconcileAction | None = None
    ) -> AuditSnapshot:
        """Snapshot without side effects."""
        audit = self.store.require_audit(audit_id)
        return AuditSnapshot(
            audit=audit,
            remaining_in_queue=self.queue.pending_count(audit_id),
            recent_checks=self.store.recent_check_results(
                audit_id, self.config.recent_checks_limit
            ),
            reconciled=reconciled,
        )

    def status(self, audit_id: str) -> AuditSnapshot:
        action = self.reconcile_staleness(audit_id)
        return self.read_status(audit_id, action)

    def reconcile_staleness(self, audit_id: str) -> ReconcileAction | None:
        """
        Repair an audit whose worker died.

        A stale crawling/checking audit is failed. A stale batch_complete
        audit is resumed by claiming its next batch. Returns what was done.
        """
        audit = self.store.require_audit(audit_id)
        if audit.status not in (*_WORKING_STATUSES, AuditStatus.BATCH_COMPLETE):
            return None
        threshold = timedelta(seconds=self.config.stale_threshold_seconds)
        if self.clock() - audit.updated_at < threshold:
            return None

        if audit.status in _WORKING_STATUSES:
            if self.store.transition(
                audit_id,
                [audit.status],
                AuditStatus.FAILED,
                error_message=STALE_AUDIT_MESSAGE,
                completed_at=self.clock(),
            ):
                logger.warning(f"Audit {audit_id} was stale in {audit.status.value}; marked failed")
                self._notify(audit_id)
                return ReconcileAction.MARKED_FAILED
            return None

        if self.store.transition(
            audit_id, [AuditStatus.BATCH_COMPLETE], AuditStatus.CRAWLING, increment_batch=True
        ):
            logger.info(f"Audit {audit_id} was stale in batch_complete; resuming")
            self.executor.submit(audit_id)
            self._notify(audit_id)
            return ReconcileAction.RESUMED
        return None

    def stop(self, audit_id: str) -> AuditSnapshot:
        """
        Cancel an in-progress audit.

        Raises InvalidTransitionError for an audit that already finished.
        The running worker finalizes a stopped audit itself; when no worker is
        running (pending or batch_complete) finalization is handed off.
        """
        audit = self.store.require_audit(audit_id)
        while audit.status in IN_PROGRESS_STATUSES:
            prior = audit.status
            if self.store.transition(audit_id, [prior], AuditStatus.STOPPED):
                logger.info(f"Audit {audit_id} stopped while {prior.value}")
                if prior in (AuditStatus.PENDING, AuditStatus.BATCH_COMPLETE):
                    self.executor.submit(audit_id, self.finalize_stopped)
                self._notify(audit_id)
                return self.read_status(audit_id)
            audit = self.store.require_audit(audit_id)

        raise InvalidTransitionError(
            f"Audit {audit_id} cannot be stopped while {audit.status.value}"
        )

    def list_active(self, page: int = 1, per_page: int = 20) -> tuple[list[str], int]:
        """Ids of in-progress audits, oldest first, and the total count."""
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= per_page <= MAX_PER_PAGE:
            raise ValidationError(f"per_page must be between 1 and {MAX_PER_PAGE}")
        ids = [audit.id for audit in self.store.list_audits(IN_PROGRESS_STATUSES)]
        start = (page - 1) * per_page
        return ids[start : start + per_page], len(ids)

    def list_pages(self, audit_id: str) -> list[Page]:
        self.store.require_audit(audit_id)
        return self.store.get_pages(audit_id)

    def cleanup(self, retention_days: int | None = None) -> dict[str, int]:
        return cleanup_audit_data(self.store, retention_days)

    def recover_stale(self) -> dict[str, int]:
        """
        Reconcile every unfinished audit (run once at startup).

        Pending audits lost their queued first batch with the previous
        process, so they are handed to the executor again.
        """
        counts = {action.value: 0 for action in ReconcileAction}
        counts["resubmitted"] = 0
        for audit in self.store.list_audits([AuditStatus.PENDING]):
            self.executor.submit(audit.id)
            counts["resubmitted"] += 1
        candidates = self.store.list_audits([*_WORKING_STATUSES, AuditStatus.BATCH_COMPLETE])
        for audit in candidates:
            action = self.reconcile_staleness(audit.id)
            if action is not None:
                counts[action.value] += 1
        if any(counts.values()):
            logger.info(
                f"Recovered stale audits: {counts['marked_failed']} failed, "
                f"{counts['resumed']} resumed, {counts['resubmitted']} resubmitted"
            )
        return counts

    async def run_to_completion(self, target_url: str) -> AuditSnapshot:
        """Run every batch inline until the audit reaches a terminal state."""
        url = validate_url(target_url)
        audit = self.store.create_audit(url)
        logger.info(f"Audit {audit.id} created for {url}")
        await self.run_batch(audit.id)

        while True:
            audit = self.store.require_audit(audit.id)
            if audit.status != AuditStatus.BATCH_COMPLETE:
                break
            if self.store.transition(
                audit.id, [AuditStatus.BATCH_COMPLETE], AuditStatus.CRAWLING, increment_batch=True
            ):
                await self.run_batch(audit.id)

        return self.read_status(audit.id)

    # === Batch worker ===

    async def run_batch(self, audit_id: str) -> None:
        """
        Execute one batch of an audit.

        A pending audit is claimed here; any later batch must already have
        been claimed (status crawling) by continue or staleness recovery.
        """
        audit = self.store.get_audit(audit_id)
        if audit is None:
            logger.warning(f"Audit {audit_id} disappeared before its batch ran")
            return

        if audit.status == AuditStatus.PENDING:
            if not self.store.transition(
                audit_id,
                [AuditStatus.PENDING],
                AuditStatus.CRAWLING,
                increment_batch=True,
                started_at=self.clock(),
            ):
                logger.info(f"Audit {audit_id} left pending before its first batch")
                return
            self.queue.seed(audit_id, audit.url)
        elif audit.status != AuditStatus.CRAWLING:
            logger.info(f"Audit {audit_id} is {audit.status.value}; batch not run")
            return

        self._notify(audit_id)
        try:
            await self._execute_batch(audit_id)
        except Exception as e:
            logger.exception(f"Audit {audit_id} failed")
            self._fail(audit_id, str(e) or type(e).__name__)

    async def finalize_stopped(self, audit_id: str, fetcher: PageFetcher | None = None) -> None:
        """Run site-wide checks once and score whatever a stopped audit collected."""
        audit = self.store.get_audit(audit_id)
        if audit is None or audit.status != AuditStatus.STOPPED or audit.completed_at:
            return

        if fetcher is None:
            async with self._fetcher(audit) as own_fetcher:
                await self._finalize_stopped(audit, own_fetcher)
        else:
            await self._finalize_stopped(audit, fetcher)

    async def _finalize_stopped(self, audit: Audit, fetcher: PageFetcher) -> None:
        pages = self.store.get_pages(audit.id)
        if pages and not self.store.has_site_checks(audit.id):
            runner = CheckRunner(self.store, fetcher.client)
            await self._run_site_checks(audit.id, pages, fetcher, runner)

        results = self.store.get_check_results(audit.id)
        fields: dict[str, Any] = {"completed_at": self.clock()}
        if not pages:
            fields["error_message"] = STOPPED_EMPTY_MESSAGE
        if results:
            fields.update(calculate_scores(results).as_audit_fields())
        self.store.update_audit(audit.id, [AuditStatus.STOPPED], **fields)
        logger.info(f"Audit {audit.id} finalized after stop with {len(results)} results")
        self._notify(audit.id)

    def _fetcher(self, audit: Audit) -> PageFetcher:
        return PageFetcher.from_config(
            self.config, relaxed_ssl=audit.use_relaxed_ssl, transport=self.transport
        )

    def _stop_signal(self, audit_id: str) -> Callable[[], Any]:
        async def should_stop() -> bool:
            audit = self.store.get_audit(audit_id)
            return audit is None or audit.status in TERMINAL_STATUSES

        return should_stop

    async def _finalize_if_stopped(self, audit_id: str, fetcher: PageFetcher) -> None:
        audit = self.store.get_audit(audit_id)
        if audit is not None and audit.status == AuditStatus.STOPPED:
            await self.finalize_stopped(audit_id, fetcher)
        elif audit is not None:
            logger.info(f"Audit {audit_id} moved to {audit.status.value}; worker exiting")

    async def _execute_batch(self, audit_id: str) -> None:
        audit = self.store.require_audit(audit_id)
        config = self.config
        should_stop = self._stop_signal(audit_id)

        async with self._fetcher(audit) as fetcher:
            remaining_cap = config.max_pages_per_audit - self.store.count_pages(audit_id)
            scheduler = CrawlScheduler.from_config(config, self.store, self.queue, fetcher)
            batch = await scheduler.crawl_batch(
                audit_id,
                audit.url,
                max_pages=max(0, min(config.batch_max_pages, remaining_cap)),
                time_budget=config.batch_time_budget_seconds * CRAWL_BUDGET_SHARE,
                should_stop=should_stop,
            )
            if batch.used_relaxed_ssl and not audit.use_relaxed_ssl:
                self.store.update_audit(audit_id, [AuditStatus.CRAWLING], use_relaxed_ssl=True)

            if not self.store.transition(audit_id, [AuditStatus.CRAWLING], AuditStatus.CHECKING):
                if self.store.require_audit(audit_id).status == AuditStatus.STOPPED:
                    await self._check_pages(audit_id, batch, fetcher)
                await self._finalize_if_stopped(audit_id, fetcher)
                return
            self._notify(audit_id)

            all_pages = await self._check_pages(audit_id, batch, fetcher)

            if await should_stop():
                await self._finalize_if_stopped(audit_id, fetcher)
                return

            has_more = (
                self.queue.pending_count(audit_id) > 0
                and len(all_pages) < config.max_pages_per_audit
            )
            if has_more:
                scores = calculate_scores(self.store.get_check_results(audit_id))
                if self.store.transition(
                    audit_id,
                    [AuditStatus.CHECKING],
                    AuditStatus.BATCH_COMPLETE,
                    **scores.as_audit_fields(),
                ):
                    self._notify(audit_id)
                else:
                    await self._finalize_if_stopped(audit_id, fetcher)
                return

            runner = CheckRunner(self.store, fetcher.client, should_stop=should_stop)
            await self._complete(audit_id, all_pages, fetcher, runner)

    async def _check_pages(
        self, audit_id: str, batch: BatchResult, fetcher: PageFetcher
    ) -> list[Page]:
        """Run page checks on every page fetched this batch, stop or not."""
        runner = CheckRunner(self.store, fetcher.client)
        all_pages = self.store.get_pages(audit_id)
        for crawled in batch.pages:
            await runner.run_page_checks(audit_id, crawled.page, crawled.html, all_pages)
        return all_pages

    async def _complete(
        self, audit_id: str, pages: list[Page], fetcher: PageFetcher, runner: CheckRunner
    ) -> None:
        if not pages:
            if self.store.transition(
                audit_id,
                [AuditStatus.CHECKING],
                AuditStatus.FAILED,
                error_message=NO_PAGES_MESSAGE,
                completed_at=self.clock(),
            ):
                logger.warning(f"Audit {audit_id}: {NO_PAGES_MESSAGE}")
                self._notify(audit_id)
            else:
                await self._finalize_if_stopped(audit_id, fetcher)
            return

        await self._run_site_checks(audit_id, pages, fetcher, runner)

        scores = calculate_scores(self.store.get_check_results(audit_id))
        if self.store.transition(
            audit_id,
            [AuditStatus.CHECKING],
            AuditStatus.COMPLETED,
            completed_at=self.clock(),
            **scores.as_audit_fields(),
        ):
            logger.info(f"Audit {audit_id} completed with overall score {scores.overall}")
            self._notify(audit_id)
        else:
            await self._finalize_if_stopped(audit_id, fetcher)

    async def _run_site_checks(
        self, audit_id: str, pages: list[Page], fetcher: PageFetcher, runner: CheckRunner
    ) -> None:
        homepage = next((p for p in pages if is_homepage(p.url) and p.is_ok), pages[0])
        fetched = await fetcher.fetch(homepage.url)
        await runner.run_site_checks(audit_id, homepage.url, fetched.html or "", pages)

    def _fail(self, audit_id: str, message: str) -> None:
        sources = [AuditStatus.PENDING, *_WORKING_STATUSES, AuditStatus.BATCH_COMPLETE]
        if self.store.transition(
            audit_id,
            sources,
            AuditStatus.FAILED,
            error_message=message,
            completed_at=self.clock(),
        ):
            self._notify(audit_id)

    def _notify(self, audit_id: str) -> None:
        audit = self.store.get_audit(audit_id)
        if audit is None:
            return
        self.notifier(
            audit_id,
            {
                "status": audit.status.value,
                "pages_crawled": audit.pages_crawled,
                "urls_discovered": audit.urls_discovered,
                "batch": audit.current_batch,
            },
        )
