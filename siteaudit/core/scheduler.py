"""Breadth-first crawl of one batch within page and time budgets."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from siteaudit.config.settings import Config
from siteaudit.schemas.common import AuditStatus
from siteaudit.services.crawl_queue import CrawlQueue, CrawlQueueEntry
from siteaudit.services.fetcher import FetchResult, PageFetcher
from siteaudit.services.links import extract_links, host_variants
from siteaudit.services.robots import RobotsPolicy
from siteaudit.services.store import AuditStore, Page

logger = logging.getLogger(__name__)

StopSignal = Callable[[], Awaitable[bool]]

MAX_ROBOTS_CRAWL_DELAY = 10.0


@dataclass
class FetchFailure:
    url: str
    error: str
    status_code: int | None = None


@dataclass
class CrawledPage:
    """A page fetched in this batch, with the HTML kept for the check step."""

    page: Page
    html: str


@dataclass
class BatchResult:
    pages_processed: int = 0
    # True iff the batch ended on its page or time budget with URLs still pending
    budget_exhausted: bool = False
    stopped: bool = False
    skipped: int = 0
    duplicates: int = 0
    errors: list[FetchFailure] = field(default_factory=list)
    pages: list[CrawledPage] = field(default_factory=list)
    used_relaxed_ssl: bool = False


class CrawlScheduler:
    """
    Drains an audit's crawl queue breadth-first.

    Each round claims up to ``concurrency`` entries, filters them through
    robots.txt and fetches the rest concurrently. Every fetched URL is stored
    as a page (errors and non-2xx responses included) and links found on 200
    HTML pages are enqueued one level deeper.
    """

    def __init__(
        self,
        store: AuditStore,
        queue: CrawlQueue,
        fetcher: PageFetcher,
        concurrency: int = 4,
        delay: float = 0.0,
        respect_robots: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.queue = queue
        self.fetcher = fetcher
        self.concurrency = max(1, concurrency)
        self.delay = delay
        self.respect_robots = respect_robots
        self.clock = clock

    @classmethod
    def from_config(
        cls, config: Config, store: AuditStore, queue: CrawlQueue, fetcher: PageFetcher
    ) -> CrawlScheduler:
        return cls(
            store,
            queue,
            fetcher,
            concurrency=config.crawl_concurrency,
            delay=config.crawl_delay_seconds,
            respect_robots=config.respect_robots_txt,
        )

    async def _load_robots(self, target_url: str) -> RobotsPolicy | None:
        if not self.respect_robots:
            return None
        return await RobotsPolicy.load(self.fetcher.client, target_url, self.fetcher.user_agent)

    def _round_delay(self, robots: RobotsPolicy | None) -> float:
        """Pause between rounds. A robots.txt Crawl-delay can only lengthen it."""
        if robots is None or robots.crawl_delay is None:
            return self.delay
        return max(self.delay, min(robots.crawl_delay, MAX_ROBOTS_CRAWL_DELAY))

    def _allowed_hosts(self, audit_id: str, target_url: str) -> set[str]:
        # The first stored page is the seed after redirects (e.g. apex -> www)
        pages = self.store.get_pages(audit_id)
        if pages:
            return host_variants(target_url, pages[0].url)
        return host_variants(target_url)

    async def crawl_batch(
        self,
        audit_id: str,
        target_url: str,
        max_pages: int,
        time_budget: float,
        should_stop: StopSignal | None = None,
    ) -> BatchResult:
        """
        Crawl until the queue drains, ``max_pages`` fetches are done,
        ``time_budget`` seconds pass or ``should_stop`` returns True.

        The stop signal is checked before every round.
        """
        result = BatchResult()
        deadline = self.clock() + time_budget
        robots = await self._load_robots(target_url)
        delay = self._round_delay(robots)
        allowed_hosts = self._allowed_hosts(audit_id, target_url)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def fetch(entry: CrawlQueueEntry) -> FetchResult:
            async with semaphore:
                return await self.fetcher.fetch(entry.url)

        first_round = True
        while True:
            if should_stop is not None and await should_stop():
                result.stopped = True
                break

            remaining = max_pages - result.pages_processed
            if remaining <= 0 or self.clock() >= deadline:
                result.budget_exhausted = self.queue.pending_count(audit_id) > 0
                break

            if not first_round and delay > 0:
                await asyncio.sleep(delay)
            first_round = False

            entries = self.queue.claim(audit_id, min(self.concurrency, remaining))
            if not entries:
                break

            to_fetch: list[CrawlQueueEntry] = []
            for entry in entries:
                if robots is not None and not robots.can_fetch(entry.url):
                    logger.warning(f"Skipping {entry.url}: disallowed by robots.txt")
                    result.skipped += 1
                    continue
                to_fetch.append(entry)

            fetched = await asyncio.gather(*(fetch(entry) for entry in to_fetch))
            for entry, fetch_result in zip(to_fetch, fetched):
                result.pages_processed += 1
                if entry.depth == 0 and fetch_result.final_url != entry.url:
                    allowed_hosts |= host_variants(fetch_result.final_url)
                self._record(audit_id, entry, fetch_result, allowed_hosts, result)

            self.store.refresh_counts(audit_id, [AuditStatus.CRAWLING])

        result.used_relaxed_ssl = self.fetcher.relaxed_ssl
        logger.info(
            f"Audit {audit_id}: batch crawled {result.pages_processed} URLs "
            f"({len(result.errors)} errors, {result.skipped} skipped, "
            f"{result.duplicates} duplicates)"
        )
        return result

    def _record(
        self,
        audit_id: str,
        entry: CrawlQueueEntry,
        fetched: FetchResult,
        allowed_hosts: set[str],
        result: BatchResult,
    ) -> None:
        final_url = fetched.final_url
        if final_url != entry.url and (
            self.store.has_page(audit_id, final_url)
            or not self.queue.mark_crawled(audit_id, final_url, entry.depth)
        ):
            logger.info(f"{entry.url} redirects to already crawled {final_url}")
            result.duplicates += 1
            return

        if fetched.error:
            result.errors.append(FetchFailure(entry.url, fetched.error))
        elif fetched.status_code is not None and fetched.status_code >= 400:
            logger.warning(f"{final_url} returned HTTP {fetched.status_code}")
            result.errors.append(
                FetchFailure(entry.url, f"HTTP {fetched.status_code}", fetched.status_code)
            )

        page = self.store.add_page(
            audit_id,
            final_url,
            title=fetched.title,
            meta_description=fetched.meta_description,
            status_code=fetched.status_code,
            last_modified=fetched.last_modified,
            is_resource=fetched.is_resource,
            resource_type=fetched.resource_type,
            redirect_hops=fetched.redirect_hops,
            error=fetched.error,
        )
        if page is None:
            result.duplicates += 1
            return

        if fetched.html is None or fetched.is_resource:
            return
        if fetched.status_code == 200:
            links = extract_links(fetched.html, final_url, allowed_hosts)
            if links:
                self.queue.enqueue_many(audit_id, links, entry.depth + 1)
        if page.is_ok:
            result.pages.append(CrawledPage(page, fetched.html))
