"""Execute registered checks and persist one result row per execution."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx

from siteaudit.checks.registry import (
    CheckContext,
    CheckDefinition,
    CheckOutcome,
    CheckRegistry,
)
from siteaudit.checks.registry import registry as default_registry
from siteaudit.schemas.common import CheckStatus
from siteaudit.services.store import AuditStore, CheckResult, Page

logger = logging.getLogger(__name__)

StopSignal = Callable[[], Awaitable[bool]]


class CheckRunner:
    """
    Runs page-level and site-wide checks for one audit.

    A check that raises is recorded as a failed result carrying the error and
    the remaining checks still run. ``should_stop`` is awaited between checks;
    once it returns True the remaining checks of the call are skipped.
    """

    def __init__(
        self,
        store: AuditStore,
        client: httpx.AsyncClient | None = None,
        registry: CheckRegistry | None = None,
        should_stop: StopSignal | None = None,
        now: datetime | None = None,
    ):
        self.store = store
        self.client = client
        self.registry = registry or default_registry
        self.should_stop = should_stop
        self.now = now

    async def _stop_requested(self) -> bool:
        return self.should_stop is not None and await self.should_stop()

    async def _execute(self, check: CheckDefinition, context: CheckContext) -> CheckOutcome:
        try:
            outcome = check.run(context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if not isinstance(outcome, CheckOutcome):
                raise TypeError(f"Check returned {type(outcome).__name__}, expected CheckOutcome")
            return outcome
        except Exception as e:
            logger.exception(f"Check {check.name} failed on {context.url}")
            return CheckOutcome(
                CheckStatus.FAILED,
                {"error": str(e) or type(e).__name__, "message": f"Check error: {e}"},
            )

    async def _run(
        self,
        audit_id: str,
        checks: list[CheckDefinition],
        context: CheckContext,
        page_id: str | None,
    ) -> list[CheckResult]:
        results: list[CheckResult] = []
        for check in checks:
            if await self._stop_requested():
                logger.info(f"Audit {audit_id}: stop requested, skipping remaining checks")
                break
            outcome = await self._execute(check, context)
            results.append(
                self.store.add_check_result(
                    audit_id,
                    check.name,
                    check.category,
                    check.priority,
                    outcome.status,
                    outcome.details,
                    page_id=page_id,
                )
            )
        return results

    def _context(self, url: str, html: str, all_pages: list[Page], **extra: Any) -> CheckContext:
        context = CheckContext(url=url, html=html, all_pages=all_pages, client=self.client, **extra)
        if self.now is not None:
            context.now = self.now
        return context

    async def run_page_checks(
        self, audit_id: str, page: Page, html: str, all_pages: list[Page]
    ) -> list[CheckResult]:
        """Run every page-level check against a fetched page."""
        context = self._context(
            page.url,
            html,
            all_pages,
            title=page.title,
            meta_description=page.meta_description,
            status_code=page.status_code,
        )
        return await self._run(audit_id, self.registry.page_checks(), context, page.id)

    async def run_site_checks(
        self, audit_id: str, homepage_url: str, homepage_html: str, all_pages: list[Page]
    ) -> list[CheckResult]:
        """Run every site-wide check once, anchored on the homepage."""
        context = self._context(homepage_url, homepage_html, all_pages)
        return await self._run(audit_id, self.registry.site_checks(), context, None)
