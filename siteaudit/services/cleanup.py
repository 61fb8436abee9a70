"""Retention cleanup for finished audits."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from siteaudit.config.settings import get_config
from siteaudit.errors.exceptions import ValidationError
from siteaudit.services.database import utc_now
from siteaudit.services.store import AuditStore

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600


def cleanup_audit_data(store: AuditStore, retention_days: int | None = None) -> dict[str, int]:
    """
    Delete crawl data of terminal audits older than the retention window.

    Audit rows and their scores are kept; pages, check results and queue
    entries are removed.
    """
    days = get_config().audit_retention_days if retention_days is None else retention_days
    if days < 0:
        raise ValidationError("retention_days must be >= 0")

    summary = store.purge_audit_data(utc_now() - timedelta(days=days))
    if any(summary.values()):
        logger.info(
            f"Cleanup: purged {summary['audits_purged']} audit(s), "
            f"{summary['pages_deleted']} pages, {summary['checks_deleted']} check results, "
            f"{summary['queue_entries_deleted']} queue entries"
        )
    return summary


async def periodic_cleanup_task(interval: float = CLEANUP_INTERVAL_SECONDS) -> None:
    """Background task that applies the retention policy periodically."""
    while True:
        try:
            await asyncio.sleep(interval)
            await asyncio.to_thread(cleanup_audit_data, AuditStore.get_instance())
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error in audit cleanup task: {e}")
