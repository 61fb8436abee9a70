"""Audit endpoints: start, poll, continue and stop batched site audits."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from siteaudit.api.v1.deps import get_coordinator
from siteaudit.core.coordinator import AuditCoordinator, page_to_out
from siteaudit.errors.exceptions import (
    AuditError,
    AuditNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from siteaudit.schemas.audit import (
    AuditCreateResponse,
    AuditRequest,
    AuditStatusResponse,
    CleanupRequest,
    CleanupResponse,
    ContinueResponse,
    PageOut,
    PaginatedAuditIds,
)
from siteaudit.schemas.common import AuditStatus
from siteaudit.services.concurrency import BatchExecutor

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_http_error(error: AuditError) -> HTTPException:
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, AuditNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(error))
    logger.exception(f"Audit operation failed: {error}")
    return HTTPException(status_code=500, detail=f"Unexpected error: {error}")


@router.post("/audit", response_model=AuditCreateResponse)
async def create_audit(
    request: AuditRequest,
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> AuditCreateResponse:
    """
    Start a batched audit of the site at the given URL.

    Returns the audit id immediately; poll GET /v1/audit/{audit_id} for progress.
    """
    try:
        audit_id = coordinator.start(request.url)
    except AuditError as e:
        raise _to_http_error(e) from e

    return AuditCreateResponse(
        audit_id=audit_id,
        status=AuditStatus.PENDING,
        message="Audit created. Poll GET /v1/audit/{audit_id} for status.",
    )


@router.get("/audit/{audit_id}", response_model=AuditStatusResponse)
async def get_audit_status(
    audit_id: str,
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> AuditStatusResponse:
    """
    Get the status, scores and most recent check results of an audit.

    Stale audits are reconciled before the snapshot is taken.
    """
    try:
        return coordinator.status(audit_id).to_response()
    except AuditError as e:
        raise _to_http_error(e) from e


@router.post("/audit/{audit_id}/continue", response_model=ContinueResponse)
async def continue_audit(
    audit_id: str,
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> ContinueResponse:
    """Run the next batch of an audit that is waiting in batch_complete."""
    try:
        batch_number = coordinator.continue_audit(audit_id)
    except AuditError as e:
        raise _to_http_error(e) from e

    return ContinueResponse(
        audit_id=audit_id, batch_number=batch_number, status=AuditStatus.CRAWLING
    )


@router.post("/audit/{audit_id}/stop", response_model=AuditStatusResponse)
async def stop_audit(
    audit_id: str,
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> AuditStatusResponse:
    """Stop an in-progress audit. Results gathered so far are kept and scored."""
    try:
        return coordinator.stop(audit_id).to_response()
    except AuditError as e:
        raise _to_http_error(e) from e


@router.get("/audit/{audit_id}/pages", response_model=list[PageOut])
async def get_audit_pages(
    audit_id: str,
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> list[PageOut]:
    """List the pages crawled so far, in crawl order."""
    try:
        pages = coordinator.list_pages(audit_id)
    except AuditError as e:
        raise _to_http_error(e) from e
    return [page_to_out(page) for page in pages]


@router.get("/audits/running", response_model=PaginatedAuditIds)
async def get_running_audits(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> PaginatedAuditIds:
    """Paginated ids of audits that have not reached a terminal state."""
    items, total = coordinator.list_active(page, per_page)
    return PaginatedAuditIds(
        items=items,
        total=total,
        page=page,
        per_page=per_page,
        has_next=page * per_page < total,
    )


@router.get("/audits/stats")
async def get_audit_stats(
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> dict[str, Any]:
    """Batch concurrency statistics and audit counts by status."""
    counts = {status.value: 0 for status in AuditStatus}
    for audit in coordinator.store.list_audits():
        counts[audit.status.value] += 1

    concurrency: dict[str, Any] = {}
    if isinstance(coordinator.executor, BatchExecutor):
        stats = coordinator.executor.get_stats()
        concurrency = {
            "active_batches": stats.active_batches,
            "max_concurrent_batches": stats.max_concurrent_batches,
            "available_slots": stats.max_concurrent_batches - stats.active_batches,
            "scheduled_tasks": stats.scheduled_tasks,
        }

    return {"concurrency": concurrency, "audits": counts}


@router.post("/audits/cleanup", response_model=CleanupResponse)
async def cleanup_audits(
    request: CleanupRequest | None = None,
    coordinator: AuditCoordinator = Depends(get_coordinator),  # noqa: B008
) -> CleanupResponse:
    """Delete crawl data of finished audits older than the retention window."""
    retention_days = request.retention_days if request else None
    try:
        summary = coordinator.cleanup(retention_days)
    except AuditError as e:
        raise _to_http_error(e) from e
    return CleanupResponse(**summary)
