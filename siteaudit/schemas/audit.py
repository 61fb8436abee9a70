"""Audit-related Pydantic schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from siteaudit.schemas.common import (
    AuditStatus,
    CheckCategory,
    CheckPriority,
    CheckStatus,
)

# === Request Models ===


class AuditRequest(BaseModel):
    """Request to start a new site audit."""

    url: str


class CleanupRequest(BaseModel):
    """Request to purge old audit data."""

    retention_days: int | None = None


# === Response Models ===


class AuditCreateResponse(BaseModel):
    audit_id: str
    status: AuditStatus
    message: str


class ContinueResponse(BaseModel):
    audit_id: str
    batch_number: int
    status: AuditStatus


class ScoresOut(BaseModel):
    """Category and overall scores (0-100)."""

    seo: int
    ai_readiness: int
    technical: int
    overall: int
    passed_count: int = 0
    warning_count: int = 0
    failed_count: int = 0


class CheckResultOut(BaseModel):
    id: int
    page_id: str | None = None
    check_name: str
    category: CheckCategory
    priority: CheckPriority
    status: CheckStatus
    details: dict[str, Any] = {}
    created_at: datetime


class PageOut(BaseModel):
    id: str
    url: str
    title: str | None = None
    meta_description: str | None = None
    status_code: int | None = None
    last_modified: str | None = None
    crawled_at: datetime
    is_resource: bool = False
    resource_type: str | None = None
    redirect_hops: int = 0
    error: str | None = None


class AuditStatusResponse(BaseModel):
    """Snapshot of an audit, its recent results and remaining work."""

    audit_id: str
    url: str
    status: AuditStatus
    current_batch: int
    urls_discovered: int
    pages_crawled: int
    remaining_in_queue: int
    scores: ScoresOut | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime
    recent_checks: list[CheckResultOut] = []
    reconciled: str | None = None  # Action taken by staleness reconciliation


class PaginatedAuditIds(BaseModel):
    items: list[str]
    total: int
    page: int
    per_page: int
    has_next: bool


class CleanupResponse(BaseModel):
    audits_purged: int
    pages_deleted: int
    checks_deleted: int
    queue_entries_deleted: int
