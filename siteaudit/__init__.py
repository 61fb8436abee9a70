"""Site Audit Engine - batched SEO, AI-readiness and technical site auditing."""

from siteaudit.core.coordinator import AuditCoordinator
from siteaudit.core.scoring import Scores, calculate_scores
from siteaudit.schemas.common import AuditStatus, CheckStatus
from siteaudit.services.validators import validate_url

__all__ = [
    "AuditCoordinator",
    "calculate_scores",
    "validate_url",
    "Scores",
    "AuditStatus",
    "CheckStatus",
]
