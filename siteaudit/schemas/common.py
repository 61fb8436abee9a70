"""Common schemas and enums shared across the application."""

from enum import Enum


class AuditStatus(str, Enum):
    """Lifecycle state of an audit."""

    PENDING = "pending"
    CRAWLING = "crawling"
    CHECKING = "checking"
    BATCH_COMPLETE = "batch_complete"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class CheckCategory(str, Enum):
    """Score category a check contributes to."""

    SEO = "seo"
    AI_READINESS = "ai_readiness"
    TECHNICAL = "technical"


class CheckPriority(str, Enum):
    """Priority tier, used as the scoring weight."""

    CRITICAL = "critical"
    RECOMMENDED = "recommended"
    OPTIONAL = "optional"


class CheckStatus(str, Enum):
    """Outcome of a single check execution."""

    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


IN_PROGRESS_STATUSES = frozenset(
    {
        AuditStatus.PENDING,
        AuditStatus.CRAWLING,
        AuditStatus.CHECKING,
        AuditStatus.BATCH_COMPLETE,
    }
)

TERMINAL_STATUSES = frozenset(
    {AuditStatus.COMPLETED, AuditStatus.FAILED, AuditStatus.STOPPED}
)

# Legal edges of the audit state machine
ALLOWED_TRANSITIONS: dict[AuditStatus, frozenset[AuditStatus]] = {
    AuditStatus.PENDING: frozenset(
        {AuditStatus.CRAWLING, AuditStatus.STOPPED, AuditStatus.FAILED}
    ),
    AuditStatus.CRAWLING: frozenset(
        {
            AuditStatus.CHECKING,
            AuditStatus.COMPLETED,
            AuditStatus.STOPPED,
            AuditStatus.FAILED,
        }
    ),
    AuditStatus.CHECKING: frozenset(
        {
            AuditStatus.BATCH_COMPLETE,
            AuditStatus.COMPLETED,
            AuditStatus.STOPPED,
            AuditStatus.FAILED,
        }
    ),
    AuditStatus.BATCH_COMPLETE: frozenset(
        {
            AuditStatus.CRAWLING,
            AuditStatus.COMPLETED,
            AuditStatus.STOPPED,
            AuditStatus.FAILED,
        }
    ),
    AuditStatus.COMPLETED: frozenset(),
    AuditStatus.FAILED: frozenset(),
    AuditStatus.STOPPED: frozenset(),
}


def is_legal_transition(current: AuditStatus, target: AuditStatus) -> bool:
    """Return True if the state machine allows moving from current to target."""
    return target in ALLOWED_TRANSITIONS[current]
