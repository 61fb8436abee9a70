"""Reduce check results into category and overall scores."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from siteaudit.schemas.common import CheckCategory, CheckPriority, CheckStatus

PRIORITY_WEIGHTS: dict[CheckPriority, int] = {
    CheckPriority.CRITICAL: 3,
    CheckPriority.RECOMMENDED: 2,
    CheckPriority.OPTIONAL: 1,
}

STATUS_CREDIT: dict[CheckStatus, float] = {
    CheckStatus.PASSED: 1.0,
    CheckStatus.WARNING: 0.5,
    CheckStatus.FAILED: 0.0,
}


class ScoredResult(Protocol):
    category: CheckCategory
    priority: CheckPriority
    status: CheckStatus


@dataclass(frozen=True)
class Scores:
    seo: int
    ai_readiness: int
    technical: int
    overall: int
    passed_count: int
    warning_count: int
    failed_count: int

    def as_audit_fields(self) -> dict[str, Any]:
        """Column values for persisting onto the audit row."""
        fields = asdict(self)
        return {
            "seo_score": fields.pop("seo"),
            "ai_readiness_score": fields.pop("ai_readiness"),
            "technical_score": fields.pop("technical"),
            "overall_score": fields.pop("overall"),
            **fields,
        }


def round_half_up(value: float) -> int:
    # Built-in round() is banker's rounding; 66.5 must become 67
    return int(math.floor(value + 0.5))


def calculate_scores(results: Iterable[ScoredResult]) -> Scores:
    """
    Weighted score per category, overall as the mean of the three categories.

    A category without results scores 100. Sums are order independent, so the
    same results always produce the same scores.
    """
    earned = {category: 0.0 for category in CheckCategory}
    possible = {category: 0 for category in CheckCategory}
    counts = {status: 0 for status in CheckStatus}

    for result in results:
        weight = PRIORITY_WEIGHTS[CheckPriority(result.priority)]
        status = CheckStatus(result.status)
        category = CheckCategory(result.category)
        earned[category] += weight * STATUS_CREDIT[status]
        possible[category] += weight
        counts[status] += 1

    category_scores = {
        category: round_half_up(100 * earned[category] / possible[category])
        if possible[category]
        else 100
        for category in CheckCategory
    }
    overall = round_half_up(sum(category_scores.values()) / len(category_scores))

    return Scores(
        seo=category_scores[CheckCategory.SEO],
        ai_readiness=category_scores[CheckCategory.AI_READINESS],
        technical=category_scores[CheckCategory.TECHNICAL],
        overall=overall,
        passed_count=counts[CheckStatus.PASSED],
        warning_count=counts[CheckStatus.WARNING],
        failed_count=counts[CheckStatus.FAILED],
    )
