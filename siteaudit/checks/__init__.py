"""Audit checks. Importing this package registers every built-in check."""

from siteaudit.checks import ai, seo, technical  # noqa: F401
from siteaudit.checks.registry import (
    CheckContext,
    CheckDefinition,
    CheckOutcome,
    CheckRegistry,
    registry,
)

__all__ = ["CheckContext", "CheckDefinition", "CheckOutcome", "CheckRegistry", "registry"]
