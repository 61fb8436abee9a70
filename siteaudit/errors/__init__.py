"""Custom exceptions."""

from siteaudit.errors.exceptions import (
    AuditError,
    AuditNotFoundError,
    CheckRegistrationError,
    FetchError,
    InvalidTransitionError,
    PersistenceError,
    ValidationError,
)

__all__ = [
    "AuditError",
    "AuditNotFoundError",
    "CheckRegistrationError",
    "FetchError",
    "InvalidTransitionError",
    "PersistenceError",
    "ValidationError",
]
