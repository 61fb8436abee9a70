"""Custom exception classes for the site audit engine."""


class AuditError(Exception):
    """Base exception for audit failures."""

    pass


class ValidationError(AuditError):
    """Exception for input validation failures."""

    pass


class AuditNotFoundError(AuditError):
    """Raised when an audit id does not exist."""

    pass


class InvalidTransitionError(AuditError):
    """Raised when a status change is illegal or lost a race to another trigger."""

    pass


class PersistenceError(AuditError):
    """Exception for database failures. Fatal to the running batch."""

    pass


class FetchError(AuditError):
    """Exception for page fetch failures (recorded per page, never fatal)."""

    pass


class CheckRegistrationError(AuditError):
    """Raised when a check definition is registered twice or is malformed."""

    pass
