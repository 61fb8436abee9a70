"""API dependencies for dependency injection."""

from siteaudit.config.settings import Config, get_config
from siteaudit.core.coordinator import AuditCoordinator
from siteaudit.services.store import AuditStore


def get_settings() -> Config:
    """Get application settings dependency."""
    return get_config()


def get_audit_store() -> AuditStore:
    """Get audit store dependency."""
    return AuditStore.get_instance()


def get_coordinator() -> AuditCoordinator:
    """Get audit coordinator dependency."""
    return AuditCoordinator.get_instance()
