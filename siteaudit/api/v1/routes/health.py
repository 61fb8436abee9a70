"""Health check endpoint with database connectivity verification."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from siteaudit.api.v1.deps import get_settings
from siteaudit.checks.registry import registry
from siteaudit.config.settings import Config
from siteaudit.services.database import check_database_connection

router = APIRouter()


@router.get("/health")
async def health_check(
    config: Config = Depends(get_settings),  # noqa: B008
) -> dict[str, Any]:
    """
    Report database connectivity and the registered checks.

    Responds 503 when the database cannot be opened.
    """
    db_status = check_database_connection(config.db_path)
    database = {
        "status": "healthy" if db_status["connected"] else "unhealthy",
        "connected": db_status["connected"],
        "path": db_status["path"],
        "integrity": db_status["integrity"],
        "journal_mode": db_status["journal_mode"],
        "error": db_status["error"],
    }
    checks = {
        "registered": len(registry),
        "page": len(registry.page_checks()),
        "site_wide": len(registry.site_checks()),
    }

    if not db_status["connected"]:
        raise HTTPException(
            status_code=503,
            detail={
                "status": "unhealthy",
                "ready": False,
                "alive": True,
                "database": database,
                "reason": f"Database not connected: {db_status['error']}",
            },
        )

    return {
        "status": "healthy",
        "ready": True,
        "alive": True,
        "database": database,
        "checks": checks,
    }
