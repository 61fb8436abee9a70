"""FastAPI application entrypoint with lifecycle management."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from siteaudit.api.v1 import router as v1_router
from siteaudit.core.coordinator import AuditCoordinator
from siteaudit.services.cleanup import periodic_cleanup_task
from siteaudit.services.concurrency import BatchExecutor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Reconciles audits left unfinished by a previous process and runs the
    retention cleanup in the background.
    """
    logger.info("Starting up Site Audit API...")

    coordinator = AuditCoordinator.get_instance()
    recovered = coordinator.recover_stale()
    if any(recovered.values()):
        logger.info(f"Recovered stale audits from previous run: {recovered}")

    cleanup_task = asyncio.create_task(periodic_cleanup_task())

    logger.info("Site Audit API started successfully")
    logger.info(
        f"Batches: {coordinator.config.batch_max_pages} pages / "
        f"{coordinator.config.batch_time_budget_seconds:.0f}s, "
        f"max {coordinator.config.max_concurrent_batches} concurrent"
    )

    try:
        yield
    finally:
        logger.info("Shutting down Site Audit API...")

        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass

        # Unfinished batches are picked up by staleness recovery on next start
        if isinstance(coordinator.executor, BatchExecutor) and coordinator.executor.pending:
            logger.info(f"{coordinator.executor.pending} batch(es) still running at shutdown")

        logger.info("Site Audit API shutdown complete")


app = FastAPI(
    title="Site Audit API",
    description="API for batched SEO, AI-readiness and technical audits of whole websites",
    version="0.1.0",
    lifespan=lifespan,
)

# Include API v1 routes
app.include_router(v1_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "name": "Site Audit API",
        "version": "0.1.0",
        "docs": "/docs",
    }
