"""
Health endpoints for operational monitoring.

/healthz is dependency-free; /readyz probes the database when SQL storage is
configured.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from tiergate.core.container import ServiceContainer, get_container
from tiergate.core.database import check_connection

logger = logging.getLogger("tiergate")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(container: ServiceContainer = Depends(get_container)):
    """Readiness check: storage reachable and catalogs loaded."""
    if container.storage == "sql" and not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {
        "status": "ok",
        "storage": container.storage,
        "tiers": [tier.value for tier in container.catalog.tiers],
    }
