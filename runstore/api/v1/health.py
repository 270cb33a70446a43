"""
Health check endpoints.
"""

from typing import Any

from fastapi import APIRouter, Depends

from runstore.api.deps import ServiceContainer, get_container
from runstore.core.config import settings
from runstore.core.logging import get_logger
from runstore.domain.run import utc_now

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Basic health check endpoint.
    Returns application status and where runs are stored.
    """
    return {
        "status": "healthy",
        "app": settings.app_name,
        "environment": settings.app_env,
        "docs_dir": str(container.settings.storage.docs_dir),
        "timestamp": utc_now().isoformat(),
    }


@router.get("/health/ready")
async def readiness_check(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Readiness check endpoint.

    Ready once the docs directory is usable (or not created yet) and, with
    watching enabled, every family view holds its watch.
    """
    docs_dir = container.settings.storage.docs_dir
    watching = container.settings.watcher.enabled
    active_watches = container.hub.active_watches

    checks = {
        "app": True,
        "docs_dir": docs_dir.is_dir() or not docs_dir.exists(),
        "watcher": not watching or len(active_watches) >= len(container.views),
    }
    families = {
        family.value: {
            "state": view.get_snapshot().state.value,
            "run_id": view.get_snapshot().run_id,
        }
        for family, view in container.views.items()
    }

    all_healthy = all(checks.values())
    if not all_healthy:
        logger.warning("Readiness check failed", checks=checks)

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "watches": len(active_watches),
        "families": families,
        "timestamp": utc_now().isoformat(),
    }


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Liveness check endpoint."""
    return {"status": "alive"}
