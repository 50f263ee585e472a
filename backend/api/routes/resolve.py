"""
Resolution cache maintenance (development only).

POST /api/resolve/clear-cache: drop every cached aggregation result.
GET /api/resolve/clear-cache: readiness probe for the above.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from shared.utils.logging import get_logger

from api.dependencies import ServiceContainer, get_container
from api.errors import Forbidden

logger = get_logger(__name__)
router = APIRouter(prefix="/api/resolve", tags=["resolve"])


def _require_privileged(container: ServiceContainer) -> None:
    if not container.settings.allows_privileged_ops:
        raise Forbidden("Cache clearing is only available in development")


@router.post("/clear-cache")
async def clear_cache(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    _require_privileged(container)
    cleared = container.resolution.cache.clear()
    logger.info("resolution_cache_cleared_via_api", entries=cleared)
    return {
        "success": True,
        "message": f"Resolution cache cleared ({cleared} entries)",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/clear-cache")
async def clear_cache_ready(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    _require_privileged(container)
    return {
        "success": True,
        "message": "Cache clearing endpoint ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
