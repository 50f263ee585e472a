"""
Messaging bot endpoints.

GET /api/xmtp/queue-status: notification queue counters and bot configuration flags.
GET /api/xmtp/bot-status: whether the bot is configured, and where it points.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from api.dependencies import ServiceContainer, get_container

router = APIRouter(prefix="/api/xmtp", tags=["xmtp"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/queue-status")
async def get_queue_status(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    stats = await container.queue.stats()
    return {
        "status": "ok",
        "queue": stats.model_dump(),
        "timestamp": _now(),
        "botConfiguration": container.bot_settings.configuration_flags(),
    }


@router.get("/bot-status")
async def get_bot_status(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    bot = container.bot_settings
    if container.redis is None:
        redis_status = "not_configured"
    elif container.redis.connected:
        redis_status = "connected"
    else:
        redis_status = "connection_failed"
    return {
        "online": bot.configured,
        "address": bot.prediction_bot_xmtp_address or "Not configured",
        "environment": bot.xmtp_env or "Not configured",
        "openaiConfigured": bot.openai_api_key is not None,
        "redisStatus": redis_status,
        "processingMode": "queue_based" if redis_status == "connected" else "in_process",
        "lastUpdated": _now(),
    }
