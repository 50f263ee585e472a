"""
Dependency injection for the API service.

Everything a route needs lives on one ServiceContainer, built once per app
and stored on app.state; handlers reach it through get_container().
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Request

from shared.config import (
    BotSettings,
    Environment,
    QueueBackend,
    Settings,
    get_bot_settings,
    get_settings,
)
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

from notifications.config import get_queue_settings
from notifications.queue import BaseNotificationQueue, NotificationQueue
from notifications.redis_queue import RedisNotificationQueue
from notifications.transport import BotTransport, HttpBotTransport, LoggingBotTransport
from verifier.cache import ResolutionCache
from verifier.challenge import ChallengeBook
from verifier.config import VerifierSettings, get_verifier_settings
from verifier.engine import VerificationAggregator
from verifier.resolution import ResolutionService
from verifier.sources import VerifierRegistry, build_registry

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    bot_settings: BotSettings
    verifier_settings: VerifierSettings
    queue: BaseNotificationQueue
    resolution: ResolutionService
    transport: Union[BotTransport, HttpBotTransport]
    redis: Optional[RedisManager] = None


def build_container(
    settings: Optional[Settings] = None,
    bot_settings: Optional[BotSettings] = None,
    verifier_settings: Optional[VerifierSettings] = None,
    registry: Optional[VerifierRegistry] = None,
    queue: Optional[BaseNotificationQueue] = None,
    transport: Optional[BotTransport] = None,
) -> ServiceContainer:
    """Wire the services. Connections are opened later, in the app lifespan."""
    settings = settings or get_settings()
    bot_settings = bot_settings or get_bot_settings()
    verifier_settings = verifier_settings or get_verifier_settings()

    redis: Optional[RedisManager] = None
    if queue is None:
        if settings.queue_backend == QueueBackend.REDIS:
            redis = RedisManager(settings)
            queue = RedisNotificationQueue(redis, get_queue_settings())
        else:
            queue = NotificationQueue(get_queue_settings())

    if transport is None:
        if settings.environment == Environment.DEV and not bot_settings.configured:
            logger.warning("bot_not_configured_using_logging_transport")
            transport = LoggingBotTransport()
        else:
            transport = HttpBotTransport(bot_settings)

    aggregator = VerificationAggregator(
        registry if registry is not None else build_registry(verifier_settings),
        verifier_settings,
    )
    windows = ChallengeBook(
        queue,
        duration_s=verifier_settings.challenge_window_s,
        epsilon=verifier_settings.dispute_epsilon,
        retention_s=verifier_settings.finalized_retention_s,
        max_tombstones=verifier_settings.finalized_tombstones_max,
    )
    resolution = ResolutionService(
        aggregator,
        ResolutionCache(default_ttl_s=verifier_settings.cache_ttl_s),
        windows,
    )
    return ServiceContainer(
        settings=settings,
        bot_settings=bot_settings,
        verifier_settings=verifier_settings,
        queue=queue,
        resolution=resolution,
        transport=transport,
        redis=redis,
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency: the app's ServiceContainer."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("ServiceContainer not initialized")
    return container
