"""
Notifier service entrypoint.
Runs the queue worker against the Redis-backed queue, separate from the API.
"""
from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

_backend = Path(__file__).resolve().parent.parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))

from shared.config import get_bot_settings, get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from notifications.config import get_queue_settings
from notifications.redis_queue import RedisNotificationQueue
from notifications.transport import HttpBotTransport
from notifications.worker import QueueWorker

logger = get_logger(__name__)


async def main() -> None:
    settings = get_settings()
    setup_logging("notifier", settings)

    redis = RedisManager(settings)
    try:
        await redis.connect()
    except Exception as e:
        logger.exception("startup_connect_failed", error=str(e))
        raise

    transport = HttpBotTransport(get_bot_settings())
    await transport.start()
    queue = RedisNotificationQueue(redis, get_queue_settings())
    worker = QueueWorker(queue, transport)
    start_metrics_server()

    shutdown = asyncio.Event()

    def on_signal() -> None:
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, on_signal)
        except NotImplementedError:
            pass

    logger.info("notifier_started")
    await worker.run(shutdown)

    await transport.close()
    await redis.disconnect()
    logger.info("notifier_stopped")


if __name__ == "__main__":
    asyncio.run(main())
