"""
Bot message transports. The worker only needs send(address, text); a transport
raises QueueDeliveryError (or anything else) when the bot did not accept the message.
"""
from __future__ import annotations

from typing import Optional, Protocol

import httpx
from shared.config import BotSettings, get_bot_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class QueueDeliveryError(Exception):
    """The transport did not acknowledge a message. Retried by the worker, never surfaced to callers."""


class BotTransport(Protocol):
    async def send(self, address: str, text: str) -> None:
        ...


class HttpBotTransport:
    """Posts messages to the bot service's /api/send-message endpoint."""

    def __init__(self, settings: Optional[BotSettings] = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_bot_settings()
        self._base_url = self._settings.xmtp_bot_service_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._settings.bot_request_timeout_s, connect=5.0),
            )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, address: str, text: str) -> None:
        if self._client is None:
            raise RuntimeError("HttpBotTransport not started. Call start() first.")
        try:
            resp = await self._client.post("/api/send-message", json={"userAddress": address, "message": text})
        except httpx.TransportError as exc:
            raise QueueDeliveryError(f"bot service unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise QueueDeliveryError(f"bot service error: {resp.status_code}")
        logger.debug("bot_message_sent", address=address, status=resp.status_code)


class LoggingBotTransport:
    """Local development: logs the message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, address: str, text: str) -> None:
        self.sent.append((address, text))
        logger.info("bot_message_logged", address=address, text=text)
