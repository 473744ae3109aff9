"""Notification delivery adapters.

A notifier sends one text message to one recipient and reports one of three
outcomes. ``BLOCKED`` is a strong signal that the recipient cannot be
messaged (the caller opts the user out); ``TRANSIENT_ERROR`` covers
timeouts, throttling and server errors and carries no such meaning.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Protocol

import aiohttp

from position_sentinel.alerts.formatter import numbered_chunks

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://discord.com/api/v10"

# Discord JSON error codes meaning the user cannot be reached
DISCORD_CANNOT_DM = 50007
DISCORD_UNKNOWN_USER = 10013
BLOCKING_ERROR_CODES = frozenset({DISCORD_CANNOT_DM, DISCORD_UNKNOWN_USER})


class DeliveryStatus(str, Enum):
    DELIVERED = "DELIVERED"
    BLOCKED = "BLOCKED"
    TRANSIENT_ERROR = "TRANSIENT_ERROR"


class Notifier(Protocol):
    """Delivery boundary: ``send(recipient_id, message) -> DeliveryStatus``."""

    async def send(self, recipient_id: str, message: str) -> DeliveryStatus: ...

    async def close(self) -> None: ...


def classify_discord_response(status: int, body: Any) -> DeliveryStatus:
    """Map a Discord REST response to a delivery outcome."""
    if 200 <= status < 300:
        return DeliveryStatus.DELIVERED
    code = body.get("code") if isinstance(body, dict) else None
    if code in BLOCKING_ERROR_CODES:
        return DeliveryStatus.BLOCKED
    if status in (401, 403):
        return DeliveryStatus.BLOCKED
    return DeliveryStatus.TRANSIENT_ERROR


class DiscordNotifier:
    """Sends direct messages through the Discord REST API with a bot token.

    Long messages are split into line-aligned chunks of at most 2000
    characters, sent in order with a short pause between them.
    """

    def __init__(
        self,
        bot_token: str,
        *,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = 10.0,
        inter_message_delay_seconds: float = 0.35,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if not bot_token:
            raise ValueError("bot_token is required")
        self._token = bot_token
        self._base_url = api_base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._delay = inter_message_delay_seconds
        self._session = session
        self._owns_session = session is None
        self._channels: dict[str, str] = {}

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this notifier created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _post(self, path: str, payload: dict[str, Any]) -> tuple[int, Any]:
        session = await self._ensure_session()
        async with session.post(
            f"{self._base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bot {self._token}"},
        ) as response:
            try:
                body = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                body = None
            return response.status, body

    async def _dm_channel(self, recipient_id: str) -> tuple[DeliveryStatus, str | None]:
        channel_id = self._channels.get(recipient_id)
        if channel_id is not None:
            return DeliveryStatus.DELIVERED, channel_id

        status, body = await self._post("/users/@me/channels", {"recipient_id": recipient_id})
        outcome = classify_discord_response(status, body)
        if outcome is not DeliveryStatus.DELIVERED:
            logger.warning("Cannot open DM channel for %s: HTTP %d %s", recipient_id, status, body)
            return outcome, None
        if not isinstance(body, dict) or not body.get("id"):
            logger.warning("DM channel response for %s had no id", recipient_id)
            return DeliveryStatus.TRANSIENT_ERROR, None

        channel_id = str(body["id"])
        self._channels[recipient_id] = channel_id
        return DeliveryStatus.DELIVERED, channel_id

    async def send(self, recipient_id: str, message: str) -> DeliveryStatus:
        """Send ``message`` as one or more direct messages.

        Returns:
            DELIVERED when every chunk was accepted, otherwise the first failure.
        """
        chunks = numbered_chunks(message)
        if not chunks:
            return DeliveryStatus.DELIVERED

        try:
            outcome, channel_id = await self._dm_channel(recipient_id)
            if channel_id is None:
                return outcome

            for i, chunk in enumerate(chunks):
                status, body = await self._post(f"/channels/{channel_id}/messages", {"content": chunk})
                outcome = classify_discord_response(status, body)
                if outcome is not DeliveryStatus.DELIVERED:
                    logger.warning(
                        "DM to %s failed on chunk %d/%d: HTTP %d %s",
                        recipient_id,
                        i + 1,
                        len(chunks),
                        status,
                        body,
                    )
                    return outcome
                if self._delay > 0 and i < len(chunks) - 1:
                    await asyncio.sleep(self._delay)
        except (TimeoutError, aiohttp.ClientError) as e:
            logger.warning("DM to %s failed: %s: %s", recipient_id, type(e).__name__, e)
            return DeliveryStatus.TRANSIENT_ERROR

        return DeliveryStatus.DELIVERED


class LoggingNotifier:
    """Dry-run notifier: logs messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, recipient_id: str, message: str) -> DeliveryStatus:
        self.sent.append((recipient_id, message))
        logger.info("[dry-run] DM to %s:\n%s", recipient_id, message)
        return DeliveryStatus.DELIVERED

    async def close(self) -> None:
        return None
