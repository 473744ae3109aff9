"""Tests for notification delivery adapters."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
import pytest

from position_sentinel.alerts.notifier import (
    DeliveryStatus,
    DiscordNotifier,
    LoggingNotifier,
    classify_discord_response,
)


class FakeResponse:
    def __init__(self, status: int, body: Any) -> None:
        self.status = status
        self._body = body

    async def json(self, content_type: str | None = None) -> Any:
        return self._body

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None


class FakeSession:
    """Records posts and replays queued responses (or raises queued errors)."""

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.posts: list[tuple[str, dict[str, Any], dict[str, str]]] = []

    def post(self, url: str, *, json: dict[str, Any], headers: dict[str, str]) -> FakeResponse:
        self.posts.append((url, json, headers))
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _notifier(session: FakeSession) -> DiscordNotifier:
    return DiscordNotifier(
        "token",
        api_base_url="https://discord.test/api",
        inter_message_delay_seconds=0,
        session=session,  # type: ignore[arg-type]
    )


class TestClassifyDiscordResponse:
    @pytest.mark.parametrize(
        ("status", "body", "expected"),
        [
            (200, {"id": "1"}, DeliveryStatus.DELIVERED),
            (204, None, DeliveryStatus.DELIVERED),
            (400, {"code": 50007}, DeliveryStatus.BLOCKED),
            (404, {"code": 10013}, DeliveryStatus.BLOCKED),
            (403, {"code": 50001}, DeliveryStatus.BLOCKED),
            (401, None, DeliveryStatus.BLOCKED),
            (429, {"retry_after": 1.5}, DeliveryStatus.TRANSIENT_ERROR),
            (500, None, DeliveryStatus.TRANSIENT_ERROR),
            (502, "bad gateway", DeliveryStatus.TRANSIENT_ERROR),
        ],
    )
    def test_mapping(self, status: int, body: Any, expected: DeliveryStatus) -> None:
        assert classify_discord_response(status, body) == expected


class TestDiscordNotifier:
    def test_requires_token(self) -> None:
        with pytest.raises(ValueError):
            DiscordNotifier("")

    @pytest.mark.asyncio
    async def test_opens_channel_then_sends(self) -> None:
        session = FakeSession([FakeResponse(200, {"id": "c1"}), FakeResponse(200, {"id": "m1"})])
        status = await _notifier(session).send("42", "hello")

        assert status == DeliveryStatus.DELIVERED
        assert session.posts[0][0] == "https://discord.test/api/users/@me/channels"
        assert session.posts[0][1] == {"recipient_id": "42"}
        assert session.posts[1][0] == "https://discord.test/api/channels/c1/messages"
        assert session.posts[1][1] == {"content": "hello"}
        assert all(headers["Authorization"] == "Bot token" for _, _, headers in session.posts)

    @pytest.mark.asyncio
    async def test_long_message_is_sent_in_order(self) -> None:
        text = "\n".join(["z" * 100] * 50)
        session = FakeSession([FakeResponse(200, {"id": "c1"})] + [FakeResponse(200, {})] * 3)
        status = await _notifier(session).send("42", text)

        assert status == DeliveryStatus.DELIVERED
        contents = [payload["content"] for _, payload, _ in session.posts[1:]]
        assert [c[:6] for c in contents] == ["(1/3) ", "(2/3) ", "(3/3) "]

    @pytest.mark.asyncio
    async def test_channel_is_cached(self) -> None:
        session = FakeSession(
            [FakeResponse(200, {"id": "c1"}), FakeResponse(200, {}), FakeResponse(200, {})]
        )
        notifier = _notifier(session)
        await notifier.send("42", "one")
        await notifier.send("42", "two")

        assert len(session.posts) == 3

    @pytest.mark.asyncio
    async def test_cannot_dm_is_blocked(self) -> None:
        session = FakeSession([FakeResponse(403, {"code": 50007, "message": "Cannot send messages"})])
        assert await _notifier(session).send("42", "hello") == DeliveryStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_chunk_failure_stops_delivery(self) -> None:
        text = "\n".join(["z" * 100] * 50)
        session = FakeSession([FakeResponse(200, {"id": "c1"}), FakeResponse(500, None)])
        assert await _notifier(session).send("42", text) == DeliveryStatus.TRANSIENT_ERROR
        assert len(session.posts) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [asyncio.TimeoutError(), aiohttp.ClientConnectionError("reset")])
    async def test_network_errors_are_transient(self, error: BaseException) -> None:
        session = FakeSession([error])
        assert await _notifier(session).send("42", "hello") == DeliveryStatus.TRANSIENT_ERROR

    @pytest.mark.asyncio
    async def test_empty_message_sends_nothing(self) -> None:
        session = FakeSession([])
        assert await _notifier(session).send("42", "") == DeliveryStatus.DELIVERED
        assert session.posts == []


class TestLoggingNotifier:
    @pytest.mark.asyncio
    async def test_records_messages(self) -> None:
        notifier = LoggingNotifier()
        assert await notifier.send("42", "hello") == DeliveryStatus.DELIVERED
        assert notifier.sent == [("42", "hello")]
        await notifier.close()
