"""Shared fixtures and fakes for the relay tests."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.adapters.base import BaseTransport
from chatrelay.config import RelayConfig, TelegramConfig
from chatrelay.core.completion import CompletionClient
from chatrelay.core.types import InboundMessage

AUTHORIZED_ID = 42
CHAT_ID = 7


class FakeTransport(BaseTransport):
    """In-memory transport that records everything sent."""

    name = "fake"

    def __init__(self) -> None:
        self.queue: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.sent: list[tuple[int, str, str | None]] = []
        self.stopped = False
        self.send_result = True

    async def start(self) -> None:
        return None

    async def receive(self) -> InboundMessage:
        return await self.queue.get()

    async def send(self, chat_id: int, text: str, parse_mode: str | None = None) -> bool:
        self.sent.append((chat_id, text, parse_mode))
        return self.send_result

    async def stop_receiving(self) -> None:
        self.stopped = True


def inbound(text: str | None = "Hello", sender_id: int = AUTHORIZED_ID) -> InboundMessage:
    return InboundMessage(
        sender_id=sender_id,
        chat_id=CHAT_ID,
        text=text,
        sender_name="alice",
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def config():
    return RelayConfig(telegram=TelegramConfig(authorized_user_id=str(AUTHORIZED_ID)))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def completer():
    client = MagicMock(spec=CompletionClient)
    client.model = "test-model"
    client.complete = AsyncMock(return_value=" Hi! How are you?")
    return client


@pytest.fixture
def db_path(tmp_path):
    """Path for a temporary transcript database."""
    return str(tmp_path / "data" / "db.sqlite")
