"""Base transport interface for chat platforms.

A transport delivers inbound messages one at a time, in arrival order, and
sends text replies. The relay loop is its only consumer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from chatrelay.core.types import InboundMessage


class BaseTransport(ABC):
    """Abstract base class for chat transports.

    Subclasses must implement:
    - start(): connect and begin receiving
    - receive(): wait for the next inbound message
    - send(): deliver a text reply, reporting success
    - stop_receiving(): stop accepting new inbound messages
    - close(): release the connection
    """

    name: str = "base"

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin receiving messages."""
        ...

    @abstractmethod
    async def receive(self) -> InboundMessage:
        """Wait for the next inbound message (FIFO)."""
        ...

    @abstractmethod
    async def send(self, chat_id: int, text: str, parse_mode: str | None = None) -> bool:
        """Send a text message. Returns False on failure; never retries."""
        ...

    @abstractmethod
    async def stop_receiving(self) -> None:
        """Stop delivering new inbound messages."""
        ...

    async def close(self) -> None:
        """Release resources. Default: nothing to do."""
        return None
