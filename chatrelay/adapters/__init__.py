"""Chat transports: the Telegram bot and the interface it implements."""

from chatrelay.adapters.base import BaseTransport
from chatrelay.adapters.telegram_adapter import TelegramTransport

__all__ = ["BaseTransport", "TelegramTransport"]
