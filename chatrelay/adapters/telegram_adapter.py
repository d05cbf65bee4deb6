"""Telegram transport using python-telegram-bot v21+.

Features:
- Async long polling (no webhook needed)
- Inbound messages queued in arrival order for a single consumer
- Smart message splitting (4096 char limit)
- Polling can be stopped independently of sending, so replies to a
  message already in progress still go out during shutdown
"""

from __future__ import annotations

import asyncio

import structlog
from telegram import Update
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from chatrelay.adapters.base import BaseTransport
from chatrelay.adapters.utils import split_message
from chatrelay.config import TelegramConfig
from chatrelay.core.errors import StartupError
from chatrelay.core.types import InboundMessage

logger = structlog.get_logger()


class TelegramTransport(BaseTransport):
    """Telegram bot transport.

    Every new message update (text or not) is turned into an InboundMessage
    and put on an internal queue; ``receive()`` hands them out one by one.
    """

    name = "telegram"

    def __init__(self, config: TelegramConfig, application: Application | None = None) -> None:
        self.config = config
        self._app = application
        self._queue: asyncio.Queue[InboundMessage] = asyncio.Queue()

    def _build_application(self) -> Application:
        token = self.config.bot_token
        if not token:
            raise StartupError(
                "Telegram bot token not found. Set the API_KEY_TELEGRAM environment variable."
            )
        try:
            return Application.builder().token(token).build()
        except Exception as e:
            raise StartupError(f"failed to build Telegram bot client: {e}") from e

    async def start(self) -> None:
        """Initialize the bot and start long polling.

        Raises:
            StartupError: missing token, bad token or Telegram unreachable.
        """
        if self._app is None:
            self._app = self._build_application()

        self._app.add_handler(MessageHandler(filters.UpdateType.MESSAGE, self._on_update))

        try:
            await self._app.initialize()
            await self._app.start()
            await self._app.updater.start_polling(
                timeout=self.config.polling_timeout,
                allowed_updates=[Update.MESSAGE],
            )
            bot_info = await self._app.bot.get_me()
        except TelegramError as e:
            raise StartupError(f"failed to start Telegram bot: {e}") from e

        logger.info(
            "telegram_started",
            bot_username=bot_info.username,
            bot_id=bot_info.id,
        )

    async def _on_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Queue a new message for the relay loop."""
        message = update.message
        if message is None or message.from_user is None:
            return

        await self._queue.put(InboundMessage(
            sender_id=message.from_user.id,
            sender_name=message.from_user.username or "",
            chat_id=message.chat_id,
            text=message.text,
        ))

    async def receive(self) -> InboundMessage:
        return await self._queue.get()

    @property
    def pending(self) -> int:
        """Number of queued, not yet received messages."""
        return self._queue.qsize()

    async def send(self, chat_id: int, text: str, parse_mode: str | None = None) -> bool:
        """Send a reply, split into chunks if it exceeds the message limit."""
        if self._app is None:
            logger.error("telegram_send_not_started", chat_id=chat_id)
            return False

        try:
            for chunk in split_message(text, self.config.max_message_length):
                await self._app.bot.send_message(
                    chat_id=chat_id,
                    text=chunk,
                    parse_mode=parse_mode,
                )
        except TelegramError as e:
            logger.warning("telegram_send_failed", chat_id=chat_id, error=str(e))
            return False

        logger.info("telegram_message_sent", chat_id=chat_id, bytes=len(text.encode()))
        return True

    async def stop_receiving(self) -> None:
        """Stop polling and drop updates that were not handed out yet."""
        if self._app is not None and self._app.updater and self._app.updater.running:
            try:
                await self._app.updater.stop()
            except TelegramError as e:
                logger.warning("telegram_stop_polling_error", error=str(e))

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        logger.info("telegram_receiving_stopped", dropped=dropped)

    async def close(self) -> None:
        """Stop the bot application and release its HTTP connections."""
        if self._app is None:
            return
        try:
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            if self._app.running:
                await self._app.stop()
            await self._app.shutdown()
        except Exception as e:
            logger.warning("telegram_stop_error", error=str(e))
        logger.info("telegram_stopped")
