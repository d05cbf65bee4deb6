"""Relay loop: the single consumer that turns inbound messages into replies.

For each message from the authorized user the loop:

1. prunes the transcript down to the retention ceiling (best effort),
2. reads the full transcript,
3. stores the human message,
4. builds the prompt window,
5. asks the completion model for a reply,
6. stores the reply,
7. sends the reply back.

A failure in steps 2-6 ends the cycle and the user gets a short error
message; later steps do not run. Messages are handled strictly one at a
time, which is what keeps prune/read/write consistent without locking.

Cancellation is cooperative: the stop event is checked only between
messages, so a cycle that has started always runs to completion.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from chatrelay.adapters.base import BaseTransport
from chatrelay.config import RelayConfig
from chatrelay.core.completion import CompletionClient
from chatrelay.core.errors import CompletionError, StoreError
from chatrelay.core.memory.transcript import TranscriptStore
from chatrelay.core.types import InboundMessage, Message
from chatrelay.core.window import build_prompt

logger = structlog.get_logger()

ERROR_REPLY_TEMPLATE = "`Failed to process your request. ERROR: {error}`"
MARKDOWN = "Markdown"
RECEIVE_RETRY_DELAY = 1.0


class RelayLoop:
    """Processes inbound messages one by one until the stop event is set."""

    def __init__(
        self,
        config: RelayConfig,
        store: TranscriptStore,
        transport: BaseTransport,
        completer: CompletionClient,
        stop_event: asyncio.Event,
    ) -> None:
        self.config = config
        self.store = store
        self.transport = transport
        self.completer = completer
        self._stop = stop_event
        self.done = asyncio.Event()
        self.processed = 0
        self.receive_retry_delay = RECEIVE_RETRY_DELAY

    @property
    def terminated(self) -> bool:
        return self.done.is_set()

    async def run(self) -> None:
        """Consume messages until cancelled, then mark ``done`` exactly once."""
        logger.info("relay_started")
        try:
            while not self._stop.is_set():
                try:
                    message = await self._next_message()
                except Exception as e:
                    logger.exception("transport_receive_failed", error=str(e))
                    await self._pause_after_receive_error()
                    continue
                if message is None:
                    break
                try:
                    await self.handle(message)
                except Exception as e:
                    logger.exception("relay_cycle_crashed", error=str(e))
        finally:
            self.done.set()
            logger.info("relay_terminated", processed=self.processed)

    async def _next_message(self) -> InboundMessage | None:
        """Wait for either the next message or the stop event.

        A message that is already dequeued is always returned, even if the
        stop event fired at the same moment.
        """
        receive = asyncio.ensure_future(self.transport.receive())
        stopped = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({receive, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not receive.done():
                receive.cancel()

        if receive.done() and not receive.cancelled():
            return receive.result()
        return None

    async def _pause_after_receive_error(self) -> None:
        """Back off before the next receive, waking early on stop."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.receive_retry_delay)
        except asyncio.TimeoutError:
            pass

    def is_authorized(self, message: InboundMessage) -> bool:
        return str(message.sender_id) == self.config.telegram.authorized_user_id

    async def handle(self, message: InboundMessage) -> None:
        """Run one full processing cycle for an inbound message."""
        if not message.text:
            return

        if not self.is_authorized(message):
            logger.warning("message_rejected", user_id=message.sender_id)
            return

        try:
            await self.store.prune(self.config.max_messages_in_history)
        except StoreError as e:
            logger.warning("prune_failed", error=str(e))

        logger.info("message_received", bytes=len(message.text.encode()))

        try:
            history = await self.store.read_all()
        except StoreError as e:
            logger.error("history_read_failed", error=str(e))
            await self._notify_failure(message, e)
            return

        try:
            await self.store.append(Message(
                user_id=message.sender_id,
                username=message.sender_name,
                text=message.text,
                created_at=datetime.now(timezone.utc),
            ))
        except StoreError as e:
            logger.error("incoming_save_failed", error=str(e))
            await self._notify_failure(message, e)
            return

        prompt = build_prompt(
            history,
            message.text,
            self.config.max_tokens_to_generate,
            self.config.prompt,
        )
        if self.config.debug_log_prompts:
            logger.debug("prompt_built", prompt=prompt)

        try:
            reply = await self.completer.complete(prompt, self.config.max_tokens_to_generate)
        except CompletionError as e:
            logger.error("completion_failed", error=str(e))
            await self._notify_failure(message, e)
            return

        try:
            await self.store.append(Message.assistant(reply))
        except StoreError as e:
            logger.error("outgoing_save_failed", error=str(e))
            await self._notify_failure(message, e)
            return

        await self._send(message.chat_id, reply)
        self.processed += 1

    async def _notify_failure(self, message: InboundMessage, error: Exception) -> None:
        text = ERROR_REPLY_TEMPLATE.format(error=error)
        await self._send(message.chat_id, text)

    async def _send(self, chat_id: int, text: str) -> None:
        # Delivery is the last step; a failure here has no one left to tell
        try:
            sent = await self.transport.send(chat_id, text, parse_mode=MARKDOWN)
        except Exception as e:
            logger.error("send_failed", chat_id=chat_id, error=str(e))
            return
        if not sent:
            logger.warning("send_not_delivered", chat_id=chat_id)
