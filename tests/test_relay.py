"""Tests for the relay processing loop."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from structlog.testing import capture_logs

from conftest import AUTHORIZED_ID, CHAT_ID, FakeTransport, inbound, wait_until

from chatrelay.config import DEFAULT_PREAMBLE, RelayConfig, TelegramConfig
from chatrelay.core.errors import CompletionError, StoreError
from chatrelay.core.memory.transcript import TranscriptStore
from chatrelay.core.relay import RelayLoop
from chatrelay.core.types import ASSISTANT_USER_ID, AuthorKind, Message


def make_relay(config, store, transport, completer, stop_event=None) -> RelayLoop:
    return RelayLoop(config, store, transport, completer, stop_event or asyncio.Event())


def mock_store(history=None):
    store = MagicMock(spec=TranscriptStore)
    store.prune = AsyncMock(return_value=0)
    store.read_all = AsyncMock(return_value=history or [])
    store.append = AsyncMock(side_effect=lambda m: m)
    return store


# =============================================================
# End-to-end cycles with a real SQLite store
# =============================================================

class TestRelayCycle:
    @pytest.mark.asyncio
    async def test_hello_on_empty_store(self, config, transport, completer, db_path):
        store = TranscriptStore(db_path)
        await store.open()
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        completer.complete.assert_awaited_once_with(DEFAULT_PREAMBLE + "Hello\nAI: ", 301)

        rows = await store.read_all()
        assert [(m.author, m.username, m.text) for m in rows] == [
            (AuthorKind.HUMAN, "alice", "Hello"),
            (AuthorKind.ASSISTANT, "", " Hi! How are you?"),
        ]
        assert rows[0].user_id == AUTHORIZED_ID
        assert rows[1].user_id == ASSISTANT_USER_ID
        assert transport.sent == [(CHAT_ID, " Hi! How are you?", "Markdown")]
        assert relay.processed == 1

    @pytest.mark.asyncio
    async def test_second_cycle_sees_first_exchange(self, config, transport, completer, db_path):
        store = TranscriptStore(db_path)
        await store.open()
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))
        await relay.handle(inbound("And again"))

        prompt = completer.complete.await_args_list[1].args[0]
        assert prompt == (
            DEFAULT_PREAMBLE
            + "Hello\nAI: "
            + " Hi! How are you?\nHuman: "
            + "And again\nAI: "
        )

    @pytest.mark.asyncio
    async def test_prunes_before_writing(self, config, transport, completer, db_path):
        store = TranscriptStore(db_path)
        await store.open()
        for i in range(102):
            if i % 2 == 0:
                await store.append(Message(user_id=AUTHORIZED_ID, text=f"old {i}"))
            else:
                await store.append(Message.assistant(f"old {i}"))
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        rows = await store.read_all()
        assert len(rows) == 103
        assert rows[0].text == "old 1"
        assert [m.text for m in rows[-2:]] == ["Hello", " Hi! How are you?"]
        assert len(rows[:-2]) <= 101

    @pytest.mark.asyncio
    async def test_unauthorized_sender_is_ignored(self, config, transport, completer, db_path):
        store = TranscriptStore(db_path)
        await store.open()
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello", sender_id=666))

        assert await store.count() == 0
        assert transport.sent == []
        completer.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unanswered_message_stays_in_transcript(self, config, transport, completer, db_path):
        store = TranscriptStore(db_path)
        await store.open()
        completer.complete = AsyncMock(side_effect=[CompletionError("boom"), "second reply"])
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("first"))
        await relay.handle(inbound("second"))

        rows = await store.read_all()
        assert [m.text for m in rows] == ["first", "second", "second reply"]
        # The unanswered human turn is closed with the stock AI reply in the prompt
        prompt = completer.complete.await_args_list[1].args[0]
        assert prompt.endswith("first\nAI: How can I help you today?\nHuman: second\nAI: ")


# =============================================================
# Message filtering
# =============================================================

class TestFiltering:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [None, ""])
    async def test_messages_without_text_are_discarded(self, config, transport, completer, text):
        store = mock_store()
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound(text))

        store.prune.assert_not_awaited()
        store.append.assert_not_awaited()
        assert transport.sent == []

    def test_authorization_compares_ids_as_strings(self, transport, completer):
        config = RelayConfig(telegram=TelegramConfig(authorized_user_id="42"))
        relay = make_relay(config, mock_store(), transport, completer)
        assert relay.is_authorized(inbound(sender_id=42))
        assert not relay.is_authorized(inbound(sender_id=421))

    def test_empty_authorized_id_matches_nobody(self, transport, completer):
        relay = make_relay(RelayConfig(), mock_store(), transport, completer)
        assert not relay.is_authorized(inbound())


# =============================================================
# Failure handling
# =============================================================

class TestFailures:
    @pytest.mark.asyncio
    async def test_prune_failure_is_not_fatal(self, config, transport, completer):
        store = mock_store()
        store.prune.side_effect = StoreError("disk busy")
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        assert store.append.await_count == 2
        assert transport.sent == [(CHAT_ID, " Hi! How are you?", "Markdown")]

    @pytest.mark.asyncio
    async def test_read_failure_aborts_cycle(self, config, transport, completer):
        store = mock_store()
        store.read_all.side_effect = StoreError("no such table")
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        store.append.assert_not_awaited()
        completer.complete.assert_not_awaited()
        assert len(transport.sent) == 1
        chat_id, text, mode = transport.sent[0]
        assert chat_id == CHAT_ID
        assert text == "`Failed to process your request. ERROR: no such table`"
        assert mode == "Markdown"

    @pytest.mark.asyncio
    async def test_incoming_save_failure_aborts_before_completion(self, config, transport, completer):
        store = mock_store()
        store.append.side_effect = StoreError("read-only database")
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        completer.complete.assert_not_awaited()
        assert [t for _, t, _ in transport.sent] == [
            "`Failed to process your request. ERROR: read-only database`"
        ]

    @pytest.mark.asyncio
    async def test_completion_failure_notifies_user(self, config, transport, completer):
        store = mock_store()
        completer.complete.side_effect = CompletionError("rate limited")
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        assert store.append.await_count == 1
        assert [t for _, t, _ in transport.sent] == [
            "`Failed to process your request. ERROR: rate limited`"
        ]
        assert relay.processed == 0

    @pytest.mark.asyncio
    async def test_reply_not_sent_when_it_cannot_be_saved(self, config, transport, completer):
        store = mock_store()
        store.append.side_effect = [Message(user_id=AUTHORIZED_ID, text="Hello"), StoreError("disk full")]
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        sent_texts = [t for _, t, _ in transport.sent]
        assert sent_texts == ["`Failed to process your request. ERROR: disk full`"]

    @pytest.mark.asyncio
    async def test_send_failure_is_contained(self, config, completer):
        store = mock_store()
        transport = MagicMock()
        transport.send = AsyncMock(side_effect=RuntimeError("network down"))
        relay = make_relay(config, store, transport, completer)

        await relay.handle(inbound("Hello"))

        transport.send.assert_awaited_once()
        assert store.append.await_count == 2

    @pytest.mark.asyncio
    async def test_undelivered_reply_still_counts_as_processed(self, config, transport, completer):
        transport.send_result = False
        relay = make_relay(config, mock_store(), transport, completer)

        await relay.handle(inbound("Hello"))

        assert len(transport.sent) == 1
        assert relay.processed == 1


# =============================================================
# Loop lifecycle and cancellation
# =============================================================

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_processes_messages_in_order_then_stops(self, config, transport, completer):
        store = mock_store()
        stop = asyncio.Event()
        relay = make_relay(config, store, transport, completer, stop)
        for text in ("one", "two", "three"):
            transport.queue.put_nowait(inbound(text))

        task = asyncio.create_task(relay.run())
        await wait_until(lambda: relay.processed == 3)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        human_texts = [c.args[0].text for c in store.append.await_args_list if c.args[0].user_id]
        assert human_texts == ["one", "two", "three"]
        assert relay.terminated

    @pytest.mark.asyncio
    async def test_stop_while_idle(self, config, transport, completer):
        stop = asyncio.Event()
        relay = make_relay(config, mock_store(), transport, completer, stop)

        task = asyncio.create_task(relay.run())
        await asyncio.sleep(0.01)
        assert not relay.terminated
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert relay.done.is_set()
        completer.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_stopped_loop_processes_nothing(self, config, transport, completer):
        stop = asyncio.Event()
        stop.set()
        relay = make_relay(config, mock_store(), transport, completer, stop)
        transport.queue.put_nowait(inbound("Hello"))

        await asyncio.wait_for(relay.run(), timeout=2)

        assert relay.terminated
        completer.complete.assert_not_awaited()
        assert transport.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_cycle_in_progress_finishes_before_exit(self, config, transport, completer):
        store = mock_store()
        stop = asyncio.Event()

        async def slow_completion(prompt, max_tokens):
            stop.set()
            await asyncio.sleep(0.05)
            return "late reply"

        completer.complete = AsyncMock(side_effect=slow_completion)
        relay = make_relay(config, store, transport, completer, stop)
        transport.queue.put_nowait(inbound("first"))
        transport.queue.put_nowait(inbound("second"))

        await asyncio.wait_for(relay.run(), timeout=2)

        assert transport.sent == [(CHAT_ID, "late reply", "Markdown")]
        assert store.append.await_count == 2
        assert completer.complete.await_count == 1
        assert relay.terminated

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_loop(self, config, transport, completer):
        stop = asyncio.Event()
        completer.complete = AsyncMock(side_effect=[RuntimeError("bug"), "fine"])
        relay = make_relay(config, mock_store(), transport, completer, stop)
        transport.queue.put_nowait(inbound("first"))
        transport.queue.put_nowait(inbound("second"))

        task = asyncio.create_task(relay.run())
        await wait_until(lambda: relay.processed == 1)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert transport.sent == [(CHAT_ID, "fine", "Markdown")]

    @pytest.mark.asyncio
    async def test_done_is_set_once_after_run(self, config, transport, completer):
        stop = asyncio.Event()
        relay = make_relay(config, mock_store(), transport, completer, stop)
        done_set = MagicMock(wraps=relay.done.set)
        relay.done.set = done_set

        stop.set()
        await relay.run()

        done_set.assert_called_once()

    @pytest.mark.asyncio
    async def test_receive_error_does_not_stop_loop(self, config, completer):
        class FlakyTransport(FakeTransport):
            def __init__(self):
                super().__init__()
                self.failures = 1

            async def receive(self):
                if self.failures:
                    self.failures -= 1
                    raise ConnectionError("connection reset")
                return await super().receive()

        transport = FlakyTransport()
        stop = asyncio.Event()
        relay = make_relay(config, mock_store(), transport, completer, stop)
        relay.receive_retry_delay = 0
        transport.queue.put_nowait(inbound("Hello"))

        task = asyncio.create_task(relay.run())
        await wait_until(lambda: relay.processed == 1)

        assert not relay.terminated
        assert not task.done()

        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert transport.sent == [(CHAT_ID, " Hi! How are you?", "Markdown")]

    @pytest.mark.asyncio
    async def test_stop_during_receive_backoff(self, config, completer):
        class BrokenTransport(FakeTransport):
            async def receive(self):
                raise ConnectionError("down")

        stop = asyncio.Event()
        relay = make_relay(config, mock_store(), BrokenTransport(), completer, stop)
        relay.receive_retry_delay = 60

        task = asyncio.create_task(relay.run())
        await asyncio.sleep(0.05)
        assert not relay.terminated

        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert relay.terminated


# =============================================================
# Prompt logging
# =============================================================

class TestPromptLogging:
    @pytest.mark.asyncio
    async def test_prompt_logged_when_enabled(self, config, transport, completer):
        config = config.model_copy(update={"debug_log_prompts": True})
        relay = make_relay(config, mock_store(), transport, completer)

        with capture_logs() as logs:
            await relay.handle(inbound("tell me a riddle"))

        built = [entry for entry in logs if entry["event"] == "prompt_built"]
        assert len(built) == 1
        assert built[0]["log_level"] == "debug"
        assert built[0]["prompt"] == completer.complete.await_args.args[0]
        assert built[0]["prompt"].endswith("tell me a riddle\nAI: ")

    @pytest.mark.asyncio
    async def test_message_text_not_logged_by_default(self, config, transport, completer):
        relay = make_relay(config, mock_store(), transport, completer)

        with capture_logs() as logs:
            await relay.handle(inbound("tell me a riddle"))

        assert relay.processed == 1
        assert not any(entry["event"] == "prompt_built" for entry in logs)
        for entry in logs:
            assert not any("riddle" in str(value) for value in entry.values())
