"""Prompt window: turns the stored transcript into a bounded completion prompt.

The completion model expects a plain-text dialogue that strictly alternates
"Human" and "AI" turns and ends with an open "AI:" marker. The transcript in
the database may not look like that (a failed generation leaves two human
turns in a row), so the builder first filters it into an alternating
sequence, then drops the oldest human/AI pairs until the prompt plus the
generation budget fits into the model context.

Sizes are measured in characters, the same unit as the context ceiling.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from chatrelay.config import PromptSettings
from chatrelay.core.types import AuthorKind, Message


def alternating_turns(history: Iterable[Message]) -> list[Message]:
    """Keep only messages that follow the Human -> AI -> Human -> ... order.

    A message whose author is not the one expected next is skipped. The
    sequence always starts with a human turn.
    """
    turns: list[Message] = []
    expected = AuthorKind.HUMAN
    for msg in history:
        if msg.author is not expected:
            continue
        turns.append(msg)
        expected = (
            AuthorKind.ASSISTANT if expected is AuthorKind.HUMAN else AuthorKind.HUMAN
        )
    return turns


def _exceeds_limit(
    preamble: str, rows: Sequence[str], max_tokens_to_generate: int, limit: int
) -> bool:
    if not rows:
        return False
    total = len(preamble) + sum(len(row) for row in rows) + max_tokens_to_generate
    return total > limit


def build_rows(
    history: Iterable[Message],
    human_message: str,
    max_tokens_to_generate: int,
    settings: PromptSettings,
) -> list[str]:
    """Build the trimmed list of prompt rows, one per turn.

    Each human row ends with the AI marker and each AI row with the human
    marker. The last row is always ``human_message``.
    """
    rows: list[str] = []
    last_author = AuthorKind.ASSISTANT
    for msg in alternating_turns(history):
        marker = settings.ai_marker if msg.author is AuthorKind.HUMAN else settings.human_marker
        rows.append(msg.text + marker)
        last_author = msg.author

    if last_author is AuthorKind.HUMAN:
        # Unanswered human turn: close it with the stock AI reply
        rows.append(settings.default_ai_message + settings.human_marker)
    rows.append(human_message + settings.ai_marker)

    # rows are Human, AI, ..., Human here, so pairs come off from the front
    while len(rows) >= 2 and _exceeds_limit(
        settings.preamble, rows, max_tokens_to_generate, settings.context_length_max
    ):
        rows = rows[2:]

    return rows


def build_prompt(
    history: Iterable[Message],
    human_message: str,
    max_tokens_to_generate: int,
    settings: PromptSettings,
) -> str:
    """Assemble the completion prompt for ``human_message``.

    Args:
        history: Full transcript, oldest first.
        human_message: Text of the message being answered.
        max_tokens_to_generate: Generation budget reserved in the context.
        settings: Preamble, markers and context ceiling.

    Never raises. If the budget alone overflows the context, the result is
    trimmed down to the preamble and the new message.
    """
    rows = build_rows(history, human_message, max_tokens_to_generate, settings)
    return settings.preamble + "".join(rows)
