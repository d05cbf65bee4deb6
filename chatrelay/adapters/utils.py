"""Shared utilities for chat transports."""

from __future__ import annotations

FENCE = "```"


def split_message(text: str, max_len: int = 4096) -> list[str]:
    """Split a long reply into chunks within the platform's length limit.

    Splitting priority:
    1. By code block boundaries (``` markers), keeping each block whole
    2. By paragraph (double newline)
    3. By line (single newline)
    4. By space (word boundary)
    5. By character (last resort)

    Chunks concatenate back to the original text. A code block longer than
    ``max_len`` is split like plain text.
    """
    if len(text) <= max_len:
        return [text]
    if FENCE not in text:
        return _split_plain(text, max_len)

    chunks: list[str] = []
    current = ""
    for block in _fenced_blocks(text):
        if len(current) + len(block) <= max_len:
            current += block
            continue
        if current:
            chunks.append(current)
            current = ""
        if len(block) > max_len:
            chunks.extend(_split_plain(block, max_len))
        else:
            current = block
    if current:
        chunks.append(current)
    return chunks


def _fenced_blocks(text: str) -> list[str]:
    """Cut text into alternating prose and ```-fenced code blocks."""
    parts = text.split(FENCE)
    blocks: list[str] = []
    for i, part in enumerate(parts):
        if i % 2 == 0:
            if part:
                blocks.append(part)
        elif i == len(parts) - 1:
            # Unterminated fence runs to the end
            blocks.append(FENCE + part)
        else:
            blocks.append(FENCE + part + FENCE)
    return blocks


def _split_plain(text: str, max_len: int) -> list[str]:
    """Split on the coarsest separator that keeps a chunk at least a quarter full."""
    chunks: list[str] = []
    remaining = text
    min_fill = max_len // 4

    while len(remaining) > max_len:
        split_at = max_len
        for separator in ("\n\n", "\n", " "):
            idx = remaining.rfind(separator, 0, max_len)
            if idx > min_fill:
                split_at = idx + len(separator)
                break
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:]

    if remaining:
        chunks.append(remaining)
    return chunks
