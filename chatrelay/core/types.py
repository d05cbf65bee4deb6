"""Shared data types for the relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

# user_id recorded for turns written by the relay itself
ASSISTANT_USER_ID = 0


class AuthorKind(str, Enum):
    """Who wrote a transcript turn."""

    HUMAN = "human"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single persisted turn in the conversation."""

    user_id: int
    text: str
    username: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None  # Assigned by the store on append

    @property
    def author(self) -> AuthorKind:
        if self.user_id == ASSISTANT_USER_ID:
            return AuthorKind.ASSISTANT
        return AuthorKind.HUMAN

    @classmethod
    def assistant(cls, text: str, created_at: datetime | None = None) -> Message:
        """Build an assistant turn (no author name)."""
        return cls(
            user_id=ASSISTANT_USER_ID,
            text=text,
            username="",
            created_at=created_at or datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class InboundMessage:
    """A message delivered by the chat transport."""

    sender_id: int
    chat_id: int
    text: str | None = None  # None for stickers, photos, etc.
    sender_name: str = ""
