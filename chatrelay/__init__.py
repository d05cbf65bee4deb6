"""chatrelay - single-user Telegram relay to a text-completion model."""

__version__ = "0.1.0"
