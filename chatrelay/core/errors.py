"""Error types shared by the relay components."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


class StoreError(RelayError):
    """A transcript store query or write failed."""


class CompletionError(RelayError):
    """The completion model returned an error or no usable text."""


class StartupError(RelayError):
    """Something required before the processing loop could not be set up."""


class ConfigError(StartupError):
    """Configuration value missing or malformed."""
