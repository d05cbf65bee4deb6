"""Completion client: plain-text completions via LiteLLM."""

from __future__ import annotations

from typing import Any

import litellm
import structlog

from chatrelay.config import ModelConfig
from chatrelay.core.errors import CompletionError

logger = structlog.get_logger()

# Suppress LiteLLM's verbose logging
litellm.suppress_debug_info = True


class CompletionClient:
    """Sends a prompt to the configured model and returns the generated text.

    There is no fallback chain and no retry: a failed call surfaces as a
    CompletionError and the caller decides what to tell the user.
    """

    def __init__(self, config: ModelConfig) -> None:
        self.config = config

    @property
    def model(self) -> str:
        return self.config.name

    def _request_kwargs(self, prompt: str, max_tokens: int) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.config.name,
            "prompt": prompt,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
            "frequency_penalty": self.config.frequency_penalty,
            "presence_penalty": self.config.presence_penalty,
            "stop": list(self.config.stop),
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.base_url:
            kwargs["api_base"] = self.config.base_url
        return kwargs

    async def complete(self, prompt: str, max_tokens: int) -> str:
        """Generate a continuation of ``prompt``.

        Raises:
            CompletionError: the provider call failed or returned no choices.
        """
        logger.debug("completion_request", model=self.config.name, prompt_len=len(prompt))
        try:
            response = await litellm.atext_completion(
                **self._request_kwargs(prompt, max_tokens)
            )
        except Exception as e:
            raise CompletionError(f"completion request to {self.config.name} failed: {e}") from e

        choices = getattr(response, "choices", None)
        if not choices:
            raise CompletionError(f"model {self.config.name} returned no choices")

        text = getattr(choices[0], "text", None)
        if text is None:
            raise CompletionError(f"model {self.config.name} returned an empty choice")

        usage = getattr(response, "usage", None)
        if usage:
            logger.info(
                "completion_usage",
                model=self.config.name,
                prompt_tokens=getattr(usage, "prompt_tokens", 0),
                completion_tokens=getattr(usage, "completion_tokens", 0),
            )
        return text
