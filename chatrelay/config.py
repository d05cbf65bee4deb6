"""Configuration management for the relay.

Settings come from an optional YAML file, overridden by environment
variables, and are validated with Pydantic. The resulting RelayConfig is
frozen: it is built once at startup and passed to every component.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chatrelay.core.errors import ConfigError

DEFAULT_PREAMBLE = (
    "The following is a conversation with an AI assistant. "
    "The assistant is helpful, creative, clever, and very friendly.\n"
    "\nHuman: Hello, who are you?"
    "\nAI: I am an AI created by OpenAI. How can I help you today?"
    "\nHuman: "
)

# Environment variable -> dotted config path
ENV_OVERRIDES: dict[str, str] = {
    "API_KEY_OPENAPI": "model.api_key",
    "OPENAI_MODEL": "model.name",
    "API_KEY_TELEGRAM": "telegram.bot_token",
    "USER_ID_TELEGRAM": "telegram.authorized_user_id",
    "APPLICATION_DATA_ROOT_DIR_PATH": "storage.data_dir",
    "DATABASE_FILENAME": "storage.database_filename",
    "SQL_MIGRATIONS_PATH_RELATIVE": "storage.migrations_dir",
    "MAX_MESSAGES_IN_HISTORY": "max_messages_in_history",
    "MAX_TOKENS_TO_GENERATE": "max_tokens_to_generate",
    "DEBUG_LOG_PROMPTS": "debug_log_prompts",
}


# === Configuration Models ===


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PromptSettings(_Frozen):
    """Fixed prompt framing used by the window builder."""

    preamble: str = DEFAULT_PREAMBLE
    default_ai_message: str = "How can I help you today?"
    ai_marker: str = "\nAI: "
    human_marker: str = "\nHuman: "
    context_length_max: int = Field(default=4097, gt=0)


class ModelConfig(_Frozen):
    """Completion model parameters."""

    name: str = "gpt-3.5-turbo-instruct"
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.9
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.6
    stop: tuple[str, ...] = (" Human:", " AI:")


class TelegramConfig(_Frozen):
    """Telegram transport configuration."""

    bot_token: str | None = None
    authorized_user_id: str = ""
    polling_timeout: int = 60  # Long-polling timeout, seconds
    max_message_length: int = 4096

    @field_validator("authorized_user_id", mode="before")
    @classmethod
    def _id_as_string(cls, value: Any) -> Any:
        # YAML turns bare numeric ids into ints
        if isinstance(value, int):
            return str(value)
        return value


class StorageConfig(_Frozen):
    """Where the transcript database lives."""

    data_dir: Path = Path("/data")
    database_filename: str = "db.sqlite"
    migrations_dir: Path | None = None  # None = built-in migrations

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_filename


class RelayConfig(_Frozen):
    """Root configuration for the relay."""

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    prompt: PromptSettings = Field(default_factory=PromptSettings)

    max_messages_in_history: int = Field(default=101, ge=0)
    max_tokens_to_generate: int = Field(default=301, gt=0)
    debug_log_prompts: bool = False

    @property
    def budget_exceeds_context(self) -> bool:
        """True when the preamble and budget alone overflow the model context."""
        return (
            len(self.prompt.preamble) + self.max_tokens_to_generate
            > self.prompt.context_length_max
        )


# === Config Loading ===


def _set_dotted(data: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = data
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[leaf] = value


def _apply_env(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overlay known environment variables onto raw config data."""
    for env_name, dotted in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        if env_name == "DEBUG_LOG_PROMPTS":
            # Only the literal "true" turns it on
            _set_dotted(data, dotted, value == "true")
        elif env_name == "SQL_MIGRATIONS_PATH_RELATIVE":
            _set_dotted(data, dotted, str(Path.cwd() / value))
        else:
            _set_dotted(data, dotted, value)
    return data


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Load configuration from an optional YAML file plus the environment.

    The file is taken from ``config_path`` or ``$CHATRELAY_CONFIG``; a missing
    file means defaults. Environment variables always win over the file.

    Raises:
        ConfigError: the file cannot be parsed or a value fails validation.
    """
    env = os.environ if environ is None else environ

    if config_path is None and env.get("CHATRELAY_CONFIG"):
        config_path = Path(env["CHATRELAY_CONFIG"])

    raw: dict[str, Any] = {}
    if config_path is not None and config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read config file {config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {config_path} must contain a mapping")

    raw = _apply_env(raw, env)

    try:
        return RelayConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
