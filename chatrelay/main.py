"""chatrelay - Telegram to text-completion relay.

Entry point for the application.
Usage:
    python -m chatrelay.main                     # Run the relay
    python -m chatrelay.main --config relay.yaml # Run with a YAML config file
    python -m chatrelay.main --migrate-only      # Apply database migrations and exit
    python -m chatrelay.main --version           # Show version
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv

from chatrelay import __version__
from chatrelay.adapters.base import BaseTransport
from chatrelay.adapters.telegram_adapter import TelegramTransport
from chatrelay.config import RelayConfig, load_config
from chatrelay.core.completion import CompletionClient
from chatrelay.core.errors import ConfigError, StartupError
from chatrelay.core.memory.migrations import load_migrations
from chatrelay.core.memory.transcript import TranscriptStore
from chatrelay.core.relay import RelayLoop

logger = structlog.get_logger()

DEBUG = 10
INFO = 20


def setup_logging(debug: bool = False) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(DEBUG if debug else INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _load_env(config_path: Path | None = None) -> None:
    """Load .env files from the working directory and next to the config file."""
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    if config_path is not None:
        local_env = config_path.parent / ".env"
        if local_env.exists():
            load_dotenv(local_env)


def validate_config(config: RelayConfig) -> None:
    """Reject configurations the relay cannot run with.

    Raises:
        ConfigError: no authorized user is configured.
    """
    if not config.telegram.authorized_user_id:
        raise ConfigError("USER_ID_TELEGRAM is not set; refusing to answer anyone")

    if config.budget_exceeds_context:
        logger.warning(
            "generation_budget_exceeds_context",
            max_tokens_to_generate=config.max_tokens_to_generate,
            context_length_max=config.prompt.context_length_max,
        )


async def open_store(config: RelayConfig) -> TranscriptStore:
    """Open the transcript database and bring its schema up to date."""
    migrations = None
    if config.storage.migrations_dir is not None:
        logger.info("migrations_source", path=str(config.storage.migrations_dir))
        migrations = load_migrations(config.storage.migrations_dir)

    store = TranscriptStore(config.storage.database_path)
    await store.open(migrations)
    return store


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set ``stop_event`` on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt handling in main()
            pass


async def stop_transport_on_cancel(stop_event: asyncio.Event, transport: BaseTransport) -> None:
    """Stop delivering new messages as soon as shutdown begins."""
    await stop_event.wait()
    await transport.stop_receiving()


async def run_relay(
    config: RelayConfig,
    store: TranscriptStore,
    transport: BaseTransport,
    completer: CompletionClient,
    stop_event: asyncio.Event,
) -> None:
    """Run the relay loop until ``stop_event`` is set and the loop has drained."""
    relay = RelayLoop(config, store, transport, completer, stop_event)
    watcher = asyncio.create_task(stop_transport_on_cancel(stop_event, transport))
    try:
        await relay.run()
    finally:
        # The loop only returns on shutdown or a crash; make sure polling stops either way
        stop_event.set()
        await watcher
    await relay.done.wait()


async def async_main(config: RelayConfig) -> None:
    """Async entry point: initialize everything, then relay until signalled."""
    logger.info("initializing")

    validate_config(config)
    store = await open_store(config)
    completer = CompletionClient(config.model)
    transport = TelegramTransport(config.telegram)

    try:
        await transport.start()
        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)
        logger.info("started", model=completer.model, db_path=store.db_path)
        await run_relay(config, store, transport, completer, stop_event)
    finally:
        await transport.close()
    logger.info("terminated")


async def async_migrate(config: RelayConfig) -> None:
    """Apply migrations and report."""
    store = await open_store(config)
    print(f"Database ready: {store.db_path}")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="chatrelay - Telegram to text-completion relay",
        prog="chatrelay",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (environment variables take precedence)",
    )
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        help="Apply database migrations and exit",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version",
    )
    args = parser.parse_args()

    if args.version:
        print(f"chatrelay v{__version__}")
        return

    config_path = Path(args.config) if args.config else None
    _load_env(config_path)

    try:
        config = load_config(config_path)
    except ConfigError as e:
        setup_logging()
        logger.error("startup_failed", error=str(e))
        sys.exit(1)

    setup_logging(debug=config.debug_log_prompts)

    try:
        if args.migrate_only:
            asyncio.run(async_migrate(config))
        else:
            asyncio.run(async_main(config))
    except StartupError as e:
        logger.error("startup_failed", error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("interrupted")


if __name__ == "__main__":
    main()
