"""アプリケーションのエントリポイント"""

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from chatsync.application.services import ConversationSnapshot, ViewStateCoordinator
from chatsync.config import Config, ConfigError, LoggingConfig, load_config
from chatsync.domain.entities import ConversationScope, ThreadNode
from chatsync.domain.services import ChatBackend, ChangeFeed
from chatsync.infrastructure.events import EventDispatcher
from chatsync.infrastructure.feed import BackoffPolicy, EventFeedAdapter, RowNormalizer
from chatsync.infrastructure.persistence import (
    DatabaseManager,
    LocalChangeFeed,
    SQLiteChatBackend,
)
from chatsync.infrastructure.supabase import SupabaseBackend, SupabaseRealtimeFeed

# Default logging for early startup
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

Cleanup = Callable[[], Awaitable[None]]


def configure_logging(config: LoggingConfig | None) -> None:
    """Configure logging based on config.

    Args:
        config: Logging configuration. If None, uses defaults.
    """
    if config is None:
        return

    root_logger = logging.getLogger()
    level = getattr(logging, config.level.upper(), logging.INFO)
    root_logger.setLevel(level)

    if root_logger.handlers:
        formatter = logging.Formatter(config.format)
        for handler in root_logger.handlers:
            handler.setFormatter(formatter)

    if config.loggers:
        for logger_name, logger_level in config.loggers.items():
            individual_logger = logging.getLogger(logger_name)
            individual_level = getattr(logging, logger_level.upper(), logging.INFO)
            individual_logger.setLevel(individual_level)
            logger.debug(
                "Set logger '%s' to level %s", logger_name, logger_level.upper()
            )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatsync", description="Follow a chat conversation in realtime."
    )
    parser.add_argument(
        "--config", type=Path, default=Path("config.yaml"), help="config file path"
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--channel", type=int, help="channel ID to follow")
    target.add_argument("--dm", metavar="USER_ID", help="user to follow a DM with")
    return parser.parse_args(argv)


def scope_from_args(args: argparse.Namespace) -> ConversationScope:
    if args.channel is not None:
        return ConversationScope.channel(args.channel)
    return ConversationScope.direct(args.dm)


def render_snapshot(snapshot: ConversationSnapshot) -> str:
    """Render a snapshot as indented text, one message per line."""
    header = f"[{snapshot.scope or '-'}] {snapshot.state.value}"
    if snapshot.reconnecting:
        header += " (reconnecting)"
    lines = [header]

    def render(node: ThreadNode, depth: int) -> str:
        message = node.message
        if node.deleted:
            text = "(deleted)"
        else:
            text = f"{message.author_id}: {message.body}"
            if message.is_provisional:
                text += " (sending)"
        for attachment in message.attachments:
            text += f" [{attachment.name}]"
        summary = snapshot.reactions.get(node.id, {})
        if summary:
            text += " " + " ".join(
                f"{emoji}{count.count}{'*' if count.reacted_by_current_user else ''}"
                for emoji, count in summary.items()
            )
        return f"{'  ' * depth}#{node.id} {text}"

    stack = [(root, 0) for root in reversed(snapshot.threads)]
    while stack:
        node, depth = stack.pop()
        lines.append(render(node, depth))
        stack.extend((child, depth + 1) for child in reversed(node.children))
    return "\n".join(lines)


async def build_backend(config: Config) -> tuple[ChatBackend, ChangeFeed, str, Cleanup]:
    """Build the backend, its change feed, and a cleanup callback.

    Returns:
        (backend, change feed, nonce column, cleanup)
    """
    viewer_id = config.viewer.user_id
    if config.backend.kind == "sqlite":
        db_manager = DatabaseManager.from_config(config.backend.sqlite)
        await db_manager.create_tables()
        local_feed = LocalChangeFeed()
        backend = SQLiteChatBackend(viewer_id, db_manager.get_session, local_feed)
        return backend, local_feed, "client_nonce", db_manager.close

    supabase_config = config.backend.supabase
    assert supabase_config is not None
    rest = SupabaseBackend(supabase_config, viewer_id)
    feed = SupabaseRealtimeFeed(supabase_config)
    return rest, feed, supabase_config.nonce_column or "", rest.aclose


async def main(argv: list[str] | None = None) -> None:
    """アプリケーションを起動する"""
    args = parse_args(argv)
    if not args.config.exists():
        logger.error("%s not found", args.config)
        sys.exit(1)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("Failed to load config: %s", e)
        sys.exit(1)

    configure_logging(config.logging)

    backend, change_feed, nonce_column, cleanup = await build_backend(config)
    viewer_id = config.viewer.user_id
    sync = config.sync

    dispatcher = EventDispatcher()
    adapter = EventFeedAdapter(
        change_feed,
        dispatcher,
        RowNormalizer(viewer_id, nonce_column=nonce_column or None),
        viewer_id,
        backoff=BackoffPolicy(
            initial_delay=sync.reconnect_initial_delay_seconds,
            max_delay=sync.reconnect_max_delay_seconds,
            multiplier=sync.reconnect_multiplier,
        ),
    )
    coordinator = ViewStateCoordinator(
        backend, adapter, dispatcher, viewer_id, sync_config=sync
    )
    coordinator.add_listener(
        lambda: logger.info("\n%s", render_snapshot(coordinator.snapshot()))
    )

    # Setup signal handlers for graceful shutdown
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def shutdown_handler() -> None:
        logger.info("Received shutdown signal...")
        stop_event.set()

    loop.add_signal_handler(signal.SIGINT, shutdown_handler)
    loop.add_signal_handler(signal.SIGTERM, shutdown_handler)

    scope = scope_from_args(args)
    logger.info("Following %s as %s (%s backend)", scope, viewer_id, config.backend.kind)
    try:
        await coordinator.set_active_scope(scope)
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await coordinator.close()
        await cleanup()
        logger.info("Shutdown complete")


def run() -> None:
    """Run the async main function."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    run()
