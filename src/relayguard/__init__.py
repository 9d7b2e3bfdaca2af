"""
RelayGuard - anti-spam engine for relayed Twitch chat.

Detects flood, link spam and rapid-fire messaging per user, escalates
auto-mutes, and keeps a moderation log, all backed by SQLite.
"""

from relayguard.config import Config, load_config

__version__ = "1.0.0"
__all__ = ["Config", "load_config", "main"]


def main() -> None:
    """Entry point for the RelayGuard bot."""
    import asyncio
    import signal
    import sys

    from relayguard.bot import RelayGuardBot
    from relayguard.utils.logging import setup_logging, get_logger

    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    logger = get_logger(__name__)

    logger.info("Starting RelayGuard v%s", __version__)

    bot = RelayGuardBot(config)

    def signal_handler(sig: int, frame: object) -> None:
        logger.info("Received shutdown signal, stopping bot...")
        asyncio.create_task(bot.close())

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        bot.run()
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except Exception as e:
        logger.exception("Bot crashed with error: %s", e)
        sys.exit(1)
    finally:
        logger.info("Bot shutdown complete")
