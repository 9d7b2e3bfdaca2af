"""
RelayGuard bot.

Connects to Twitch chat, wires the spam engine to its database, and loads
the anti-spam cog that filters every relayed message.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from twitchio.ext import commands

from relayguard.config import Config
from relayguard.utils.database import get_database
from relayguard.utils.logging import clip, get_logger
from relayguard.utils.spam_engine import get_spam_engine

if TYPE_CHECKING:
    from twitchio import Channel, Message

logger = get_logger(__name__)

COGS: tuple[str, ...] = ("relayguard.cogs.antispam",)


class RelayGuardBot(commands.Bot):
    """
    Twitch chat bot running the spam engine.

    Attributes:
        config: Bot configuration
    """

    def __init__(self, config: Config) -> None:
        """
        Initialize the bot.

        Args:
            config: Bot configuration object
        """
        self.config = config

        super().__init__(
            token=config.oauth_token,
            client_id=config.client_id,
            nick=config.bot_nick,
            prefix=config.prefix,
            initial_channels=config.channels,
        )

        # First call fixes the shared database path and lock timeout
        db = get_database(config.database_path, timeout=config.spam_check_timeout)
        get_spam_engine(db, lock_timeout=config.spam_check_timeout)

        logger.info("Bot initialized for channels: %s", ", ".join(config.channels))

        self._load_cogs()

    def _load_cogs(self) -> None:
        for cog_path in COGS:
            try:
                self.load_module(cog_path)
                logger.info("Loaded cog: %s", cog_path)
            except Exception as e:
                logger.error("Failed to load cog %s: %s", cog_path, e)

    async def event_ready(self) -> None:
        """Called when the bot is connected."""
        logger.info("Logged in as %s", self.nick)
        logger.info("Connected to channels: %s", ", ".join(c.name for c in self.connected_channels))

    async def event_channel_joined(self, channel: Channel) -> None:
        logger.info("Joined channel: %s", channel.name)

    async def event_message(self, message: Message) -> None:
        """Dispatch commands; spam filtering happens in the AntiSpam cog."""
        if message.echo:
            return

        logger.debug(
            "[%s] %s: %s",
            message.channel.name if message.channel else "?",
            message.author.name if message.author else "?",
            clip(message.content),
        )

        await self.handle_commands(message)

    async def event_command_error(self, context: commands.Context, error: Exception) -> None:
        """
        Called when a command raises an error.

        Args:
            context: Command context
            error: The exception that was raised
        """
        if isinstance(error, (commands.CommandNotFound, commands.CheckFailure)):
            return

        if isinstance(error, commands.MissingRequiredArgument):
            await context.send(f"@{context.author.name} Missing required argument.")
            return

        logger.exception(
            "Error in command %s: %s",
            context.command.name if context.command else "unknown",
            error,
        )
        await context.send(f"@{context.author.name} An error occurred while processing your command.")
