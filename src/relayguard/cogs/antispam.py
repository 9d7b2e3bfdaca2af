"""
Anti-spam cog.

Runs every chat message through the spam engine:
- Messages of auto-muted users are removed
- Messages that trip a detector are removed, and the user is timed out
  when an escalating mute was applied
- Expired mutes are swept in the background

Also provides the ``!antispam`` operator command and the owner-only
``!spamrole`` command for the user store.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Optional

from twitchio.ext import commands
from twitchio.ext.commands import Context

from relayguard.utils.database import EXEMPT_ROLES, DatabaseManager, get_database
from relayguard.utils.logging import clip, get_logger
from relayguard.utils.permissions import is_moderator, is_owner, is_privileged
from relayguard.utils.spam_engine import HandleResult, SpamEngine, get_spam_engine
from relayguard.utils.spam_settings import SETTING_RULES, SettingKey, parse_value
from relayguard.utils.timefmt import format_duration, to_timeout_seconds

if TYPE_CHECKING:
    from twitchio import Message
    from relayguard.bot import RelayGuardBot

logger = get_logger(__name__)

# Twitch rejects chat messages above 500 characters
MAX_CHAT_LENGTH = 450
TOP_OFFENDERS_LIMIT = 10

USAGE = "Usage: !antispam <status|config|set|whitelist|unwhitelist|reset|clear|top>"

ASSIGNABLE_ROLES = ("admin", "mod", "whitelist", "user")


def _on_off(value: bool) -> str:
    return "ON" if value else "OFF"


def chunk_parts(parts: list[str], separator: str = " | ", limit: int = MAX_CHAT_LENGTH) -> list[str]:
    """Join parts into as few chat-sized messages as possible."""
    messages: list[str] = []
    current = ""
    for part in parts:
        candidate = f"{current}{separator}{part}" if current else part
        if current and len(candidate) > limit:
            messages.append(current)
            current = part
        else:
            current = candidate
    if current:
        messages.append(current)
    return messages


class AntiSpam(commands.Cog):
    """
    Spam filtering for chat messages.

    Moderators, the broadcaster and the bot owner are never checked.
    """

    def __init__(
        self,
        bot: RelayGuardBot,
        engine: Optional[SpamEngine] = None,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        """
        Initialize the anti-spam cog.

        Args:
            bot: The bot instance
            engine: Spam engine (the shared one when omitted)
            db: Database used for username lookups
        """
        self.bot = bot
        config = bot.config
        if db is None:
            db = engine.db if engine else get_database(config.database_path, timeout=config.spam_check_timeout)
        self.db: DatabaseManager = db
        self.engine: SpamEngine = engine or get_spam_engine(self.db, lock_timeout=config.spam_check_timeout)
        self.enforce_mutes: bool = config.enforce_mutes
        self.sweep_interval: int = config.spam_sweep_interval

        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

        logger.info(
            "AntiSpam cog initialized (enforce mutes: %s, sweep every %ds)",
            self.enforce_mutes, self.sweep_interval,
        )

    # ==================== Background Sweep ====================

    @commands.Cog.event()
    async def event_ready(self) -> None:
        """Start the expired-mute sweep once connected."""
        self.start_sweep()

    def start_sweep(self) -> None:
        # event_ready fires again after a reconnect
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Mute sweep started (every %ds)", self.sweep_interval)

    def cog_unload(self) -> None:
        """Stop the expired-mute sweep."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            self._sweep_task = None
        logger.info("Mute sweep stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.engine.clean_expired_mutes)
            except Exception as e:
                logger.error("Error in mute sweep: %s", e)
            await asyncio.sleep(self.sweep_interval)

    # ==================== Message Pipeline ====================

    async def _remember_user(self, user_id: str, username: str) -> None:
        try:
            await asyncio.to_thread(self.db.get_or_create_user, user_id, username)
        except Exception as e:
            logger.warning("Failed to record user %s: %s", username, e)

    async def _delete_message(self, message: Message) -> None:
        try:
            await message.channel.send(f"/delete {message.id}")
        except Exception as e:
            logger.warning("Failed to delete message: %s", e)

    async def _enforce(self, message: Message, result: HandleResult) -> None:
        """Remove a blocked message and apply the mute in chat."""
        username = message.author.name
        channel = message.channel
        violation = result.violation
        reason = violation.reason if violation else "spam"

        await self._delete_message(message)

        outcome = result.outcome
        if outcome and outcome.mute_applied and self.enforce_mutes:
            seconds = to_timeout_seconds(outcome.mute_duration)
            try:
                await channel.send(f"/timeout {username} {seconds} AntiSpam: {reason[:100]}")
            except Exception as e:
                logger.warning("Failed to timeout %s: %s", username, e)

        if self.engine.settings.current().notify_admins:
            notice = f"@{username} Message removed: {reason}."
            if outcome and outcome.mute_applied:
                notice += f" Muted for {format_duration(outcome.mute_duration)}."
            try:
                await channel.send(notice)
            except Exception as e:
                logger.warning("Failed to send spam notice: %s", e)

    @commands.Cog.event()
    async def event_message(self, message: Message) -> None:
        """Check incoming messages for spam."""
        if message.echo:
            return
        if not message.author or message.content is None:
            return
        if is_privileged(message.author, self.bot.config.owner):
            return

        user_id = str(message.author.id)
        username = message.author.name
        await self._remember_user(user_id, username)

        if await asyncio.to_thread(self.engine.is_auto_muted, user_id):
            logger.debug("Dropping message of muted user %s: %s", username, clip(message.content))
            await self._delete_message(message)
            return

        result = await asyncio.to_thread(self.engine.process_message, user_id, message.content)
        if result is None or not result.blocked:
            return

        logger.info(
            "[SPAM] %s in #%s: %s",
            username,
            message.channel.name if message.channel else "?",
            result.violation.reason if result.violation else "?",
        )
        await self._enforce(message, result)

    # ==================== Commands ====================

    async def _resolve_user(self, ctx: Context, name: str) -> Optional[dict[str, Any]]:
        if not name:
            await ctx.send(f"@{ctx.author.name} Please name a user.")
            return None
        user = await asyncio.to_thread(self.db.get_user_by_name, name)
        if user is None:
            await ctx.send(f"@{ctx.author.name} Unknown user {name.lstrip('@')}.")
        return user

    async def _status(self, ctx: Context) -> None:
        stats = await asyncio.to_thread(self.engine.get_stats)
        settings = self.engine.settings.current()
        await ctx.send(
            f"@{ctx.author.name} AntiSpam: Flood {_on_off(settings.flood_enabled)} | "
            f"Links {_on_off(settings.link_spam_enabled)} | "
            f"Rapid fire {_on_off(settings.rapid_fire_enabled)} | "
            f"Auto-mute {_on_off(settings.auto_mute_enabled)} | "
            f"Tracked: {stats.get('tracked_users', 0)} | "
            f"Muted: {stats.get('auto_muted', 0)} | "
            f"Whitelisted: {stats.get('whitelisted', 0)} | "
            f"Violations: {stats.get('total_violations', 0)} "
            f"(flood {stats.get('total_flood', 0)}, links {stats.get('total_link_spam', 0)}, "
            f"rapid {stats.get('total_rapid_fire', 0)})"
        )

    async def _config(self, ctx: Context) -> None:
        parts = [f"{key}={value}" for key, value in self.engine.get_config().items()]
        for line in chunk_parts(parts, separator=", "):
            await ctx.send(line)

    async def _set(self, ctx: Context, key: str, raw_value: str) -> None:
        setting = SettingKey.parse(key)
        if setting is None or not raw_value:
            options = [f"{k.value} ({SETTING_RULES[k].range_text})" for k in SettingKey]
            await ctx.send(f"@{ctx.author.name} Usage: !antispam set <option> <value>")
            for line in chunk_parts(options, separator=", "):
                await ctx.send(line)
            return

        value = parse_value(raw_value)
        if not await asyncio.to_thread(self.engine.update_config, key, value):
            await ctx.send(
                f"@{ctx.author.name} Invalid value for {key}. "
                f"Allowed: {SETTING_RULES[setting].range_text}"
            )
            return

        await asyncio.to_thread(
            self.engine.modlog.admin_action,
            ctx.author.name, None, "antispam_config", key=key, value=value,
        )
        await ctx.send(f"@{ctx.author.name} {key} set to {value}.")

    async def _whitelist(self, ctx: Context, name: str) -> None:
        user = await self._resolve_user(ctx, name)
        if user is None:
            return
        if not await asyncio.to_thread(self.engine.whitelist, user["user_id"], ctx.author.name):
            await ctx.send(f"@{ctx.author.name} Could not whitelist {user['username']}.")
            return
        await asyncio.to_thread(
            self.engine.modlog.admin_action,
            ctx.author.name, user["user_id"], "spam_whitelist", username=user["username"],
        )
        await ctx.send(f"@{ctx.author.name} {user['username']} is now exempt from spam checks.")

    async def _unwhitelist(self, ctx: Context, name: str) -> None:
        user = await self._resolve_user(ctx, name)
        if user is None:
            return
        if not await asyncio.to_thread(self.engine.unwhitelist, user["user_id"]):
            await ctx.send(f"@{ctx.author.name} {user['username']} has no spam record.")
            return
        await asyncio.to_thread(
            self.engine.modlog.admin_action,
            ctx.author.name, user["user_id"], "spam_unwhitelist", username=user["username"],
        )
        await ctx.send(f"@{ctx.author.name} {user['username']} is no longer exempt from spam checks.")

    async def _reset(self, ctx: Context, name: str) -> None:
        user = await self._resolve_user(ctx, name)
        if user is None:
            return
        if not await asyncio.to_thread(self.engine.reset_violations, user["user_id"]):
            await ctx.send(f"@{ctx.author.name} {user['username']} has no spam record.")
            return
        await asyncio.to_thread(
            self.engine.modlog.admin_action,
            ctx.author.name, user["user_id"], "spam_reset", username=user["username"],
        )
        await ctx.send(f"@{ctx.author.name} Violations of {user['username']} reset.")

    async def _clear(self, ctx: Context, name: str) -> None:
        user = await self._resolve_user(ctx, name)
        if user is None:
            return
        if not await asyncio.to_thread(self.engine.clear_auto_mute, user["user_id"], False):
            await ctx.send(f"@{ctx.author.name} {user['username']} has no spam record.")
            return
        await asyncio.to_thread(
            self.engine.modlog.admin_action,
            ctx.author.name, user["user_id"], "spam_unmute", username=user["username"],
        )
        await ctx.send(f"@{ctx.author.name} Auto-mute of {user['username']} lifted.")

    async def _top(self, ctx: Context) -> None:
        records = await asyncio.to_thread(self.engine.get_top_offenders, TOP_OFFENDERS_LIMIT)
        if not records:
            await ctx.send(f"@{ctx.author.name} No spam violations recorded.")
            return

        names = await asyncio.to_thread(self.db.get_usernames, [r.user_id for r in records])
        lines = []
        for rank, record in enumerate(records, start=1):
            counts = record.violations
            line = (
                f"{rank}. {names.get(record.user_id, record.user_id)}: {counts.total} "
                f"(F{counts.flood}/L{counts.link_spam}/R{counts.rapid_fire})"
            )
            if record.is_auto_muted():
                line += " [muted]"
            lines.append(line)

        for message in chunk_parts(lines):
            await ctx.send(message)

    async def run_antispam(self, ctx: Context, action: str, target: str = "", value: str = "") -> None:
        """Dispatch an ``!antispam`` subcommand."""
        action = action.lower()
        try:
            if action == "status":
                await self._status(ctx)
            elif action == "config":
                await self._config(ctx)
            elif action == "set":
                await self._set(ctx, target, value)
            elif action == "whitelist":
                await self._whitelist(ctx, target)
            elif action == "unwhitelist":
                await self._unwhitelist(ctx, target)
            elif action == "reset":
                await self._reset(ctx, target)
            elif action == "clear":
                await self._clear(ctx, target)
            elif action == "top":
                await self._top(ctx)
            else:
                await ctx.send(f"@{ctx.author.name} {USAGE}")
        except Exception as e:
            logger.error("Error in !antispam %s: %s", action, e)
            await ctx.send(f"@{ctx.author.name} An error occurred while processing your command.")

    @commands.command(name="antispam")
    @is_moderator()
    async def antispam_cmd(self, ctx: Context, action: str = "status", target: str = "", value: str = "") -> None:
        """Manage spam protection. Usage: !antispam <status|config|set|whitelist|unwhitelist|reset|clear|top>"""
        await self.run_antispam(ctx, action, target, value)

    async def run_spamrole(self, ctx: Context, name: str = "", role: str = "") -> None:
        """Assign a user-store role; admin, mod and whitelist skip spam checks."""
        role = role.lower()
        if not name or role not in ASSIGNABLE_ROLES:
            await ctx.send(f"@{ctx.author.name} Usage: !spamrole <user> <{'|'.join(ASSIGNABLE_ROLES)}>")
            return

        try:
            user = await self._resolve_user(ctx, name)
            if user is None:
                return
            await asyncio.to_thread(self.db.set_user_role, user["user_id"], user["username"], role)
            await asyncio.to_thread(
                self.engine.modlog.admin_action,
                ctx.author.name, user["user_id"], "spam_role", username=user["username"], role=role,
            )
        except Exception as e:
            logger.error("Error in !spamrole %s %s: %s", name, role, e)
            await ctx.send(f"@{ctx.author.name} An error occurred while processing your command.")
            return

        note = " (exempt from spam checks)" if role in EXEMPT_ROLES else ""
        await ctx.send(f"@{ctx.author.name} {user['username']} is now {role}{note}.")

    @commands.command(name="spamrole")
    @is_owner()
    async def spamrole_cmd(self, ctx: Context, name: str = "", role: str = "") -> None:
        """Set a user's role. Usage: !spamrole <user> <admin|mod|whitelist|user>"""
        await self.run_spamrole(ctx, name, role)


def prepare(bot: RelayGuardBot) -> None:
    """Prepare the cog for loading."""
    bot.add_cog(AntiSpam(bot))
    if not bot.config.enable_admin_commands:
        bot.remove_command("antispam")
        bot.remove_command("spamrole")
        logger.info("Operator commands disabled by configuration")
