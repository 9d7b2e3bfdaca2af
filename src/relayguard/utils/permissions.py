"""
Permission checks for chat commands and the message pipeline.

Provides:
- ``is_privileged`` to tell moderators, the broadcaster and the owner apart
  from regular chatters
- ``is_owner`` / ``is_moderator`` command decorators
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from twitchio.ext.commands import Context

from relayguard.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _owner_name(cog: Any) -> str:
    config = getattr(getattr(cog, "bot", None), "config", None)
    return getattr(config, "owner", "").lower() if config else ""


def is_privileged(author: Any, owner: Optional[str] = None) -> bool:
    """Whether a chatter is a moderator, the broadcaster, or the bot owner."""
    if author is None:
        return False
    if getattr(author, "is_mod", False) or getattr(author, "is_broadcaster", False):
        return True
    name = (getattr(author, "name", "") or "").lower()
    return bool(owner) and name == owner.lower()


def is_owner() -> Callable[[F], F]:
    """
    Restrict a command to the bot owner.

    Usage:
        @commands.command()
        @is_owner()
        async def shutdown(self, ctx):
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(self: Any, ctx: Context, *args: Any, **kwargs: Any) -> Any:
            if ctx.author.name.lower() != _owner_name(self):
                logger.warning(
                    "Unauthorized owner command attempt by %s in %s",
                    ctx.author.name,
                    ctx.channel.name,
                )
                await ctx.send(f"@{ctx.author.name} This command is owner-only.")
                return None
            return await func(self, ctx, *args, **kwargs)

        wrapper._is_owner_only = True  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator


def is_moderator() -> Callable[[F], F]:
    """
    Restrict a command to moderators, the broadcaster and the owner.

    Usage:
        @commands.command()
        @is_moderator()
        async def antispam(self, ctx):
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(self: Any, ctx: Context, *args: Any, **kwargs: Any) -> Any:
            if not is_privileged(ctx.author, _owner_name(self)):
                logger.warning(
                    "Unauthorized mod command attempt by %s in %s",
                    ctx.author.name,
                    ctx.channel.name,
                )
                await ctx.send(f"@{ctx.author.name} This command is for moderators only.")
                return None
            return await func(self, ctx, *args, **kwargs)

        wrapper._is_mod_only = True  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
