"""
Tests for the AntiSpam cog.

Tests:
- Message pipeline (delete, timeout, notice)
- Skipped senders
- The !antispam subcommands
"""

from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from twitchio.ext import commands

from relayguard.cogs.antispam import AntiSpam, chunk_parts
from relayguard.config import Config
from relayguard.utils.database import DatabaseManager
from relayguard.utils.detectors import Violation
from relayguard.utils.spam_engine import SpamEngine
from relayguard.utils.spam_record import SpamRecord, ViolationType, utcnow

SPAM_TEXT = "a.com b.com c.com d.com"


def make_config(**overrides) -> Config:
    values = {
        "client_id": "test_client_id_12345",
        "client_secret": "test_client_secret_12345",
        "oauth_token": "oauth:test_token_12345",
        "bot_nick": "testbot",
        "channels": ["testchannel"],
        "owner": "testowner",
    }
    values.update(overrides)
    return Config(**values)


def make_message(content: str, user_id: int = 1, name: str = "viewer",
                 is_mod: bool = False, echo: bool = False) -> MagicMock:
    message = MagicMock()
    message.echo = echo
    message.content = content
    message.id = "msg-1"
    message.author = MagicMock(id=user_id, is_mod=is_mod, is_broadcaster=False)
    message.author.name = name
    message.channel = MagicMock()
    message.channel.name = "testchannel"
    message.channel.send = AsyncMock()
    return message


def make_ctx(name: str = "somemod") -> MagicMock:
    ctx = MagicMock()
    ctx.author.name = name
    ctx.send = AsyncMock()
    return ctx


def sent(mock_send: AsyncMock) -> list[str]:
    return [call.args[0] for call in mock_send.call_args_list]


@pytest.fixture
def db():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield DatabaseManager(db_path)

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def engine(db):
    return SpamEngine(db)


def make_cog(engine: SpamEngine, **config_overrides) -> AntiSpam:
    """Build the cog and load it the way prepare() does."""
    bot = MagicMock()
    bot.config = make_config(**config_overrides)
    cog = AntiSpam(bot, engine=engine)
    commands.Bot.add_cog(bot, cog)
    return cog


def listener(cog: AntiSpam, event: str):
    """Return the callback add_cog registered for an event."""
    for call in cog.bot.add_event.call_args_list:
        if call.kwargs["name"] == event:
            return call.kwargs["callback"]
    raise AssertionError(f"{event} was not registered")


class TestMessagePipeline:
    """Tests for event_message."""

    def test_clean_message_passes(self, engine) -> None:
        cog = make_cog(engine)
        message = make_message("hello everyone")

        asyncio.run(listener(cog, "event_message")(message))

        message.channel.send.assert_not_called()
        assert len(engine.get_record("1").recent_messages) == 1

    def test_spam_is_deleted_and_timed_out(self, engine) -> None:
        cog = make_cog(engine)
        message = make_message(SPAM_TEXT)

        asyncio.run(listener(cog, "event_message")(message))

        messages = sent(message.channel.send)
        assert messages[0] == "/delete msg-1"
        assert messages[1].startswith("/timeout viewer 300 AntiSpam: Message contains 4 links")
        assert messages[2] == "@viewer Message removed: Message contains 4 links (max 3). Muted for 5m."

    def test_no_timeout_when_mutes_not_enforced(self, engine) -> None:
        cog = make_cog(engine, enforce_mutes=False)
        message = make_message(SPAM_TEXT)

        asyncio.run(listener(cog, "event_message")(message))

        assert not any(m.startswith("/timeout") for m in sent(message.channel.send))

    def test_no_notice_when_disabled(self, engine) -> None:
        engine.update_config("notifyAdmins", False)
        cog = make_cog(engine)
        message = make_message(SPAM_TEXT)

        asyncio.run(listener(cog, "event_message")(message))

        assert not any(m.startswith("@viewer") for m in sent(message.channel.send))

    def test_muted_user_message_is_dropped(self, engine) -> None:
        engine.handle_violation("1", Violation(ViolationType.FLOOD, "Identical message repeated 4 times"))
        cog = make_cog(engine)
        message = make_message("am I still muted?")

        asyncio.run(listener(cog, "event_message")(message))

        assert sent(message.channel.send) == ["/delete msg-1"]
        assert len(engine.get_record("1").recent_messages) == 0

    def test_moderators_are_skipped(self, engine) -> None:
        cog = make_cog(engine)
        message = make_message(SPAM_TEXT, is_mod=True)

        asyncio.run(listener(cog, "event_message")(message))

        message.channel.send.assert_not_called()
        assert engine.get_record("1") is None

    def test_owner_is_skipped(self, engine) -> None:
        cog = make_cog(engine)
        message = make_message(SPAM_TEXT, name="TestOwner")

        asyncio.run(listener(cog, "event_message")(message))

        assert engine.get_record("1") is None

    def test_echo_is_skipped(self, engine) -> None:
        cog = make_cog(engine)
        message = make_message(SPAM_TEXT, echo=True)

        asyncio.run(listener(cog, "event_message")(message))

        message.channel.send.assert_not_called()

    def test_sender_is_remembered(self, engine, db) -> None:
        cog = make_cog(engine)

        asyncio.run(listener(cog, "event_message")(make_message("hi", user_id=77, name="Newcomer")))

        assert db.get_user_by_name("newcomer")["user_id"] == "77"


class TestAntispamCommand:
    """Tests for the !antispam subcommands."""

    def test_status(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "status"))

        reply = sent(ctx.send)[0]
        assert "Flood ON" in reply
        assert "Tracked: 0" in reply

    def test_config(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "config"))

        combined = " ".join(sent(ctx.send))
        assert "floodMaxIdentical=3" in combined
        assert "notifyAdmins=True" in combined

    def test_set_valid(self, engine, db) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "set", "floodMaxIdentical", "5"))

        assert engine.get_config()["floodMaxIdentical"] == 5
        assert sent(ctx.send) == ["@somemod floodMaxIdentical set to 5."]
        entry = db.get_recent_actions(action="antispam_config")[0]
        assert entry["actor"] == "somemod"
        assert entry["details"] == {"key": "floodMaxIdentical", "value": 5}

    def test_set_invalid(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "set", "floodMaxIdentical", "50"))

        assert engine.get_config()["floodMaxIdentical"] == 3
        assert "Invalid value for floodMaxIdentical. Allowed: 1-10" in sent(ctx.send)[0]

    def test_set_without_key_lists_options(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "set"))

        combined = " ".join(sent(ctx.send))
        assert "rapidFireMaxMessages (5-30)" in combined
        assert "floodEnabled (true/false)" in combined

    def test_whitelist_and_unwhitelist(self, engine, db) -> None:
        db.get_or_create_user("1", "viewer")
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "whitelist", "@Viewer"))
        assert engine.get_record("1").whitelisted is True
        assert engine.get_record("1").whitelisted_by == "somemod"

        asyncio.run(cog.run_antispam(ctx, "unwhitelist", "viewer"))
        assert engine.get_record("1").whitelisted is False

        actions = [e["action"] for e in db.get_recent_actions()]
        assert actions[:2] == ["spam_unwhitelist", "spam_whitelist"]

    def test_unknown_user(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "reset", "ghost"))

        assert sent(ctx.send) == ["@somemod Unknown user ghost."]

    def test_reset_and_clear(self, engine, db) -> None:
        db.get_or_create_user("1", "viewer")
        for _ in range(2):
            engine.handle_violation("1", Violation(ViolationType.FLOOD, "Identical message repeated 4 times"))
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "clear", "viewer"))
        assert engine.is_auto_muted("1") is False
        assert engine.get_record("1").auto_mute_level == 2

        asyncio.run(cog.run_antispam(ctx, "reset", "viewer"))
        assert engine.get_record("1").violations.total == 0
        assert engine.get_record("1").auto_mute_level == 1

        actions = [e["action"] for e in db.get_recent_actions(target_user="1")]
        assert "spam_unmute" in actions
        assert "spam_reset" in actions

    def test_top(self, engine, db) -> None:
        db.get_or_create_user("1", "viewer")
        engine.handle_violation("1", Violation(ViolationType.LINK_SPAM, "Message contains suspicious link"))
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "top"))

        assert sent(ctx.send) == ["1. viewer: 1 (F0/L1/R0) [muted]"]

    def test_top_empty(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "top"))

        assert sent(ctx.send) == ["@somemod No spam violations recorded."]

    def test_unknown_action(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "explode"))

        assert "Usage: !antispam" in sent(ctx.send)[0]

    def test_errors_are_reported(self, engine) -> None:
        cog = make_cog(engine)
        cog.engine = MagicMock()
        cog.engine.get_stats.side_effect = RuntimeError("boom")
        ctx = make_ctx()

        asyncio.run(cog.run_antispam(ctx, "status"))

        assert "An error occurred" in sent(ctx.send)[0]


class TestMuteSweep:
    """Tests for the background expired-mute sweep."""

    def test_ready_starts_sweep(self, engine, db) -> None:
        """Test that loading the cog and going ready runs the sweep."""
        db.save_spam_record(SpamRecord(user_id="1", auto_mute_until=utcnow() - timedelta(minutes=1)), utcnow())
        cog = make_cog(engine)

        async def scenario():
            await listener(cog, "event_ready")()
            task = cog._sweep_task
            assert task is not None

            for _ in range(100):
                if db.get_spam_record("1").auto_mute_until is None:
                    break
                await asyncio.sleep(0.01)

            cog.cog_unload()
            await asyncio.wait([task])
            return task

        task = asyncio.run(scenario())

        assert task.cancelled()
        assert cog._sweep_task is None
        assert db.get_spam_record("1").auto_mute_until is None

    def test_second_ready_keeps_one_task(self, engine) -> None:
        cog = make_cog(engine)

        async def scenario():
            await listener(cog, "event_ready")()
            first = cog._sweep_task
            await listener(cog, "event_ready")()
            second = cog._sweep_task
            cog.cog_unload()
            return first, second

        first, second = asyncio.run(scenario())

        assert first is second

    def test_unload_without_start(self, engine) -> None:
        cog = make_cog(engine)
        cog.cog_unload()
        assert cog._sweep_task is None


class TestSpamRoleCommand:
    """Tests for !spamrole."""

    def test_exempt_role_skips_checks(self, engine, db) -> None:
        db.get_or_create_user("1", "viewer")
        cog = make_cog(engine)
        ctx = make_ctx("testowner")

        asyncio.run(cog.run_spamrole(ctx, "@viewer", "Mod"))

        assert db.get_user_role("1") == "mod"
        assert sent(ctx.send) == ["@testowner viewer is now mod (exempt from spam checks)."]
        entry = db.get_recent_actions(action="spam_role")[0]
        assert entry["details"] == {"username": "viewer", "role": "mod"}

        message = make_message(SPAM_TEXT)
        asyncio.run(listener(cog, "event_message")(message))
        message.channel.send.assert_not_called()

    def test_back_to_user(self, engine, db) -> None:
        db.set_user_role("1", "viewer", "whitelist")
        cog = make_cog(engine)
        ctx = make_ctx("testowner")

        asyncio.run(cog.run_spamrole(ctx, "viewer", "user"))

        assert db.get_user_role("1") == "user"
        assert sent(ctx.send) == ["@testowner viewer is now user."]

    def test_invalid_role(self, engine, db) -> None:
        db.get_or_create_user("1", "viewer")
        cog = make_cog(engine)
        ctx = make_ctx("testowner")

        asyncio.run(cog.run_spamrole(ctx, "viewer", "superuser"))

        assert db.get_user_role("1") == "user"
        assert "Usage: !spamrole" in sent(ctx.send)[0]

    def test_unknown_user(self, engine) -> None:
        cog = make_cog(engine)
        ctx = make_ctx("testowner")

        asyncio.run(cog.run_spamrole(ctx, "ghost", "mod"))

        assert sent(ctx.send) == ["@testowner Unknown user ghost."]


class TestChunkParts:
    """Tests for splitting long replies."""

    def test_fits_in_one(self) -> None:
        assert chunk_parts(["a", "b", "c"]) == ["a | b | c"]

    def test_splits_at_limit(self) -> None:
        parts = ["x" * 20, "y" * 20, "z" * 20]
        assert chunk_parts(parts, limit=45) == ["x" * 20 + " | " + "y" * 20, "z" * 20]

    def test_empty(self) -> None:
        assert chunk_parts([]) == []
