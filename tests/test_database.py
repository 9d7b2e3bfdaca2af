"""
Tests for the SQLite database manager.

These tests verify:
- Spam record storage
- Mute sweep, top offenders and statistics
- Settings blobs
- Users and roles
- The moderation log
"""

from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from relayguard.utils.spam_record import SpamRecord, ViolationCounts

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    """Create a temporary database for testing."""
    from relayguard.utils.database import DatabaseManager

    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield DatabaseManager(db_path)

    try:
        os.unlink(db_path)
    except OSError:
        pass


class TestSpamRecords:
    """Tests for spam record storage."""

    def test_unknown_user(self, db) -> None:
        assert db.get_spam_record("nobody") is None

    def test_get_or_create(self, db) -> None:
        record = db.get_or_create_spam_record("100", NOW)

        assert record.user_id == "100"
        assert record.violations.total == 0
        assert record.created_at == NOW

        # Second call returns the same row
        again = db.get_or_create_spam_record("100", NOW + timedelta(hours=1))
        assert again.created_at == NOW

    def test_save_and_load(self, db) -> None:
        record = SpamRecord(
            user_id="100",
            violations=ViolationCounts(flood=2, rapid_fire=1),
            auto_mute_until=NOW + timedelta(minutes=15),
            auto_mute_level=2,
        )
        record.track_message("hello a.com", True, NOW)
        db.save_spam_record(record, NOW)

        loaded = db.get_spam_record("100")

        assert loaded.violations.flood == 2
        assert loaded.violations.total == 3
        assert loaded.auto_mute_until == NOW + timedelta(minutes=15)
        assert loaded.auto_mute_level == 2
        assert loaded.recent_messages[0].content == "hello a.com"
        assert loaded.updated_at == NOW

    def test_save_overwrites(self, db) -> None:
        record = db.get_or_create_spam_record("100", NOW)
        record.whitelisted = True
        record.whitelisted_by = "mod"
        db.save_spam_record(record, NOW)

        assert db.get_spam_record("100").whitelisted is True
        assert db.get_spam_record("100").whitelisted_by == "mod"


class TestSpamQueries:
    """Tests for sweep, ranking and statistics."""

    def test_clear_expired_mutes(self, db) -> None:
        """Test that only mutes in the past are cleared."""
        expired = SpamRecord(user_id="1", auto_mute_until=NOW - timedelta(seconds=1))
        active = SpamRecord(user_id="2", auto_mute_until=NOW + timedelta(minutes=5))
        unmuted = SpamRecord(user_id="3")
        for record in (expired, active, unmuted):
            db.save_spam_record(record, NOW)

        assert db.clear_expired_mutes(NOW) == 1

        assert db.get_spam_record("1").auto_mute_until is None
        assert db.get_spam_record("2").auto_mute_until == NOW + timedelta(minutes=5)
        assert db.clear_expired_mutes(NOW) == 0

    def test_top_offenders(self, db) -> None:
        db.save_spam_record(SpamRecord(user_id="a", violations=ViolationCounts(flood=1)), NOW)
        db.save_spam_record(SpamRecord(user_id="b", violations=ViolationCounts(flood=2, link_spam=3)), NOW)
        db.save_spam_record(SpamRecord(user_id="c", violations=ViolationCounts(rapid_fire=3)), NOW)
        db.save_spam_record(SpamRecord(user_id="clean"), NOW)

        top = db.get_top_offenders(limit=2)

        assert [r.user_id for r in top] == ["b", "c"]
        assert len(db.get_top_offenders()) == 3

    def test_spam_stats(self, db) -> None:
        db.save_spam_record(SpamRecord(
            user_id="a",
            violations=ViolationCounts(flood=2, link_spam=1),
            auto_mute_until=NOW + timedelta(minutes=5),
        ), NOW)
        db.save_spam_record(SpamRecord(
            user_id="b",
            violations=ViolationCounts(rapid_fire=1),
            auto_mute_until=NOW - timedelta(minutes=5),
        ), NOW)
        db.save_spam_record(SpamRecord(user_id="c", whitelisted=True), NOW)

        stats = db.get_spam_stats(NOW)

        assert stats == {
            "tracked_users": 3,
            "auto_muted": 1,
            "whitelisted": 1,
            "total_violations": 4,
            "total_flood": 2,
            "total_link_spam": 1,
            "total_rapid_fire": 1,
        }

    def test_spam_stats_empty(self, db) -> None:
        stats = db.get_spam_stats(NOW)
        assert stats["tracked_users"] == 0
        assert stats["total_violations"] == 0


class TestSettings:
    """Tests for settings blobs."""

    def test_missing_setting(self, db) -> None:
        assert db.get_setting("spamDetectionConfig") is None

    def test_set_and_replace(self, db) -> None:
        db.set_setting("spamDetectionConfig", {"floodMaxIdentical": 4})
        db.set_setting("spamDetectionConfig", {"floodMaxIdentical": 5, "notifyAdmins": False})

        assert db.get_setting("spamDetectionConfig") == {"floodMaxIdentical": 5, "notifyAdmins": False}


class TestUsers:
    """Tests for users and roles."""

    def test_get_or_create_user(self, db) -> None:
        user = db.get_or_create_user("500", "Viewer")

        assert user["username"] == "Viewer"
        assert user["role"] == "user"

        renamed = db.get_or_create_user("500", "NewName")
        assert renamed["username"] == "NewName"
        assert db.get_user_by_name("@newname")["user_id"] == "500"

    def test_roles(self, db) -> None:
        assert db.get_user_role("500") is None

        db.set_user_role("500", "Viewer", "mod")

        assert db.get_user_role("500") == "mod"

    def test_get_usernames(self, db) -> None:
        db.get_or_create_user("1", "one")
        db.get_or_create_user("2", "two")

        assert db.get_usernames(["1", "2", "3"]) == {"1": "one", "2": "two"}
        assert db.get_usernames([]) == {}


class TestModerationLog:
    """Tests for the moderation log."""

    def test_log_and_read(self, db) -> None:
        db.log_action("SYSTEM", "100", "spam_detected", "flood", "Identical message repeated 3 times",
                      {"mute_applied": True, "level": 1}, timestamp=NOW)
        db.log_action("somemod", "100", "spam_reset", timestamp=NOW + timedelta(seconds=1))

        entries = db.get_recent_actions()
        assert [e["action"] for e in entries] == ["spam_reset", "spam_detected"]

        detected = db.get_recent_actions(action="spam_detected")[0]
        assert detected["actor"] == "SYSTEM"
        assert detected["violation_type"] == "flood"
        assert detected["details"] == {"mute_applied": True, "level": 1}
        assert detected["timestamp"] == NOW

    def test_filter_by_target(self, db) -> None:
        db.log_action("SYSTEM", "1", "spam_detected")
        db.log_action("SYSTEM", "2", "spam_detected")

        assert len(db.get_recent_actions(target_user="2")) == 1
