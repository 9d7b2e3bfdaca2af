"""
SQLite database manager for RelayGuard.

Handles:
- Per-user spam records
- Runtime settings blobs
- Chat users and their roles
- The moderation/audit log
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator, Optional

from relayguard.utils.logging import get_logger
from relayguard.utils.spam_record import SpamRecord, from_iso, to_iso, utcnow

logger = get_logger(__name__)

# Roles exempt from every spam check
EXEMPT_ROLES = frozenset({"admin", "mod", "whitelist"})


class DatabaseManager:
    """
    SQLite database manager.

    Every operation opens its own short-lived connection, so the manager
    can be shared between threads.
    """

    def __init__(self, db_path: str | Path = "data/relayguard.db", timeout: float = 5.0) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()
        logger.info("Database initialized at %s", self.db_path)

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with automatic cleanup.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error("Database error: %s", e)
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize database tables."""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            # Spam state, one row per user
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS spam_records (
                    user_id TEXT PRIMARY KEY,
                    flood INTEGER DEFAULT 0,
                    link_spam INTEGER DEFAULT 0,
                    rapid_fire INTEGER DEFAULT 0,
                    total INTEGER DEFAULT 0,
                    auto_mute_until TEXT,
                    auto_mute_level INTEGER DEFAULT 0,
                    violation_history TEXT DEFAULT '[]',
                    recent_messages TEXT DEFAULT '[]',
                    message_timestamps TEXT DEFAULT '[]',
                    whitelisted BOOLEAN DEFAULT FALSE,
                    whitelisted_by TEXT,
                    whitelisted_at TEXT,
                    last_reset TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            # Runtime settings blobs
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT
                )
            """)

            # Chat users and roles
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    username TEXT,
                    role TEXT DEFAULT 'user',
                    first_seen TEXT
                )
            """)

            # Moderation/audit log
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS mod_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    target_user TEXT,
                    action TEXT NOT NULL,
                    violation_type TEXT,
                    reason TEXT,
                    details TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_spam_records_total
                ON spam_records(total DESC)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_spam_records_mute
                ON spam_records(auto_mute_until)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_spam_records_whitelisted
                ON spam_records(whitelisted)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_users_username
                ON users(username)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_mod_actions_timestamp
                ON mod_actions(timestamp)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_mod_actions_target
                ON mod_actions(target_user)
            """)

            logger.info("Database tables initialized")

    # ==================== Spam Record Methods ====================

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SpamRecord:
        return SpamRecord.from_dict({
            "userId": row["user_id"],
            "violations": {
                "flood": row["flood"],
                "linkSpam": row["link_spam"],
                "rapidFire": row["rapid_fire"],
            },
            "autoMuteUntil": row["auto_mute_until"],
            "autoMuteLevel": row["auto_mute_level"],
            "violationHistory": json.loads(row["violation_history"] or "[]"),
            "recentMessages": json.loads(row["recent_messages"] or "[]"),
            "messageTimestamps": json.loads(row["message_timestamps"] or "[]"),
            "whitelisted": bool(row["whitelisted"]),
            "whitelistedBy": row["whitelisted_by"],
            "whitelistedAt": row["whitelisted_at"],
            "lastReset": row["last_reset"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        })

    def get_spam_record(self, user_id: str) -> Optional[SpamRecord]:
        """Load a user's spam record, or None if the user was never seen."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM spam_records WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return self._row_to_record(row) if row else None

    def get_or_create_spam_record(self, user_id: str, now: Optional[datetime] = None) -> SpamRecord:
        """Load a user's spam record, creating an empty one on first sight."""
        stamp = to_iso(now or utcnow())
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO spam_records (user_id, last_reset, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, stamp, stamp, stamp)
            )
            cursor.execute("SELECT * FROM spam_records WHERE user_id = ?", (user_id,))
            return self._row_to_record(cursor.fetchone())

    def save_spam_record(self, record: SpamRecord, now: Optional[datetime] = None) -> None:
        """Insert or fully overwrite a user's spam record."""
        record.updated_at = now or utcnow()
        if record.created_at is None:
            record.created_at = record.updated_at
        data = record.to_dict()

        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO spam_records (
                    user_id, flood, link_spam, rapid_fire, total,
                    auto_mute_until, auto_mute_level,
                    violation_history, recent_messages, message_timestamps,
                    whitelisted, whitelisted_by, whitelisted_at,
                    last_reset, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    flood = excluded.flood,
                    link_spam = excluded.link_spam,
                    rapid_fire = excluded.rapid_fire,
                    total = excluded.total,
                    auto_mute_until = excluded.auto_mute_until,
                    auto_mute_level = excluded.auto_mute_level,
                    violation_history = excluded.violation_history,
                    recent_messages = excluded.recent_messages,
                    message_timestamps = excluded.message_timestamps,
                    whitelisted = excluded.whitelisted,
                    whitelisted_by = excluded.whitelisted_by,
                    whitelisted_at = excluded.whitelisted_at,
                    last_reset = excluded.last_reset,
                    updated_at = excluded.updated_at
                """,
                (
                    record.user_id,
                    record.violations.flood,
                    record.violations.link_spam,
                    record.violations.rapid_fire,
                    record.violations.total,
                    data["autoMuteUntil"],
                    record.auto_mute_level,
                    json.dumps(data["violationHistory"]),
                    json.dumps(data["recentMessages"]),
                    json.dumps(data["messageTimestamps"]),
                    record.whitelisted,
                    record.whitelisted_by,
                    data["whitelistedAt"],
                    data["lastReset"],
                    data["createdAt"],
                    data["updatedAt"],
                )
            )

    def get_top_offenders(self, limit: int = 10) -> list[SpamRecord]:
        """Records with the most violations first."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM spam_records
                WHERE total > 0
                ORDER BY total DESC, updated_at DESC
                LIMIT ?
                """,
                (limit,)
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def clear_expired_mutes(self, now: Optional[datetime] = None) -> int:
        """Null every auto-mute timer that has already passed."""
        stamp = to_iso(now or utcnow())
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE spam_records
                SET auto_mute_until = NULL
                WHERE auto_mute_until IS NOT NULL AND auto_mute_until < ?
                """,
                (stamp,)
            )
            return cursor.rowcount

    def get_spam_stats(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Aggregate counts across all spam records."""
        stamp = to_iso(now or utcnow())
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT
                    COUNT(*) AS tracked_users,
                    COALESCE(SUM(CASE WHEN auto_mute_until > ? THEN 1 ELSE 0 END), 0) AS auto_muted,
                    COALESCE(SUM(CASE WHEN whitelisted THEN 1 ELSE 0 END), 0) AS whitelisted,
                    COALESCE(SUM(total), 0) AS total_violations,
                    COALESCE(SUM(flood), 0) AS total_flood,
                    COALESCE(SUM(link_spam), 0) AS total_link_spam,
                    COALESCE(SUM(rapid_fire), 0) AS total_rapid_fire
                FROM spam_records
                """,
                (stamp,)
            )
            return dict(cursor.fetchone())

    # ==================== Settings Methods ====================

    def get_setting(self, key: str) -> Any:
        """Get a stored settings blob, or None."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
            return json.loads(row["value"]) if row else None

    def set_setting(self, key: str, value: Any) -> None:
        """Store a settings blob, replacing any previous value."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO settings (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, json.dumps(value), to_iso(utcnow()))
            )

    # ==================== User Methods ====================

    def get_or_create_user(self, user_id: str, username: str) -> dict[str, Any]:
        """Get or create a user, keeping the username current."""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()

            if row:
                if row["username"] != username:
                    cursor.execute(
                        "UPDATE users SET username = ? WHERE user_id = ?",
                        (username, user_id)
                    )
                    return {**dict(row), "username": username}
                return dict(row)

            cursor.execute(
                """
                INSERT INTO users (user_id, username, role, first_seen)
                VALUES (?, ?, 'user', ?)
                """,
                (user_id, username, to_iso(utcnow()))
            )

            cursor.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
            return dict(cursor.fetchone())

    def get_user_by_name(self, username: str) -> Optional[dict[str, Any]]:
        """Find a user by username (case-insensitive)."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM users WHERE LOWER(username) = LOWER(?)",
                (username.lstrip("@"),)
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_usernames(self, user_ids: list[str]) -> dict[str, str]:
        """Map user IDs to their last known usernames."""
        if not user_ids:
            return {}
        placeholders = ", ".join("?" for _ in user_ids)
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT user_id, username FROM users WHERE user_id IN ({placeholders})",
                list(user_ids)
            )
            return {row["user_id"]: row["username"] for row in cursor.fetchall()}

    def get_user_role(self, user_id: str) -> Optional[str]:
        """Get a user's role, or None for unknown users."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT role FROM users WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return row["role"] if row else None

    def set_user_role(self, user_id: str, username: str, role: str) -> None:
        """Set a user's role, creating the user if needed."""
        self.get_or_create_user(user_id, username)

        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE users SET role = ? WHERE user_id = ?",
                (role, user_id)
            )

    # ==================== Moderation Log Methods ====================

    def log_action(
        self,
        actor: str,
        target_user: Optional[str],
        action: str,
        violation_type: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> int:
        """Append an entry to the moderation log."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO mod_actions
                (timestamp, actor, target_user, action, violation_type, reason, details)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    to_iso(timestamp or utcnow()),
                    actor,
                    target_user,
                    action,
                    violation_type,
                    reason,
                    json.dumps(details or {}),
                )
            )
            return cursor.lastrowid or 0

    def get_recent_actions(
        self,
        limit: int = 10,
        action: Optional[str] = None,
        target_user: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Get recent moderation log entries, newest first."""
        query = "SELECT * FROM mod_actions"
        clauses: list[str] = []
        params: list[Any] = []
        if action:
            clauses.append("action = ?")
            params.append(action)
        if target_user:
            clauses.append("target_user = ?")
            params.append(target_user)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            entries = []
            for row in cursor.fetchall():
                entry = dict(row)
                entry["details"] = json.loads(entry["details"] or "{}")
                entry["timestamp"] = from_iso(entry["timestamp"])
                entries.append(entry)
            return entries


# Global database instance
_db: Optional[DatabaseManager] = None


def get_database(db_path: str | Path | None = None, timeout: float = 5.0) -> DatabaseManager:
    """
    Get the global database manager instance.

    Args:
        db_path: Database file (only used on first call)
        timeout: Busy timeout in seconds (only used on first call)
    """
    global _db
    if _db is None:
        _db = DatabaseManager(db_path or "data/relayguard.db", timeout=timeout)
    return _db
