"""
Spam engine.

Entry point for everything spam related. The chat pipeline calls
:meth:`SpamEngine.process_message` for every inbound message; operator
commands use the query and admin methods.

Every public method catches its own errors, logs them, and returns a safe
default. A broken database degrades to "no spam filtering", never to
blocked chat.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional

from relayguard.utils.database import EXEMPT_ROLES, get_database
from relayguard.utils.detectors import Violation, run_detectors
from relayguard.utils.escalation import EscalationPolicy, MuteOutcome
from relayguard.utils.locks import LockTimeout, UserLockRegistry
from relayguard.utils.logging import clip, get_logger
from relayguard.utils.modlog import ModerationLog
from relayguard.utils.spam_record import SpamRecord, utcnow
from relayguard.utils.spam_settings import SpamSettingsService
from relayguard.utils.text import extract_urls

if TYPE_CHECKING:
    from relayguard.utils.database import DatabaseManager

logger = get_logger(__name__)

RoleLookup = Callable[[str], Optional[str]]
Clock = Callable[[], datetime]


@dataclass(frozen=True)
class HandleResult:
    """What happened to a message that tripped a detector."""
    blocked: bool
    violation: Optional[Violation] = None
    outcome: Optional[MuteOutcome] = None

    @property
    def mute_applied(self) -> bool:
        return self.outcome is not None and self.outcome.mute_applied


class SpamEngine:
    """
    Per-message spam checks plus the admin operations on spam records.

    Each read-modify-write of a user's record runs under that user's lock;
    different users never block each other.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Optional[SpamSettingsService] = None,
        modlog: Optional[ModerationLog] = None,
        role_lookup: Optional[RoleLookup] = None,
        policy: Optional[EscalationPolicy] = None,
        lock_timeout: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Args:
            db: Storage for spam records
            settings: Threshold cache (defaults when omitted)
            modlog: Audit log sink
            role_lookup: Returns a user's role, or None for unknown users
            policy: Escalation table
            lock_timeout: Seconds to wait for a user's lock; None waits forever
            clock: Returns the current UTC time
        """
        self.db = db
        self.settings = settings or SpamSettingsService(db)
        self.modlog = modlog or ModerationLog(db)
        self.role_lookup: RoleLookup = role_lookup or db.get_user_role
        self.policy = policy or EscalationPolicy()
        self.locks = UserLockRegistry(timeout=lock_timeout)
        self._clock: Clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _has_exempt_role(self, user_id: str) -> bool:
        role = self.role_lookup(user_id)
        return role is not None and role.lower() in EXEMPT_ROLES

    # ==================== Message Pipeline ====================

    def check_spam(self, user_id: str, text: Optional[str]) -> Optional[Violation]:
        """
        Classify an inbound message. Never raises.

        Whitelisted users and users with an exempt role are always clean.

        Returns:
            The first violation found, or None
        """
        try:
            with self.locks.hold(user_id):
                now = self._now()
                record = self.db.get_spam_record(user_id)

                if record is not None and record.whitelisted:
                    return None
                if self._has_exempt_role(user_id):
                    return None

                if record is None:
                    record = SpamRecord(user_id=user_id)

                violation = run_detectors(self.settings.current(), record, text, now)
                if violation:
                    logger.info(
                        "Spam detected: user=%s, type=%s, reason=%s",
                        user_id, violation.type.value, violation.reason,
                    )
                return violation
        except LockTimeout as e:
            logger.warning("Spam check skipped: %s", e)
            return None
        except Exception as e:
            logger.error("Spam check failed for %s: %s", user_id, e)
            return None

    def handle_violation(self, user_id: str, violation: Violation) -> HandleResult:
        """
        Record a violation, escalate the mute, and write the audit entry.

        Whitelisted users get ``blocked=False`` and nothing is recorded.
        """
        try:
            with self.locks.hold(user_id):
                now = self._now()
                record = self.db.get_or_create_spam_record(user_id, now)

                if record.whitelisted:
                    logger.debug("Ignoring violation of whitelisted user %s", user_id)
                    return HandleResult(blocked=False, violation=violation)

                outcome = self.policy.add_violation(
                    record,
                    violation.type,
                    violation.details,
                    auto_mute_enabled=self.settings.current().auto_mute_enabled,
                    now=now,
                )
                self.db.save_spam_record(record, now)
        except LockTimeout as e:
            logger.warning("Violation not recorded: %s", e)
            return HandleResult(blocked=False, violation=violation)
        except Exception as e:
            logger.error("Failed to handle violation for %s: %s", user_id, e)
            return HandleResult(blocked=False, violation=violation)

        self.modlog.spam_detected(user_id, violation, outcome)
        if outcome.mute_applied:
            logger.warning(
                "User %s auto-muted for %s (level %d, %d violations)",
                user_id, outcome.duration, outcome.level, outcome.total_violations,
            )
        return HandleResult(blocked=True, violation=violation, outcome=outcome)

    def track_message(self, user_id: str, text: Optional[str]) -> bool:
        """Append a message to the user's rolling buffers."""
        try:
            with self.locks.hold(user_id):
                now = self._now()
                record = self.db.get_or_create_spam_record(user_id, now)
                content = text or ""
                rapid_window = timedelta(milliseconds=self.settings.current().rapid_fire_time_window)
                record.track_message(content, bool(extract_urls(content)), now, timestamp_max_age=rapid_window)
                self.db.save_spam_record(record, now)
                return True
        except LockTimeout as e:
            logger.warning("Message not tracked: %s", e)
            return False
        except Exception as e:
            logger.error("Failed to track message for %s: %s", user_id, e)
            return False

    def process_message(self, user_id: str, text: Optional[str]) -> Optional[HandleResult]:
        """
        Check, handle, and track one message under a single lock hold.

        The message is tracked whether or not it was blocked.

        Returns:
            HandleResult when a detector fired, otherwise None
        """
        try:
            with self.locks.hold(user_id):
                violation = self.check_spam(user_id, text)
                result = self.handle_violation(user_id, violation) if violation else None
                self.track_message(user_id, text)
                return result
        except LockTimeout as e:
            logger.warning("Message passed unchecked: %s", e)
            return None

    # ==================== Mute State ====================

    def is_auto_muted(self, user_id: str) -> bool:
        try:
            record = self.db.get_spam_record(user_id)
            return record is not None and record.is_auto_muted(self._now())
        except Exception as e:
            logger.error("Failed to read mute state for %s: %s", user_id, e)
            return False

    def get_auto_mute_remaining(self, user_id: str) -> timedelta:
        try:
            record = self.db.get_spam_record(user_id)
            if record is None:
                return timedelta(0)
            return record.auto_mute_remaining(self._now())
        except Exception as e:
            logger.error("Failed to read mute state for %s: %s", user_id, e)
            return timedelta(0)

    def clear_auto_mute(self, user_id: str, reset_violations: bool = False) -> bool:
        """Lift a user's mute; optionally zero their counters and level."""
        try:
            with self.locks.hold(user_id):
                record = self.db.get_spam_record(user_id)
                if record is None:
                    return False
                self.policy.clear_auto_mute(record, reset_violations)
                self.db.save_spam_record(record, self._now())
        except Exception as e:
            logger.error("Failed to clear auto-mute for %s: %s", user_id, e)
            return False

        logger.info("Auto-mute cleared for %s (reset=%s)", user_id, reset_violations)
        return True

    def clean_expired_mutes(self) -> int:
        """Null every mute timer that has passed. Returns the number cleared."""
        try:
            cleared = self.db.clear_expired_mutes(self._now())
        except Exception as e:
            logger.error("Failed to clean expired mutes: %s", e)
            return 0

        if cleared:
            logger.info("Cleared %d expired auto-mutes", cleared)
        return cleared

    # ==================== Admin Operations ====================

    def whitelist(self, user_id: str, by_whom: str) -> bool:
        try:
            with self.locks.hold(user_id):
                now = self._now()
                record = self.db.get_or_create_spam_record(user_id, now)
                record.whitelisted = True
                record.whitelisted_by = by_whom
                record.whitelisted_at = now
                self.db.save_spam_record(record, now)
        except Exception as e:
            logger.error("Failed to whitelist %s: %s", user_id, e)
            return False

        logger.info("User %s spam-whitelisted by %s", user_id, by_whom)
        return True

    def unwhitelist(self, user_id: str) -> bool:
        try:
            with self.locks.hold(user_id):
                record = self.db.get_spam_record(user_id)
                if record is None:
                    return False
                record.whitelisted = False
                record.whitelisted_by = None
                record.whitelisted_at = None
                self.db.save_spam_record(record, self._now())
        except Exception as e:
            logger.error("Failed to unwhitelist %s: %s", user_id, e)
            return False

        logger.info("User %s removed from spam whitelist", user_id)
        return True

    def reset_violations(self, user_id: str) -> bool:
        """Zero the counters and lower the escalation level by one."""
        try:
            with self.locks.hold(user_id):
                record = self.db.get_spam_record(user_id)
                if record is None:
                    return False
                now = self._now()
                self.policy.reset_violations(record, now)
                self.db.save_spam_record(record, now)
        except Exception as e:
            logger.error("Failed to reset violations for %s: %s", user_id, e)
            return False

        logger.info("Violations reset for %s", user_id)
        return True

    def get_record(self, user_id: str) -> Optional[SpamRecord]:
        try:
            return self.db.get_spam_record(user_id)
        except Exception as e:
            logger.error("Failed to load spam record for %s: %s", user_id, e)
            return None

    def get_top_offenders(self, limit: int = 10) -> list[SpamRecord]:
        try:
            return self.db.get_top_offenders(limit)
        except Exception as e:
            logger.error("Failed to load top offenders: %s", e)
            return []

    def get_stats(self) -> dict[str, int]:
        """Tracked users, active mutes, whitelisted users, and per-type totals."""
        try:
            return self.db.get_spam_stats(self._now())
        except Exception as e:
            logger.error("Failed to load spam stats: %s", e)
            return {}

    # ==================== Configuration ====================

    def get_config(self) -> dict[str, Any]:
        return self.settings.as_dict()

    def update_config(self, key: str, value: Any) -> bool:
        try:
            return self.settings.update(key, value)
        except Exception as e:
            logger.error("Failed to update spam setting %s=%s: %s", key, clip(str(value)), e)
            return False


# Global engine instance
_engine: Optional[SpamEngine] = None


def get_spam_engine(
    db: Optional[DatabaseManager] = None,
    lock_timeout: Optional[float] = None,
) -> SpamEngine:
    """
    Get the global spam engine, loading stored settings on first use.

    Args:
        db: Database to use (only used on first call)
        lock_timeout: Per-user lock wait in seconds (only used on first call)
    """
    global _engine
    if _engine is None:
        if db is None:
            db = get_database()
        settings = SpamSettingsService(db)
        settings.load()
        _engine = SpamEngine(db, settings=settings, lock_timeout=lock_timeout)
    return _engine
