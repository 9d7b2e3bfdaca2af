"""
Escalating auto-mute policy.

Every violation that is allowed to mute raises the user's level by one
and mutes for the duration of the new level:

- Level 1: 5 minutes
- Level 2: 15 minutes
- Level 3: 1 hour
- Level 4: 24 hours
- Level 5+: 7 days

Levels never decay on their own. Only an admin reset lowers them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from relayguard.utils.logging import get_logger
from relayguard.utils.spam_record import SpamRecord, ViolationEntry, ViolationType, to_iso, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class MuteOutcome:
    """Result of recording a violation."""
    mute_applied: bool
    mute_duration: int  # milliseconds, 0 when no mute
    mute_until: Optional[datetime]
    level: int
    total_violations: int

    @property
    def duration(self) -> timedelta:
        return timedelta(milliseconds=self.mute_duration)

    def to_dict(self) -> dict[str, Any]:
        return {
            "muteApplied": self.mute_applied,
            "muteDuration": self.mute_duration,
            "muteUntil": to_iso(self.mute_until),
            "level": self.level,
            "totalViolations": self.total_violations,
        }


class EscalationPolicy:
    """
    Applies violations to SpamRecords.

    The policy only mutates the record; persisting it is up to the caller.
    """

    DEFAULT_ESCALATION: dict[int, timedelta] = {
        1: timedelta(minutes=5),
        2: timedelta(minutes=15),
        3: timedelta(hours=1),
        4: timedelta(hours=24),
    }
    MAX_DURATION = timedelta(days=7)

    def __init__(self, escalation: Optional[dict[int, timedelta]] = None) -> None:
        self.escalation = dict(escalation or self.DEFAULT_ESCALATION)

    def mute_duration_for_level(self, level: int) -> timedelta:
        """Mute duration for an escalation level; flat above the table."""
        if level < 1:
            return timedelta(0)
        return self.escalation.get(level, self.MAX_DURATION)

    def add_violation(
        self,
        record: SpamRecord,
        violation_type: ViolationType,
        details: str = "",
        auto_mute_enabled: bool = True,
        now: Optional[datetime] = None,
    ) -> MuteOutcome:
        """
        Count a violation and escalate the mute.

        Args:
            record: The offender's record
            violation_type: Violation category
            details: Free text stored in the history entry
            auto_mute_enabled: Whether a mute may be applied
            now: Current time

        Returns:
            MuteOutcome: Mute decision and the updated counters
        """
        now = now or utcnow()
        record.violations.increment(violation_type)

        mute_applied = False
        mute_duration = timedelta(0)
        mute_until = None

        if auto_mute_enabled and not record.whitelisted:
            record.auto_mute_level += 1
            mute_duration = self.mute_duration_for_level(record.auto_mute_level)
            mute_until = now + mute_duration
            record.auto_mute_until = mute_until
            mute_applied = True

        duration_ms = int(mute_duration.total_seconds() * 1000)
        record.add_history(ViolationEntry(
            type=violation_type,
            timestamp=now,
            details=details,
            mute_applied=mute_applied,
            mute_duration=duration_ms,
        ))

        logger.debug(
            "Violation recorded: user=%s, type=%s, level=%d, muted=%s",
            record.user_id, violation_type.value, record.auto_mute_level, mute_applied,
        )

        return MuteOutcome(
            mute_applied=mute_applied,
            mute_duration=duration_ms,
            mute_until=mute_until,
            level=record.auto_mute_level,
            total_violations=record.violations.total,
        )

    def reset_violations(self, record: SpamRecord, now: Optional[datetime] = None) -> None:
        """Zero the counters and step the level down by one."""
        record.violations.reset()
        record.auto_mute_level = max(0, record.auto_mute_level - 1)
        record.last_reset = now or utcnow()

    def clear_auto_mute(self, record: SpamRecord, reset_violations: bool = False) -> None:
        """
        Lift the mute timer.

        With ``reset_violations`` the counters and the level are zeroed
        too; without it the level is kept, so the next violation continues
        from where the user left off.
        """
        record.auto_mute_until = None
        if reset_violations:
            record.auto_mute_level = 0
            record.violations.reset()
