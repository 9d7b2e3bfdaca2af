"""
Moderation log.

Thin layer over the ``mod_actions`` table that also mirrors every entry to
the application log. Writing to the moderation log never raises: a failed
insert is logged and the caller carries on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from relayguard.utils.logging import get_logger

if TYPE_CHECKING:
    from relayguard.utils.database import DatabaseManager
    from relayguard.utils.detectors import Violation
    from relayguard.utils.escalation import MuteOutcome

logger = get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"
SPAM_DETECTED = "spam_detected"


class ModerationLog:
    """Writes moderation and admin events to the audit table."""

    def __init__(self, db: Optional[DatabaseManager] = None) -> None:
        self.db = db

    def log_moderation(
        self,
        actor: str,
        target_user: Optional[str],
        action: str,
        violation_type: Optional[str] = None,
        reason: Optional[str] = None,
        **details: Any,
    ) -> bool:
        """
        Record one moderation event.

        Args:
            actor: Who acted (``SYSTEM`` for automatic actions)
            target_user: User the action applies to
            action: Event type, e.g. ``spam_detected`` or ``spam_reset``
            violation_type: Violation category, if any
            reason: Human readable reason
            **details: Extra fields stored as JSON

        Returns:
            bool: Whether the entry reached the database
        """
        logger.warning(
            "Moderation action: actor=%s, target=%s, action=%s, reason=%s",
            actor, target_user, action, reason or "-",
        )

        if self.db is None:
            return False

        try:
            self.db.log_action(
                actor=actor,
                target_user=target_user,
                action=action,
                violation_type=violation_type,
                reason=reason,
                details=details,
            )
            return True
        except Exception as e:
            logger.error("Failed to write moderation log for %s: %s", target_user, e)
            return False

    def spam_detected(self, user_id: str, violation: Violation, outcome: MuteOutcome) -> bool:
        """Record an automatic spam detection."""
        return self.log_moderation(
            SYSTEM_ACTOR,
            user_id,
            SPAM_DETECTED,
            violation_type=violation.type.value,
            reason=violation.reason,
            details=violation.details,
            mute_applied=outcome.mute_applied,
            mute_duration=outcome.mute_duration,
            level=outcome.level,
            total_violations=outcome.total_violations,
        )

    def admin_action(
        self,
        actor: str,
        target_user: Optional[str],
        action: str,
        **details: Any,
    ) -> bool:
        """Record an operator command."""
        return self.log_moderation(actor, target_user, action, **details)
