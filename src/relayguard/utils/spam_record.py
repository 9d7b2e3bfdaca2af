"""
Per-user spam record.

One SpamRecord exists per chat user. It carries:
- Violation counters per type
- Auto-mute escalation state
- A bounded violation history (audit trail)
- Bounded buffers of recent messages and message timestamps that the
  detectors read

Buffers are fixed-capacity rings (``deque(maxlen=...)``): appending to a
full ring evicts the oldest entry, and time-based trimming only pops from
the head.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

HISTORY_LIMIT = 20
RECENT_MESSAGES_LIMIT = 10
TIMESTAMPS_LIMIT = 60
CONTENT_LIMIT = 200

RECENT_MESSAGES_MAX_AGE = timedelta(minutes=5)
TIMESTAMPS_MAX_AGE = timedelta(minutes=1)


class ViolationType(Enum):
    """Spam violation categories, valued by their external names."""
    FLOOD = "flood"
    LINK_SPAM = "linkSpam"
    RAPID_FIRE = "rapidFire"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as a UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ViolationCounts:
    """Violation counters. ``total`` always equals the sum of the three types."""
    flood: int = 0
    link_spam: int = 0
    rapid_fire: int = 0

    @property
    def total(self) -> int:
        return self.flood + self.link_spam + self.rapid_fire

    def increment(self, violation_type: ViolationType) -> None:
        if violation_type is ViolationType.FLOOD:
            self.flood += 1
        elif violation_type is ViolationType.LINK_SPAM:
            self.link_spam += 1
        else:
            self.rapid_fire += 1

    def reset(self) -> None:
        self.flood = 0
        self.link_spam = 0
        self.rapid_fire = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "flood": self.flood,
            "linkSpam": self.link_spam,
            "rapidFire": self.rapid_fire,
            "total": self.total,
        }


@dataclass(frozen=True)
class ViolationEntry:
    """One entry of the violation history."""
    type: ViolationType
    timestamp: datetime
    details: str = ""
    mute_applied: bool = False
    mute_duration: int = 0  # milliseconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": to_iso(self.timestamp),
            "details": self.details,
            "muteApplied": self.mute_applied,
            "muteDuration": self.mute_duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ViolationEntry:
        return cls(
            type=ViolationType(data["type"]),
            timestamp=from_iso(data["timestamp"]) or utcnow(),
            details=data.get("details", ""),
            mute_applied=bool(data.get("muteApplied", False)),
            mute_duration=int(data.get("muteDuration", 0)),
        )


@dataclass(frozen=True)
class TrackedMessage:
    """A recently seen message, truncated for storage."""
    content: str
    timestamp: datetime
    has_links: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
            "hasLinks": self.has_links,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedMessage:
        return cls(
            content=data.get("content") or "",
            timestamp=from_iso(data["timestamp"]) or utcnow(),
            has_links=bool(data.get("hasLinks", False)),
        )


def _ring(limit: int, items: Any = ()) -> deque:
    return deque(items, maxlen=limit)


@dataclass
class SpamRecord:
    """
    Durable spam state of a single user.

    A mute is active while ``now < auto_mute_until``. ``auto_mute_level``
    only moves up through violations and only moves down through admin
    resets; clearing the mute timer alone keeps the level.
    """

    user_id: str
    violations: ViolationCounts = field(default_factory=ViolationCounts)
    auto_mute_until: Optional[datetime] = None
    auto_mute_level: int = 0
    violation_history: deque = field(default_factory=lambda: _ring(HISTORY_LIMIT))
    recent_messages: deque = field(default_factory=lambda: _ring(RECENT_MESSAGES_LIMIT))
    message_timestamps: deque = field(default_factory=lambda: _ring(TIMESTAMPS_LIMIT))
    whitelisted: bool = False
    whitelisted_by: Optional[str] = None
    whitelisted_at: Optional[datetime] = None
    last_reset: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # ==================== Mute State ====================

    def is_auto_muted(self, now: Optional[datetime] = None) -> bool:
        if self.auto_mute_until is None:
            return False
        return (now or utcnow()) < self.auto_mute_until

    def auto_mute_remaining(self, now: Optional[datetime] = None) -> timedelta:
        if self.auto_mute_until is None:
            return timedelta(0)
        return max(timedelta(0), self.auto_mute_until - (now or utcnow()))

    # ==================== Buffers ====================

    def track_message(
        self,
        content: str,
        has_links: bool,
        now: Optional[datetime] = None,
        timestamp_max_age: timedelta = TIMESTAMPS_MAX_AGE,
    ) -> None:
        """
        Append a message to the rolling buffers.

        ``timestamp_max_age`` is how far back message timestamps are kept;
        callers pass the rapid-fire window when it is longer than a minute.
        """
        now = now or utcnow()
        self.clean_old_data(now, timestamp_max_age)
        self.recent_messages.append(
            TrackedMessage(content=(content or "")[:CONTENT_LIMIT], timestamp=now, has_links=has_links)
        )
        self.message_timestamps.append(now)

    def clean_old_data(
        self,
        now: Optional[datetime] = None,
        timestamp_max_age: timedelta = TIMESTAMPS_MAX_AGE,
    ) -> None:
        """Drop messages older than 5 minutes and timestamps older than ``timestamp_max_age``."""
        now = now or utcnow()
        message_cutoff = now - RECENT_MESSAGES_MAX_AGE
        timestamp_cutoff = now - max(TIMESTAMPS_MAX_AGE, timestamp_max_age)

        while self.recent_messages and self.recent_messages[0].timestamp <= message_cutoff:
            self.recent_messages.popleft()
        while self.message_timestamps and self.message_timestamps[0] <= timestamp_cutoff:
            self.message_timestamps.popleft()

    def messages_since(self, cutoff: datetime) -> list[TrackedMessage]:
        return [msg for msg in self.recent_messages if msg.timestamp > cutoff]

    def timestamps_since(self, cutoff: datetime) -> int:
        return sum(1 for ts in self.message_timestamps if ts > cutoff)

    def add_history(self, entry: ViolationEntry) -> None:
        self.violation_history.append(entry)

    # ==================== Serialization ====================

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "violations": self.violations.to_dict(),
            "autoMuteUntil": to_iso(self.auto_mute_until),
            "autoMuteLevel": self.auto_mute_level,
            "violationHistory": [entry.to_dict() for entry in self.violation_history],
            "recentMessages": [msg.to_dict() for msg in self.recent_messages],
            "messageTimestamps": [to_iso(ts) for ts in self.message_timestamps],
            "whitelisted": self.whitelisted,
            "whitelistedBy": self.whitelisted_by,
            "whitelistedAt": to_iso(self.whitelisted_at),
            "lastReset": to_iso(self.last_reset),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpamRecord:
        counts = data.get("violations") or {}
        return cls(
            user_id=str(data["userId"]),
            violations=ViolationCounts(
                flood=int(counts.get("flood", 0)),
                link_spam=int(counts.get("linkSpam", 0)),
                rapid_fire=int(counts.get("rapidFire", 0)),
            ),
            auto_mute_until=from_iso(data.get("autoMuteUntil")),
            auto_mute_level=max(0, int(data.get("autoMuteLevel", 0))),
            violation_history=_ring(
                HISTORY_LIMIT,
                (ViolationEntry.from_dict(e) for e in data.get("violationHistory") or []),
            ),
            recent_messages=_ring(
                RECENT_MESSAGES_LIMIT,
                (TrackedMessage.from_dict(m) for m in data.get("recentMessages") or []),
            ),
            message_timestamps=_ring(
                TIMESTAMPS_LIMIT,
                (from_iso(ts) for ts in data.get("messageTimestamps") or [] if ts),
            ),
            whitelisted=bool(data.get("whitelisted", False)),
            whitelisted_by=data.get("whitelistedBy"),
            whitelisted_at=from_iso(data.get("whitelistedAt")),
            last_reset=from_iso(data.get("lastReset")),
            created_at=from_iso(data.get("createdAt")),
            updated_at=from_iso(data.get("updatedAt")),
        )
