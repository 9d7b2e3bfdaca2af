"""
Runtime spam detection settings.

The thresholds are a closed set of named keys (:class:`SettingKey`).
:class:`SpamSettingsService` keeps the current values in memory as an
immutable :class:`SpamSettings` snapshot, replaces the snapshot on every
update, and persists the whole set as one blob in the settings table.

Readers call :meth:`SpamSettingsService.current` on every message; no
storage round-trip happens on that path.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from relayguard.utils.logging import get_logger

if TYPE_CHECKING:
    from relayguard.utils.database import DatabaseManager

logger = get_logger(__name__)

SETTINGS_BLOB_KEY = "spamDetectionConfig"


class SettingKey(Enum):
    """External (camelCase) names of the spam thresholds."""
    FLOOD_ENABLED = "floodEnabled"
    FLOOD_MAX_IDENTICAL = "floodMaxIdentical"
    FLOOD_SIMILARITY_THRESHOLD = "floodSimilarityThreshold"
    FLOOD_TIME_WINDOW = "floodTimeWindow"
    LINK_SPAM_ENABLED = "linkSpamEnabled"
    LINK_SPAM_MAX_LINKS = "linkSpamMaxLinks"
    LINK_SPAM_MAX_LINKS_IN_WINDOW = "linkSpamMaxLinksInWindow"
    LINK_SPAM_TIME_WINDOW = "linkSpamTimeWindow"
    RAPID_FIRE_ENABLED = "rapidFireEnabled"
    RAPID_FIRE_MAX_MESSAGES = "rapidFireMaxMessages"
    RAPID_FIRE_TIME_WINDOW = "rapidFireTimeWindow"
    AUTO_MUTE_ENABLED = "autoMuteEnabled"
    NOTIFY_ADMINS = "notifyAdmins"

    @property
    def field_name(self) -> str:
        """Attribute name on :class:`SpamSettings`."""
        return self.name.lower()

    @classmethod
    def parse(cls, key: str) -> Optional[SettingKey]:
        """Look up a key by its external name; None if unknown."""
        try:
            return cls(key)
        except ValueError:
            return None


@dataclass(frozen=True)
class SpamSettings:
    """Snapshot of all thresholds. Time windows are in milliseconds."""

    # Flood detection
    flood_enabled: bool = True
    flood_max_identical: int = 3
    flood_similarity_threshold: float = 0.85
    flood_time_window: int = 30 * 1000

    # Link spam detection
    link_spam_enabled: bool = True
    link_spam_max_links: int = 3
    link_spam_max_links_in_window: int = 5
    link_spam_time_window: int = 60 * 1000

    # Rapid-fire detection
    rapid_fire_enabled: bool = True
    rapid_fire_max_messages: int = 10
    rapid_fire_time_window: int = 60 * 1000

    # Auto-mute
    auto_mute_enabled: bool = True
    notify_admins: bool = True

    def get(self, key: SettingKey) -> Any:
        return getattr(self, key.field_name)

    def to_blob(self) -> dict[str, Any]:
        """Values keyed by external name, as stored and shown to operators."""
        return {key.value: self.get(key) for key in SettingKey}


@dataclass(frozen=True)
class SettingRule:
    """Type and allowed range of one setting."""
    kind: type
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    description: str = ""

    @property
    def range_text(self) -> str:
        if self.kind is bool:
            return "true/false"
        return f"{self.minimum:g}-{self.maximum:g}"


SETTING_RULES: dict[SettingKey, SettingRule] = {
    SettingKey.FLOOD_ENABLED: SettingRule(bool, description="Enable flood detection"),
    SettingKey.FLOOD_MAX_IDENTICAL: SettingRule(int, 1, 10, "Max identical or similar messages"),
    SettingKey.FLOOD_SIMILARITY_THRESHOLD: SettingRule(float, 0.5, 1.0, "Similarity ratio counted as flood"),
    SettingKey.FLOOD_TIME_WINDOW: SettingRule(int, 10_000, 120_000, "Flood window in ms"),
    SettingKey.LINK_SPAM_ENABLED: SettingRule(bool, description="Enable link spam detection"),
    SettingKey.LINK_SPAM_MAX_LINKS: SettingRule(int, 1, 10, "Max links per message"),
    SettingKey.LINK_SPAM_MAX_LINKS_IN_WINDOW: SettingRule(int, 1, 20, "Max links in window"),
    SettingKey.LINK_SPAM_TIME_WINDOW: SettingRule(int, 10_000, 300_000, "Link window in ms"),
    SettingKey.RAPID_FIRE_ENABLED: SettingRule(bool, description="Enable rapid-fire detection"),
    SettingKey.RAPID_FIRE_MAX_MESSAGES: SettingRule(int, 5, 30, "Max messages in window"),
    SettingKey.RAPID_FIRE_TIME_WINDOW: SettingRule(int, 10_000, 120_000, "Rapid-fire window in ms"),
    SettingKey.AUTO_MUTE_ENABLED: SettingRule(bool, description="Apply escalating auto-mutes"),
    SettingKey.NOTIFY_ADMINS: SettingRule(bool, description="Announce violations in chat"),
}


def coerce_value(key: SettingKey, value: Any) -> Any:
    """
    Convert a value to the type of ``key`` and check its range.

    Raises:
        ValueError: If the value has the wrong type or is out of range
    """
    rule = SETTING_RULES[key]

    if rule.kind is bool:
        if isinstance(value, bool):
            return value
        raise ValueError(f"{key.value} must be true or false")

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key.value} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{key.value} must be a finite number")
    if rule.kind is int and isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{key.value} must be a whole number")

    if not rule.minimum <= value <= rule.maximum:
        raise ValueError(f"{key.value} must be between {rule.range_text}")
    return int(value) if rule.kind is int else float(value)


def parse_value(raw: str) -> Any:
    """Parse operator text input: true/false, numbers, anything else stays a string."""
    text = raw.strip()
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        number = float(text)
    except ValueError:
        return text
    return int(number) if number.is_integer() and "." not in text else number


class SpamSettingsService:
    """
    In-memory settings cache backed by the settings table.

    The snapshot reference is swapped under a write lock; reads take no
    lock.
    """

    def __init__(self, db: Optional[DatabaseManager] = None) -> None:
        self.db = db
        self._settings = SpamSettings()
        self._write_lock = threading.Lock()

    def current(self) -> SpamSettings:
        return self._settings

    def as_dict(self) -> dict[str, Any]:
        return self._settings.to_blob()

    def load(self) -> SpamSettings:
        """
        Refresh the cache from storage, merged over defaults.

        Unknown stored keys are ignored and invalid stored values keep
        their default. On storage errors the current snapshot is kept.
        """
        if self.db is None:
            return self._settings

        try:
            blob = self.db.get_setting(SETTINGS_BLOB_KEY)
        except Exception as e:
            logger.error("Failed to load spam detection config: %s", e)
            return self._settings

        changes: dict[str, Any] = {}
        if isinstance(blob, dict):
            for raw_key, raw_value in blob.items():
                key = SettingKey.parse(raw_key)
                if key is None:
                    logger.debug("Ignoring unknown stored setting %s", raw_key)
                    continue
                try:
                    changes[key.field_name] = coerce_value(key, raw_value)
                except ValueError as e:
                    logger.warning("Ignoring stored setting: %s", e)

        with self._write_lock:
            self._settings = replace(SpamSettings(), **changes)
        logger.info("Spam detection config loaded (%d stored values)", len(changes))
        return self._settings

    def save(self) -> bool:
        """Persist the whole snapshot."""
        if self.db is None:
            return True
        try:
            self.db.set_setting(SETTINGS_BLOB_KEY, self._settings.to_blob())
            return True
        except Exception as e:
            logger.error("Failed to save spam detection config: %s", e)
            return False

    def update(self, key: str, value: Any) -> bool:
        """
        Set one threshold and persist it.

        Args:
            key: External key name, e.g. ``floodMaxIdentical``
            value: New value (bool for flags, number otherwise)

        Returns:
            bool: False for unknown keys, invalid values, or when the
            value could not be persisted (the previous value is kept)
        """
        setting = SettingKey.parse(key)
        if setting is None:
            logger.warning("Rejected unknown spam setting %s", key)
            return False

        try:
            coerced = coerce_value(setting, value)
        except ValueError as e:
            logger.warning("Rejected spam setting update: %s", e)
            return False

        with self._write_lock:
            previous = self._settings
            self._settings = replace(previous, **{setting.field_name: coerced})
            if not self.save():
                self._settings = previous
                return False

        logger.info("Spam setting %s updated to %s", key, coerced)
        return True
