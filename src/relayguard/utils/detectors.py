"""
Spam detectors.

Three independent classifiers read a user's SpamRecord and the incoming
message and either return None (clean) or a Violation:

- Flood: the same or nearly the same text repeated inside the flood window
- Link spam: too many links, a suspicious link, or too many links over time
- Rapid fire: too many messages inside the rapid-fire window

Detectors never mutate the record. They run in the order above and the
first violation wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from relayguard.utils.spam_record import CONTENT_LIMIT, SpamRecord, ViolationType, utcnow
from relayguard.utils.spam_settings import SpamSettings
from relayguard.utils.text import contains_suspicious_links, extract_urls, preview, similarity


@dataclass(frozen=True)
class Violation:
    """A classified spam event."""
    type: ViolationType
    reason: str
    details: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "reason": self.reason, "details": self.details}


def _window_start(now: datetime, window_ms: int) -> datetime:
    return now - timedelta(milliseconds=window_ms)


def detect_flood(
    settings: SpamSettings,
    record: SpamRecord,
    text: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[Violation]:
    """
    Detect repeated identical or near-identical messages.

    Exact repeats and near repeats are counted separately but compared
    against the same ``flood_max_identical`` threshold.
    """
    if not settings.flood_enabled:
        return None
    if not text or not text.strip():
        return None

    now = now or utcnow()
    recent = record.messages_since(_window_start(now, settings.flood_time_window))

    # Stored content is cut to CONTENT_LIMIT
    compared = text[:CONTENT_LIMIT]
    identical_count = 0
    similar_count = 0
    for message in recent:
        score = similarity(compared, message.content)
        if score == 1.0:
            identical_count += 1
        elif score >= settings.flood_similarity_threshold:
            similar_count += 1

    if identical_count >= settings.flood_max_identical:
        return Violation(
            type=ViolationType.FLOOD,
            reason=f"Identical message repeated {identical_count + 1} times",
            details=preview(text),
        )

    if similar_count >= settings.flood_max_identical:
        return Violation(
            type=ViolationType.FLOOD,
            reason=f"Similar messages repeated {similar_count + 1} times",
            details=preview(text),
        )

    return None


def detect_link_spam(
    settings: SpamSettings,
    record: SpamRecord,
    text: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[Violation]:
    """
    Detect link spam.

    Checked in order: link count of this message, suspicious links in
    this message, then links across the user's recent messages.
    """
    if not settings.link_spam_enabled:
        return None
    if not text:
        return None

    urls = extract_urls(text)
    shown = ", ".join(urls[:3])

    if len(urls) > settings.link_spam_max_links:
        return Violation(
            type=ViolationType.LINK_SPAM,
            reason=f"Message contains {len(urls)} links (max {settings.link_spam_max_links})",
            details=shown,
        )

    if contains_suspicious_links(text):
        return Violation(
            type=ViolationType.LINK_SPAM,
            reason="Message contains suspicious link",
            details=shown,
        )

    if urls:
        now = now or utcnow()
        cutoff = _window_start(now, settings.link_spam_time_window)
        historical = sum(
            len(extract_urls(message.content))
            for message in record.messages_since(cutoff)
            if message.has_links
        )
        total = historical + len(urls)

        if total > settings.link_spam_max_links_in_window:
            window_seconds = settings.link_spam_time_window // 1000
            return Violation(
                type=ViolationType.LINK_SPAM,
                reason=f"Too many links in {window_seconds}s ({total} links)",
                details=f"Current: {len(urls)}, Recent: {historical}",
            )

    return None


def detect_rapid_fire(
    settings: SpamSettings,
    record: SpamRecord,
    text: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Violation]:
    """Detect burst messaging. The message text is not used."""
    if not settings.rapid_fire_enabled:
        return None

    now = now or utcnow()
    count = record.timestamps_since(_window_start(now, settings.rapid_fire_time_window))

    if count >= settings.rapid_fire_max_messages:
        window_seconds = settings.rapid_fire_time_window // 1000
        return Violation(
            type=ViolationType.RAPID_FIRE,
            reason=f"{count + 1} messages in {window_seconds}s",
            details=f"Max allowed: {settings.rapid_fire_max_messages}",
        )

    return None


Detector = Callable[[SpamSettings, SpamRecord, Optional[str], Optional[datetime]], Optional[Violation]]

DETECTORS: tuple[Detector, ...] = (detect_flood, detect_link_spam, detect_rapid_fire)


def run_detectors(
    settings: SpamSettings,
    record: SpamRecord,
    text: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[Violation]:
    """Run all detectors in order and return the first violation."""
    now = now or utcnow()
    for detector in DETECTORS:
        violation = detector(settings, record, text, now)
        if violation is not None:
            return violation
    return None
