"""
Text analysis helpers used by the spam detectors.

Provides:
- Edit-distance similarity between two messages
- URL extraction
- Suspicious URL classification

The URL tables below are fixed heuristics. They are meant to be tuned
by editing them, they do not learn from traffic.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

# Bare domains are only recognised with one of these TLDs
URL_PATTERN = re.compile(
    r"https?://[^\s]+"
    r"|www\.[^\s]+"
    r"|[a-zA-Z0-9.-]+\.(?:com|net|org|io|co|app|me|tv|gg)[^\s]*",
    re.IGNORECASE,
)

URL_SHORTENERS: frozenset[str] = frozenset({
    "bit.ly", "tinyurl.com", "goo.gl", "t.co", "ow.ly",
    "is.gd", "buff.ly", "adf.ly", "j.mp", "rb.gy",
    "cutt.ly", "shorturl.at", "tiny.cc", "bc.vc",
})

# Hosts whose links are invitations into another chat
INVITE_HOSTS: frozenset[str] = frozenset({
    "discord.gg", "t.me", "telegram.me",
})

# Host + path prefixes for invite links on otherwise normal domains
INVITE_PATHS: tuple[tuple[str, str], ...] = (
    ("discord.com", "/invite"),
    ("discordapp.com", "/invite"),
)

SUSPICIOUS_TLDS: frozenset[str] = frozenset({
    "ru", "cn", "tk", "ml", "ga", "cf", "gq",
})

CLICKBAIT_KEYWORDS = re.compile(r"free|win|prize|click|download", re.IGNORECASE)


def levenshtein(a: str, b: str) -> int:
    """
    Classic dynamic-programming edit distance.

    Only two rows of the matrix are kept.
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                current[j - 1] + 1,  # insertion
                previous[j] + 1,  # deletion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: str | None, b: str | None) -> float:
    """
    Normalized similarity of two messages in [0, 1].

    Comparison is case-insensitive on trimmed text. Identical strings
    score 1.0, an empty input scores 0.0, otherwise
    ``1 - distance / max(len(a), len(b))``.

    Args:
        a: First message
        b: Second message

    Returns:
        float: Similarity score
    """
    if not a or not b:
        return 0.0

    s1 = a.lower().strip()
    s2 = b.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0

    distance = levenshtein(s1, s2)
    return 1.0 - distance / max(len(s1), len(s2))


def extract_urls(text: str | None) -> list[str]:
    """
    Extract URLs from a message.

    Order is preserved and duplicates are kept, since callers count links.
    """
    if not text:
        return []
    return [match.group(0) for match in URL_PATTERN.finditer(text)]


def _split_url(url: str) -> tuple[str, str]:
    """Return (host, path) for a URL that may lack a scheme."""
    candidate = url if re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", url) else f"http://{url}"
    try:
        parts = urlsplit(candidate)
        host = (parts.hostname or "").lower()
    except ValueError:
        return "", ""
    if host.startswith("www."):
        host = host[4:]
    return host, parts.path.lower()


def _host_matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


def is_suspicious_url(url: str) -> bool:
    """
    Check a URL against the shortener, invite, TLD and keyword tables.

    Args:
        url: URL as returned by :func:`extract_urls`

    Returns:
        bool: True if any table matches
    """
    if not url:
        return False

    host, path = _split_url(url)
    if not host:
        return False

    if any(_host_matches(host, shortener) for shortener in URL_SHORTENERS):
        return True

    if any(_host_matches(host, invite) for invite in INVITE_HOSTS):
        return True

    for domain, prefix in INVITE_PATHS:
        if _host_matches(host, domain) and path.startswith(prefix):
            return True

    if host.rsplit(".", 1)[-1] in SUSPICIOUS_TLDS:
        return True

    return bool(CLICKBAIT_KEYWORDS.search(host + path))


def contains_suspicious_links(text: str | None) -> bool:
    """Check whether any URL in the message is suspicious."""
    return any(is_suspicious_url(url) for url in extract_urls(text))


def preview(text: str | None, limit: int = 50) -> str:
    """Quoted, truncated message preview for violation details."""
    content = (text or "")[:limit]
    return f'Message: "{content}..."'
