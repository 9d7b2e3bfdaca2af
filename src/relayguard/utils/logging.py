"""
Logging setup for RelayGuard.

Provides:
- A filter that redacts bot credentials from every record
- Colored console output (TTY only) plus an optional log file
- Namespaced loggers under ``relayguard``
- A helper to keep chat content short in log lines
"""

from __future__ import annotations

import logging
import re
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relayguard.config import Config

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
REDACTED = "[REDACTED]"


class SecretFilter(logging.Filter):
    """
    Logging filter that replaces registered secrets with [REDACTED].

    Both the message template and its %-style arguments are scrubbed,
    so credentials never reach a handler even when passed as arguments.
    """

    def __init__(self, secrets: list[str] | None = None) -> None:
        super().__init__()
        self._secrets: list[str] = []
        self._pattern: re.Pattern[str] | None = None
        self.set_secrets(secrets or [])

    @property
    def secrets(self) -> list[str]:
        return list(self._secrets)

    def set_secrets(self, secrets: list[str]) -> None:
        """
        Replace the set of secrets to redact.

        Args:
            secrets: Secret strings; empty and very short values are ignored
        """
        self._secrets = [s for s in secrets if s and len(s) > 3]
        if not self._secrets:
            self._pattern = None
            return
        # Longest first so a token is not partially replaced by its prefix
        ordered = sorted(self._secrets, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(s) for s in ordered), re.IGNORECASE)

    def _scrub(self, value: Any) -> Any:
        if self._pattern is not None and isinstance(value, str):
            return self._pattern.sub(REDACTED, value)
        return value

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True

        record.msg = self._scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._scrub(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._scrub(arg) for arg in record.args)
        return True


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the whole line by level."""

    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str | None = None, use_colors: bool = True) -> None:
        super().__init__(fmt)
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno, "") if self.use_colors else ""
        return f"{color}{message}{self.RESET}" if color else message


_secret_filter: SecretFilter | None = None


def setup_logging(config: Config) -> None:
    """
    Configure the ``relayguard`` logger from process configuration.

    Installs a colored stderr handler, a file handler when
    ``config.log_file`` is set, and the secret filter on both. TwitchIO
    output is routed through the same handlers at WARNING.

    Args:
        config: Loaded process configuration
    """
    global _secret_filter

    logger = logging.getLogger("relayguard")
    logger.setLevel(getattr(logging, config.log_level, logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    _secret_filter = SecretFilter(config.secrets)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    console_handler.addFilter(_secret_filter)
    logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.addFilter(_secret_filter)
        logger.addHandler(file_handler)

    twitchio_logger = logging.getLogger("twitchio")
    twitchio_logger.setLevel(logging.WARNING)
    twitchio_logger.handlers.clear()
    for handler in logger.handlers:
        twitchio_logger.addHandler(handler)

    logger.debug("Logging initialized with level %s", config.log_level)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the ``relayguard`` namespace.

    Args:
        name: Module name (usually __name__)

    Returns:
        logging.Logger: Namespaced logger
    """
    if not name.startswith("relayguard"):
        name = f"relayguard.{name}"
    return logging.getLogger(name)


def add_secret(secret: str) -> None:
    """Register an extra secret with the active filter (e.g. a refreshed token)."""
    if _secret_filter is None or not secret:
        return
    secrets = _secret_filter.secrets
    if secret not in secrets:
        secrets.append(secret)
        _secret_filter.set_secrets(secrets)


def clip(text: str | None, limit: int = 50) -> str:
    """Shorten chat content for log lines."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."
