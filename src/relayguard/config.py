"""
Process configuration for RelayGuard.

Loads configuration from environment variables and .env files,
validates required fields, and provides type-safe access.

Spam thresholds are not part of this configuration: they are runtime
settings owned by :mod:`relayguard.utils.spam_settings` and can be changed
by admins without a restart.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class Config:
    """
    Immutable process configuration.

    Attributes:
        client_id: Twitch application client ID
        client_secret: Twitch application client secret
        oauth_token: Bot OAuth token for chat access
        bot_nick: Bot's Twitch username
        channels: Channels to join
        owner: Bot owner's Twitch username
        refresh_token: OAuth refresh token
        prefix: Command prefix (default: !)
        log_level: Logging level (default: INFO)
        log_file: Optional log file path
        database_path: SQLite file holding spam records, settings and audit log
        spam_sweep_interval: Seconds between expired auto-mute sweeps
        spam_check_timeout: Upper bound in seconds for waiting on a user's
            lock or on a busy database during a spam check
        enforce_mutes: Issue chat timeouts when an auto-mute is applied
        enable_admin_commands: Register the !antispam operator command
    """

    # Required fields
    client_id: str
    client_secret: str
    oauth_token: str
    bot_nick: str
    channels: list[str]
    owner: str

    # Optional fields with defaults
    refresh_token: str = ""
    prefix: str = "!"
    log_level: str = "INFO"
    log_file: str | None = None
    database_path: str = "data/relayguard.db"
    spam_sweep_interval: int = 300
    spam_check_timeout: float = 2.0
    enforce_mutes: bool = True
    enable_admin_commands: bool = True

    _secrets: list[str] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        secrets = [
            self.client_id,
            self.client_secret,
            self.oauth_token,
            self.get_oauth_token_clean(),
            self.refresh_token,
        ]
        # Frozen dataclass
        object.__setattr__(self, "_secrets", [s for s in secrets if s])

    @property
    def secrets(self) -> list[str]:
        """Values that must never appear in logs."""
        return self._secrets

    def get_oauth_token_clean(self) -> str:
        """Get OAuth token without 'oauth:' prefix if present."""
        token = self.oauth_token
        if token.startswith("oauth:"):
            return token[6:]
        return token


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean from environment variable string."""
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_int(value: str | None, default: int, minimum: int | None = None) -> int:
    """Parse an integer, falling back to the default when invalid or below minimum."""
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def _parse_float(value: str | None, default: float) -> float:
    """Parse a positive float from environment variable string."""
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_channels(value: str | None) -> list[str]:
    """Parse comma-separated channel list."""
    if not value:
        return []
    channels = [ch.strip().lstrip("#") for ch in value.split(",")]
    return [ch for ch in channels if ch]


_PLACEHOLDERS = {
    "TWITCH_CLIENT_ID": "your_client_id_here",
    "TWITCH_CLIENT_SECRET": "your_client_secret_here",
    "TWITCH_OAUTH_TOKEN": "oauth:your_token_here",
    "TWITCH_BOT_NICK": "your_bot_username",
    "BOT_OWNER": "your_twitch_username",
}


def _required(name: str, errors: list[str]) -> str:
    value = os.getenv(name, "").strip()
    if not value or value == _PLACEHOLDERS.get(name):
        errors.append(f"{name} is required")
        return ""
    return value


def load_config(env_file: str | Path | None = None) -> Config:
    """
    Load configuration from environment variables and .env file.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory and parent directories.

    Returns:
        Config: Validated configuration object

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    errors: list[str] = []

    client_id = _required("TWITCH_CLIENT_ID", errors)
    client_secret = _required("TWITCH_CLIENT_SECRET", errors)
    oauth_token = _required("TWITCH_OAUTH_TOKEN", errors)
    bot_nick = _required("TWITCH_BOT_NICK", errors)
    owner = _required("BOT_OWNER", errors)

    channels = _parse_channels(os.getenv("TWITCH_CHANNELS"))
    if not channels:
        errors.append("TWITCH_CHANNELS is required (comma-separated list)")

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)

    refresh_token = os.getenv("TWITCH_REFRESH_TOKEN", "")
    if refresh_token == "your_refresh_token_here":
        refresh_token = ""

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        log_level = "INFO"

    return Config(
        client_id=client_id,
        client_secret=client_secret,
        oauth_token=oauth_token,
        refresh_token=refresh_token,
        bot_nick=bot_nick,
        channels=channels,
        owner=owner,
        prefix=os.getenv("BOT_PREFIX", "!"),
        log_level=log_level,
        log_file=os.getenv("LOG_FILE") or None,
        database_path=os.getenv("DATABASE_PATH", "data/relayguard.db"),
        spam_sweep_interval=_parse_int(os.getenv("SPAM_SWEEP_INTERVAL"), 300, minimum=1),
        spam_check_timeout=_parse_float(os.getenv("SPAM_CHECK_TIMEOUT"), 2.0),
        enforce_mutes=_parse_bool(os.getenv("ENFORCE_MUTES"), True),
        enable_admin_commands=_parse_bool(os.getenv("ENABLE_ADMIN_COMMANDS"), True),
    )
