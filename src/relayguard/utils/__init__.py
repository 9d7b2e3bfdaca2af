"""
Utility modules for RelayGuard.

Provides:
- logging: Logging setup with secret filtering
- database: SQLite storage for spam records, settings, users and the audit log
- spam_engine: Per-message spam checks and admin operations
- spam_settings: Runtime spam thresholds
- detectors / escalation: Spam classification and the auto-mute ladder
- permissions: Permission decorators for commands
"""

from relayguard.utils.logging import get_logger, setup_logging
from relayguard.utils.database import get_database, DatabaseManager
from relayguard.utils.detectors import Violation, run_detectors
from relayguard.utils.escalation import EscalationPolicy, MuteOutcome
from relayguard.utils.spam_engine import get_spam_engine, SpamEngine, HandleResult
from relayguard.utils.spam_record import SpamRecord, ViolationType
from relayguard.utils.spam_settings import SpamSettings, SpamSettingsService, SettingKey

__all__ = [
    "get_logger",
    "setup_logging",
    "get_database",
    "DatabaseManager",
    "Violation",
    "run_detectors",
    "EscalationPolicy",
    "MuteOutcome",
    "get_spam_engine",
    "SpamEngine",
    "HandleResult",
    "SpamRecord",
    "ViolationType",
    "SpamSettings",
    "SpamSettingsService",
    "SettingKey",
]
