# Core - Security Audit Log
#
# Append-only, structured (JSON lines) log of every credential lifecycle
# event: registrations, logins, master-password changes, re-key outcomes,
# 2FA transitions, backup-code and recovery-token use.
#
# Never logged: passwords, derived keys, TOTP secrets or codes, backup
# codes, recovery tokens or keys, decrypted secrets. A redaction
# processor drops any such key that slips into `details`, and user ids
# are pseudonymised through the injected UserIdAnonymizer.

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from uuid import uuid4

import structlog

from ..exceptions import ConfigError

if TYPE_CHECKING:
    from .anonymize import UserIdAnonymizer
    from .config import KeywardConfig

AUDIT_LOGGER_NAME = "keyward.audit"

# Keys whose values must never reach the audit trail
REDACTED_KEYS = frozenset({
    "password",
    "master_password",
    "current_password",
    "new_password",
    "key",
    "secret",
    "totp_secret",
    "code",
    "backup_code",
    "token",
    "recovery_key",
    "plaintext",
})


class EventType(str, Enum):
    """Types of credential lifecycle events that can be logged."""

    # Accounts
    USER_REGISTERED = "user.registered"
    USER_DELETED = "user.deleted"
    LOGIN_VERIFIED = "login.verified"
    LOGIN_FAILED = "login.failed"

    # Master password / re-key
    MASTER_PASSWORD_CHANGED = "master_password.changed"
    MASTER_PASSWORD_RESET = "master_password.reset"
    MASTER_PASSWORD_CHANGE_FAILED = "master_password.change.failed"
    REKEY_PARTIAL = "rekey.partial"
    REKEY_CONFLICT = "rekey.conflict"
    REKEY_ABORTED = "rekey.aborted"

    # Vault entries
    SECRET_ADDED = "secret.added"
    SECRET_UPDATED = "secret.updated"
    SECRET_ACCESSED = "secret.accessed"
    SECRET_DELETED = "secret.deleted"
    SECRET_INTEGRITY_FAILED = "secret.integrity.failed"

    # Two-factor
    TWO_FACTOR_SETUP_STARTED = "two_factor.setup.started"
    TWO_FACTOR_ENABLED = "two_factor.enabled"
    TWO_FACTOR_DISABLED = "two_factor.disabled"
    TOTP_VERIFIED = "two_factor.totp.verified"
    TOTP_FAILED = "two_factor.totp.failed"
    BACKUP_CODE_USED = "two_factor.backup_code.used"
    BACKUP_CODES_REGENERATED = "two_factor.backup_codes.regenerated"

    # Recovery
    RECOVERY_TOKEN_ISSUED = "recovery.token.issued"
    RECOVERY_TOKEN_REDEEMED = "recovery.token.redeemed"
    RECOVERY_TOKEN_REJECTED = "recovery.token.rejected"
    RECOVERY_KEY_CREATED = "recovery.key.created"
    RECOVERY_KEY_DELETED = "recovery.key.deleted"
    RECOVERY_KEY_REJECTED = "recovery.key.rejected"
    RECOVERY_KEY_CHANGE_FAILED = "recovery.key.change.failed"


class EventSeverity(str, Enum):
    """
    Severity levels for audit events.

    - INFO: normal activity
    - INVESTIGATE: failed verification, worth a look if repeated
    - ALERT: partial or aborted re-key, integrity failures
    - CRITICAL: data may be unreadable for the user
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


def _logger_name_for(log_dir: Path) -> str:
    """One stdlib logger per audit directory; instances sharing a directory share it."""
    digest = hashlib.sha256(str(log_dir.resolve()).encode("utf-8")).hexdigest()[:12]
    return f"{AUDIT_LOGGER_NAME}.{digest}"


def _redact_secrets(logger, method_name, event_dict):
    """structlog processor: drop sensitive keys at top level and in details."""
    for name in list(event_dict):
        if name in REDACTED_KEYS:
            event_dict[name] = "[redacted]"
    details = event_dict.get("details")
    if isinstance(details, dict):
        event_dict["details"] = {
            k: ("[redacted]" if k in REDACTED_KEYS else v)
            for k, v in details.items()
        }
    return event_dict


class AuditLogger:
    """
    Append-only audit logger for credential events.

    Features:
    - Structured JSON logging (structlog)
    - Automatic timestamp and event ID
    - Pseudonymous user context
    - Daily log files, queryable for forensics
    """

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        anonymizer: Optional["UserIdAnonymizer"] = None,
    ):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
            anonymizer: Pseudonymises user ids; raw ids are logged without it
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.anonymizer = anonymizer

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                _redact_secrets,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self.logger_name = _logger_name_for(self.log_dir)
        self._setup_file_handler()

        self.logger = structlog.get_logger(self.logger_name)

    @property
    def log_file(self) -> Path:
        today = datetime.now().strftime("%Y-%m-%d")
        return self.log_dir / f"audit_{today}.log"

    def _setup_file_handler(self):
        """Point this directory's stdlib logger at today's file."""
        audit_logger = logging.getLogger(self.logger_name)
        target = os.path.abspath(self.log_file)

        for handler in list(audit_logger.handlers):
            if not getattr(handler, "_keyward_audit", False):
                continue
            if handler.baseFilename == target:
                return
            # Left over from an earlier day
            audit_logger.removeHandler(handler)
            handler.close()

        file_handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(message)s"))  # structlog handles formatting
        file_handler._keyward_audit = True

        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False

    def close(self):
        """Detach and close the file handler for this directory."""
        audit_logger = logging.getLogger(self.logger_name)
        for handler in list(audit_logger.handlers):
            if getattr(handler, "_keyward_audit", False):
                audit_logger.removeHandler(handler)
                handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log a credential event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            user_id: Subject of the event, pseudonymised before writing
            details: Additional event details (never secrets)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        subject = None
        if user_id is not None:
            subject = self.anonymizer.anonymize(user_id) if self.anonymizer else user_id

        self.logger.info(
            "security_event",
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            message=message,
            subject=subject,
            details=details or {},
            logged_at=datetime.now(timezone.utc).isoformat(),
        )

        return event_id

    def query_events(
        self,
        event_types: Optional[List[EventType]] = None,
        severity: Optional[EventSeverity] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Read back audit events, newest last.

        Args:
            event_types: Filter by event types
            severity: Filter by severity level
            limit: Maximum number of events to return
        """
        wanted = {e.value for e in event_types} if event_types else None

        for handler in logging.getLogger(self.logger_name).handlers:
            handler.flush()

        events = []
        for path in sorted(self.log_dir.glob("audit_*.log")):
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if wanted and event.get("event_type") not in wanted:
                        continue
                    if severity and event.get("severity") != severity.value:
                        continue
                    events.append(event)

        return events[-limit:]


# Process-wide default, configured once at startup by configure_audit_logger()
_audit_logger: Optional[AuditLogger] = None


def configure_audit_logger(config: "KeywardConfig") -> AuditLogger:
    """Build the default audit logger from the process configuration."""
    from .anonymize import UserIdAnonymizer

    global _audit_logger
    _audit_logger = AuditLogger(
        log_dir=config.audit_log_dir,
        anonymizer=UserIdAnonymizer(config),
    )
    return _audit_logger


def get_audit_logger(config: Optional["KeywardConfig"] = None) -> AuditLogger:
    """
    Get global audit logger (singleton pattern).

    The first call builds it from ``config`` with a UserIdAnonymizer, so
    there is never a default that writes raw user ids.

    Raises:
        ConfigError: Not configured yet and no config given
    """
    if _audit_logger is None:
        if config is None:
            raise ConfigError(
                "Audit logger is not configured; call configure_audit_logger() first"
            )
        return configure_audit_logger(config)
    return _audit_logger
