# Core Module - Shared Infrastructure
#
# Core module provides shared functionality across all Keyward modules:
# - Configuration (one typed object built at startup)
# - Audit logging
# - SQLite connection helper
# - User-id pseudonyms and the notification collaborator

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    configure_audit_logger,
    get_audit_logger,
)
from .config import KeywardConfig, load_config

__all__ = [
    # Configuration
    "KeywardConfig",
    "load_config",
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "configure_audit_logger",
    "get_audit_logger",
]
