# Keyward - Credential Lifecycle Core
#
# Master-password verification, per-user vault key derivation, secret
# envelopes, atomic re-keying on password change, and the second factor
# (TOTP, backup codes, recovery tokens) in front of it all.
#
# A library, not a service: the HTTP layer above it owns routing,
# sessions and rate limiting.

__version__ = "0.1.0"
__author__ = "Keyward Team"
__description__ = "Credential lifecycle core for a password manager"

from .core import (
    EventSeverity,
    EventType,
    KeywardConfig,
    get_audit_logger,
    load_config,
)
from .exceptions import KeywardError

__all__ = [
    "__version__",
    "KeywardConfig",
    "KeywardError",
    "load_config",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
]
