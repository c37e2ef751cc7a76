"""
User-held recovery keys.

A recovery key is 256 random bits shown to the user once. While one is
on file, an email recovery token alone cannot reset the master password:
the key has to be presented too. Only a SHA-256 of the key is stored,
which is enough for a value with that much entropy.
"""

import hashlib
import hmac
import secrets
from typing import Optional

from .models import RecoveryKey

RECOVERY_KEY_BYTES = 32


def generate_recovery_key() -> str:
    return secrets.token_urlsafe(RECOVERY_KEY_BYTES)


def hash_recovery_key(key: str) -> str:
    return hashlib.sha256(f"keyward-recovery-key:{key}".encode("utf-8")).hexdigest()


def recovery_key_matches(stored: Optional[RecoveryKey], candidate: Optional[str]) -> bool:
    """Constant-time check of a presented key against the stored hash."""
    if stored is None or not candidate:
        return False
    return hmac.compare_digest(hash_recovery_key(candidate), stored.key_hash)
