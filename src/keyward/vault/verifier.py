"""
Login-time master password verification.

The stored verifier is PBKDF2(master_password, auth_salt). Verification
recomputes it and compares in constant time. Any error on the way is a
failed verification: this check fails closed.
"""

import hmac
import logging

from .encryption import KeyDerivation

logger = logging.getLogger(__name__)


class CredentialVerifier:
    """Checks a supplied master password against a stored salted hash."""

    def __init__(self, derivation: KeyDerivation):
        self.derivation = derivation

    def verify(self, supplied_password: str, stored_hash: bytes, auth_salt: bytes) -> bool:
        """
        Returns True only when the recomputed hash matches ``stored_hash``.

        Never raises and never logs the supplied password.
        """
        try:
            candidate = self.derivation.derive(supplied_password, auth_salt)
            return hmac.compare_digest(candidate, bytes(stored_hash))
        except Exception as e:
            logger.warning(f"Credential verification failed closed: {type(e).__name__}")
            return False
