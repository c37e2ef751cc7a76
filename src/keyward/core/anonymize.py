"""
Pseudonymous user identifiers for audit and monitoring output.

PBKDF2-SHA256 over the user id with a deployment salt gives a stable
pseudonym that still lets operators correlate events for one user.

There is no silent downgrade: the SHA-256 fallback is only reachable
when ``allow_anonymizer_fallback`` is set in the configuration, and every
use of it is logged. Otherwise a PBKDF2 failure raises DerivationError.
"""

import hashlib
from collections import OrderedDict
import logging

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import DerivationError
from .config import KeywardConfig

logger = logging.getLogger(__name__)

PSEUDONYM_BYTES = 16
ANONYMOUS = "anonymous"
CACHE_SIZE = 1024


class UserIdAnonymizer:
    """Maps user ids to 128-bit hex pseudonyms, keeping the most recent in an LRU."""

    def __init__(self, config: KeywardConfig):
        self.salt = config.anonymizer_salt.encode("utf-8")
        self.iterations = config.anonymizer_iterations
        self.allow_fallback = config.allow_anonymizer_fallback
        self._cache: "OrderedDict[str, str]" = OrderedDict()

    def anonymize(self, user_id: str) -> str:
        if not user_id:
            return ANONYMOUS

        cached = self._cache.get(user_id)
        if cached is not None:
            self._cache.move_to_end(user_id)
            return cached

        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=PSEUDONYM_BYTES,
                salt=self.salt,
                iterations=self.iterations,
            )
            pseudonym = kdf.derive(str(user_id).encode("utf-8")).hex()
        except (ValueError, TypeError) as e:
            if not self.allow_fallback:
                raise DerivationError(f"User id anonymization failed: {e}") from e
            logger.warning(
                "PBKDF2 anonymization failed, using configured SHA-256 fallback: %s", e
            )
            digest = hashlib.sha256(str(user_id).encode("utf-8") + self.salt)
            pseudonym = digest.hexdigest()[: PSEUDONYM_BYTES * 2]

        self._cache[user_id] = pseudonym
        if len(self._cache) > CACHE_SIZE:
            self._cache.popitem(last=False)
        return pseudonym
