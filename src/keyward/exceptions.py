"""
Keyward Exception Classes

Every failure the credential core reports is one of these. Low-level
exceptions (cryptography's InvalidTag, sqlite3.Error) are translated at
the module that sees them, so callers only ever handle this taxonomy.
"""


class KeywardError(Exception):
    """Base exception for credential core operations"""
    pass


class ConfigError(KeywardError):
    """Raised when the configuration holds an out-of-range value"""
    pass


class DerivationError(KeywardError):
    """Raised when key derivation rejects its parameters (never retried)"""
    pass


class AuthError(KeywardError):
    """Raised when a supplied master password does not match"""
    pass


class IntegrityError(KeywardError):
    """Raised when an envelope was tampered with or the key is wrong"""

    def __init__(self, message: str = "Envelope failed authentication", record_id: str = ""):
        super().__init__(message)
        self.record_id = record_id


class EpochMismatchError(IntegrityError):
    """Raised when an envelope was produced under a different key epoch"""
    pass


class UnsupportedEnvelopeError(IntegrityError):
    """Raised when an envelope carries an unknown version tag or is malformed"""
    pass


class ConflictError(KeywardError):
    """Raised when a concurrent re-key won; re-read state and retry"""
    pass


class InvalidCodeError(KeywardError):
    """Raised for a bad TOTP, backup or recovery code"""
    pass


class TwoFactorStateError(KeywardError):
    """Raised when a 2FA operation is not allowed in the current state"""
    pass


class StorageError(KeywardError):
    """Raised when the persistence layer fails"""
    pass


class RekeyAbortedError(StorageError):
    """Raised when re-key persistence exhausted its retries and rolled back"""
    pass


class NotFoundError(KeywardError):
    """Raised when a user or secret id is unknown"""
    pass


class WeakPasswordError(KeywardError):
    """Raised when a master password is rejected by policy or breach check"""
    pass


class NotificationError(KeywardError):
    """Raised when the notification collaborator fails to deliver"""
    pass
