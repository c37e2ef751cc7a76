# Vault Module - Credential Lifecycle
#
# Master password -> PBKDF2 key derivation (separate auth and vault salts)
# Secret fields -> versioned AES-256-GCM envelopes
# Master-password change -> atomic server-side re-key

from .encryption import Credentials, Envelope, KeyDerivation, SecretCodec, derive_key
from .verifier import CredentialVerifier
from .models import (
    BackupCode,
    RecoveryKey,
    RecoveryToken,
    RekeyResult,
    SecretRecord,
    TwoFactorState,
    User,
)
from .store import CredentialStore, SqliteCredentialStore
from .rekey import ReKeyOrchestrator, UserLockRegistry
from .accounts import AccountService, UnlockedVault

__all__ = [
    "AccountService",
    "BackupCode",
    "RecoveryKey",
    "CredentialStore",
    "CredentialVerifier",
    "Credentials",
    "Envelope",
    "KeyDerivation",
    "ReKeyOrchestrator",
    "RecoveryToken",
    "RekeyResult",
    "SecretCodec",
    "SecretRecord",
    "SqliteCredentialStore",
    "TwoFactorState",
    "UnlockedVault",
    "User",
    "UserLockRegistry",
    "derive_key",
]
