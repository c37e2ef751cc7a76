"""
Vault data model.

Plain dataclasses mirroring the rows kept by the credential store. Every
SecretRecord, BackupCode, RecoveryToken and RecoveryKey is owned by exactly
one User and goes away with it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorState(str, Enum):
    """Per-user 2FA state machine: DISABLED -> PENDING_VERIFICATION -> ENABLED."""

    DISABLED = "disabled"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass
class User:
    """Identity row plus the credential material for the current epoch.

    ``auth_salt`` feeds the login verifier, ``encryption_salt`` feeds the
    vault key. Both, and ``password_hash``, are replaced together on a
    master-password change, which also bumps ``key_epoch``.
    """

    id: str
    email: str
    password_hash: bytes
    auth_salt: bytes
    encryption_salt: bytes
    key_epoch: int = 1
    role: str = UserRole.USER.value
    two_factor_state: str = TwoFactorState.DISABLED.value
    totp_secret: Optional[str] = None
    totp_pending_secret: Optional[str] = None
    totp_pending_since: Optional[datetime] = None
    totp_last_step: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def totp_enabled(self) -> bool:
        return self.two_factor_state == TwoFactorState.ENABLED.value

    def to_dict(self) -> dict:
        """Public view. Hashes, salts and TOTP secrets are left out."""
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "key_epoch": self.key_epoch,
            "two_factor_state": self.two_factor_state,
            "totp_enabled": self.totp_enabled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class SecretRecord:
    """One password-manager entry; only ``password_envelope`` is ciphertext."""

    id: str
    owner_id: str
    title: str
    password_envelope: str
    key_epoch: int
    username: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None
    revision: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "username": self.username,
            "url": self.url,
            "notes": self.notes,
            "key_epoch": self.key_epoch,
            "revision": self.revision,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class BackupCode:
    user_id: str
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RecoveryToken:
    """Single-use, time-bound token. Only the hash is ever stored."""

    user_id: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class RecoveryKey:
    """User-held key that must accompany an email reset once it exists.

    Only the hash is stored; the raw key is shown to the user once.
    """

    user_id: str
    key_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "has_recovery_key": True,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class StagedSecret:
    """A re-encrypted envelope waiting for the re-key commit."""

    id: str
    password_envelope: str
    revision: int


@dataclass
class RekeyResult:
    """Outcome of a re-key; a non-empty ``failed`` is partial success."""

    succeeded: int = 0
    failed: List[str] = field(default_factory=list)
    key_epoch: Optional[int] = None

    @property
    def complete(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": list(self.failed),
            "key_epoch": self.key_epoch,
        }
