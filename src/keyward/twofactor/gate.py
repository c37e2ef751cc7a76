# Two-Factor - Gate
#
# Per-user state machine:
#
#   DISABLED --begin_setup--> PENDING_VERIFICATION --confirm_setup--> ENABLED
#   PENDING_VERIFICATION / ENABLED --disable--> DISABLED
#
# A pending secret is not authoritative and never affects login. Backup
# codes are stored as hashes only, issued as a whole batch and consumed
# by one conditional UPDATE so two parallel requests cannot both win.
# Enabling and disabling write the user row and the code batch in one
# store transaction.

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import KeywardConfig
from ..exceptions import InvalidCodeError, TwoFactorStateError
from ..vault.models import TwoFactorState, User
from ..vault.store import CredentialStore
from .totp import TotpService

logger = logging.getLogger(__name__)

BACKUP_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
BACKUP_CODE_GROUP = 5


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


def _backup_code_salt(user_id: str) -> bytes:
    return hashlib.sha256(f"keyward-backup-code:{user_id}".encode("utf-8")).digest()


def hash_backup_code(user_id: str, code: str, iterations: int) -> str:
    """
    PBKDF2-SHA256 over the normalized code.

    The salt is derived from the owner id so the same code hashes the
    same way on every attempt, which lets the store look it up directly.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_backup_code_salt(user_id),
        iterations=iterations,
    )
    return kdf.derive(normalize_backup_code(code).encode("utf-8")).hex()


def generate_backup_code() -> str:
    """Ten base32 characters shown as XXXXX-XXXXX (50 bits)."""
    chars = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_GROUP * 2))
    return f"{chars[:BACKUP_CODE_GROUP]}-{chars[BACKUP_CODE_GROUP:]}"


@dataclass
class TotpSetup:
    """What the user needs to enroll an authenticator app."""

    secret: str
    provisioning_uri: str

    def to_dict(self) -> dict:
        return {"secret": self.secret, "provisioning_uri": self.provisioning_uri}


class TwoFactorGate:
    """TOTP enrollment, login verification and backup codes."""

    def __init__(
        self,
        store: CredentialStore,
        config: KeywardConfig,
        totp: Optional[TotpService] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.totp = totp or TotpService(config)
        self.setup_ttl = config.totp_setup_ttl
        self.backup_code_count = config.backup_code_count
        self.backup_code_iterations = config.backup_code_iterations
        self.audit = audit or get_audit_logger(config)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.totp.now(), tz=timezone.utc)

    def _require_state(self, user: User, *allowed: TwoFactorState) -> None:
        if user.two_factor_state not in {s.value for s in allowed}:
            raise TwoFactorStateError(
                f"Two-factor authentication is {user.two_factor_state} for this user"
            )

    def _hash_code(self, user_id: str, code: str) -> str:
        return hash_backup_code(user_id, code, self.backup_code_iterations)

    def _new_backup_codes(self, user_id: str) -> Tuple[List[str], List[str]]:
        """A fresh batch and its hashes; nothing is stored yet."""
        codes = [generate_backup_code() for _ in range(self.backup_code_count)]
        return codes, [self._hash_code(user_id, c) for c in codes]

    def _accept_totp(self, user: User, secret: str, code: str) -> bool:
        """Verify and record the step; a replayed step is rejected."""
        step = self.totp.verify(secret, code)
        if step is None:
            return False
        if not self.store.advance_totp_step(user.id, step):
            logger.warning("TOTP code rejected: time step already used")
            return False
        return True

    # ── Enrollment ───────────────────────────────────────────────

    def begin_setup(self, user_id: str) -> TotpSetup:
        """
        Generate a temporary secret and move to PENDING_VERIFICATION.

        Calling again while pending replaces the temporary secret.

        Raises:
            TwoFactorStateError: 2FA is already enabled
        """
        user = self.store.load_user(user_id)
        self._require_state(user, TwoFactorState.DISABLED, TwoFactorState.PENDING_VERIFICATION)

        secret = self.totp.generate_secret()
        user.totp_pending_secret = secret
        user.totp_pending_since = self._now()
        user.two_factor_state = TwoFactorState.PENDING_VERIFICATION.value
        self.store.save_user(user)

        self.audit.log_event(
            EventType.TWO_FACTOR_SETUP_STARTED,
            EventSeverity.INFO,
            "Two-factor setup started",
            user_id=user_id,
        )
        return TotpSetup(secret=secret, provisioning_uri=self.totp.provisioning_uri(secret, user.email))

    def confirm_setup(self, user_id: str, code: str) -> List[str]:
        """
        Promote the temporary secret after a valid code.

        Returns:
            A fresh batch of backup codes; any earlier batch stops working

        Raises:
            TwoFactorStateError: No setup in progress
            InvalidCodeError: Wrong code or expired setup (stays pending)
        """
        user = self.store.load_user(user_id)
        self._require_state(user, TwoFactorState.PENDING_VERIFICATION)

        if user.totp_pending_since is None or self._now() - user.totp_pending_since > self.setup_ttl:
            raise InvalidCodeError("Two-factor setup expired; start setup again")

        step = self.totp.verify(user.totp_pending_secret, code)
        if step is None:
            self.audit.log_event(
                EventType.TOTP_FAILED,
                EventSeverity.INVESTIGATE,
                "Invalid code during two-factor setup",
                user_id=user_id,
            )
            raise InvalidCodeError("Invalid verification code")

        codes, code_hashes = self._new_backup_codes(user_id)

        user.totp_secret = user.totp_pending_secret
        user.totp_pending_secret = None
        user.totp_pending_since = None
        user.totp_last_step = step
        user.two_factor_state = TwoFactorState.ENABLED.value
        self.store.enable_two_factor(user, code_hashes)

        self.audit.log_event(
            EventType.TWO_FACTOR_ENABLED,
            EventSeverity.INFO,
            "Two-factor authentication enabled",
            user_id=user_id,
            details={"backup_codes_issued": len(codes)},
        )
        return codes

    # ── Login ────────────────────────────────────────────────────

    def verify_login(self, user_id: str, code: str) -> bool:
        """
        Accept a current TOTP code or an unused backup code.

        Returns:
            True; a rejected code raises instead

        Raises:
            TwoFactorStateError: 2FA is not enabled
            InvalidCodeError: Wrong, replayed or already-used code
        """
        user = self.store.load_user(user_id)
        self._require_state(user, TwoFactorState.ENABLED)

        if self._accept_totp(user, user.totp_secret, code):
            self.audit.log_event(
                EventType.TOTP_VERIFIED,
                EventSeverity.INFO,
                "TOTP code accepted",
                user_id=user_id,
            )
            return True

        if normalize_backup_code(code) and self.store.mark_backup_code_used(
            user_id, self._hash_code(user_id, code)
        ):
            remaining = self.store.count_unused_backup_codes(user_id)
            self.audit.log_event(
                EventType.BACKUP_CODE_USED,
                EventSeverity.INVESTIGATE if remaining <= 2 else EventSeverity.INFO,
                "Backup code consumed",
                user_id=user_id,
                details={"remaining": remaining},
            )
            return True

        self.audit.log_event(
            EventType.TOTP_FAILED,
            EventSeverity.INVESTIGATE,
            "Second factor rejected",
            user_id=user_id,
        )
        raise InvalidCodeError("Invalid two-factor code")

    # ── Management ───────────────────────────────────────────────

    def disable(self, user_id: str) -> None:
        """Wipe the secret, any pending setup and every backup code."""
        user = self.store.load_user(user_id)
        self._require_state(user, TwoFactorState.ENABLED, TwoFactorState.PENDING_VERIFICATION)

        user.totp_secret = None
        user.totp_pending_secret = None
        user.totp_pending_since = None
        user.totp_last_step = None
        user.two_factor_state = TwoFactorState.DISABLED.value
        removed = self.store.disable_two_factor(user)

        self.audit.log_event(
            EventType.TWO_FACTOR_DISABLED,
            EventSeverity.ALERT,
            "Two-factor authentication disabled",
            user_id=user_id,
            details={"backup_codes_removed": removed},
        )

    def regenerate_backup_codes(self, user_id: str, code: str) -> List[str]:
        """
        Rotate the whole batch after a valid TOTP code.

        Raises:
            TwoFactorStateError: 2FA is not enabled
            InvalidCodeError: Wrong or replayed TOTP code
        """
        user = self.store.load_user(user_id)
        self._require_state(user, TwoFactorState.ENABLED)

        if not self._accept_totp(user, user.totp_secret, code):
            self.audit.log_event(
                EventType.TOTP_FAILED,
                EventSeverity.INVESTIGATE,
                "Invalid code for backup-code rotation",
                user_id=user_id,
            )
            raise InvalidCodeError("Invalid verification code")

        codes, code_hashes = self._new_backup_codes(user_id)
        self.store.replace_backup_codes(user_id, code_hashes)
        self.audit.log_event(
            EventType.BACKUP_CODES_REGENERATED,
            EventSeverity.INFO,
            "Backup codes regenerated",
            user_id=user_id,
            details={"count": len(codes)},
        )
        return codes

    def remaining_backup_codes(self, user_id: str) -> int:
        return self.store.count_unused_backup_codes(user_id)
