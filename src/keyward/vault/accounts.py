# Vault - Account Service
#
# Facade the HTTP layer talks to: registration, unlock, secret CRUD and
# the master-password flows.
#
#   change_master_password  current password known -> full re-key
#   reset_master_password   recovery token redeemed -> fresh epoch; data
#                           sealed under the lost password stays sealed
#   reset_with_recovery_key user-held recovery key -> fresh epoch
#
# A recovery key on file is required in addition to any email token.
#
# Derived keys are returned to the caller inside an UnlockedVault and are
# never persisted here.

import logging
import uuid
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import KeywardConfig
from ..exceptions import (
    AuthError,
    EpochMismatchError,
    IntegrityError,
    InvalidCodeError,
    NotFoundError,
    WeakPasswordError,
)
from .breach import BreachChecker
from .encryption import KeyDerivation, SecretCodec
from .models import RecoveryKey, RekeyResult, SecretRecord, User, utcnow
from .password_policy import check_master_password
from .recovery_key import generate_recovery_key, hash_recovery_key, recovery_key_matches
from .rekey import ReKeyOrchestrator
from .store import CredentialStore
from .verifier import CredentialVerifier

if TYPE_CHECKING:
    from ..twofactor.recovery import RecoveryTokenService

logger = logging.getLogger(__name__)


@dataclass
class UnlockedVault:
    """A live vault key and the epoch it belongs to. Memory only."""

    user_id: str
    key: bytes
    key_epoch: int

    def __repr__(self) -> str:
        return f"UnlockedVault(user_id={self.user_id!r}, key_epoch={self.key_epoch})"


class AccountService:
    """Account and vault operations on top of a CredentialStore."""

    def __init__(
        self,
        store: CredentialStore,
        config: KeywardConfig,
        audit: Optional[AuditLogger] = None,
        breach_checker: Optional[BreachChecker] = None,
        orchestrator: Optional[ReKeyOrchestrator] = None,
        recovery: Optional["RecoveryTokenService"] = None,
    ):
        self.store = store
        self.config = config
        self.derivation = KeyDerivation(config)
        self.verifier = CredentialVerifier(self.derivation)
        self.audit = audit or get_audit_logger(config)
        self.breach_checker = breach_checker
        self.orchestrator = orchestrator or ReKeyOrchestrator(store, config, audit=self.audit)
        self._recovery = recovery

    @property
    def recovery(self) -> "RecoveryTokenService":
        if self._recovery is None:
            from ..twofactor.recovery import RecoveryTokenService
            self._recovery = RecoveryTokenService(self.store, self.config, audit=self.audit)
        return self._recovery

    # ── Master password ──────────────────────────────────────────

    def _enforce_policy(self, password: str) -> None:
        is_valid, error_msg = check_master_password(password)
        if not is_valid:
            raise WeakPasswordError(error_msg)

        if self.breach_checker is None:
            return
        result = self.breach_checker.check(password)
        if result.error:
            logger.warning("Breach lookup unavailable; accepting password on policy alone")
        elif result.breached:
            raise WeakPasswordError(
                f"This password appears in {result.count} known data breaches"
            )

    def register(self, email: str, master_password: str) -> User:
        """
        Create a user with fresh credentials at key epoch 1.

        Raises:
            WeakPasswordError: Password rejected by policy or breach check
            ConflictError: Email already registered
        """
        self._enforce_policy(master_password)
        creds = self.derivation.new_credentials(master_password)

        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=creds.password_hash,
            auth_salt=creds.auth_salt,
            encryption_salt=creds.encryption_salt,
        )
        self.store.create_user(user)

        self.audit.log_event(
            EventType.USER_REGISTERED,
            EventSeverity.INFO,
            "User registered",
            user_id=user.id,
        )
        return user

    def unlock(self, user_id: str, master_password: str) -> UnlockedVault:
        """
        Verify the master password and derive the vault key.

        Second-factor checks are the caller's next step (TwoFactorGate).

        Raises:
            AuthError: Wrong master password
        """
        user = self.store.load_user(user_id)

        if not self.verifier.verify(master_password, user.password_hash, user.auth_salt):
            self.audit.log_event(
                EventType.LOGIN_FAILED,
                EventSeverity.INVESTIGATE,
                "Master password verification failed",
                user_id=user_id,
            )
            raise AuthError("Invalid master password")

        key = self.derivation.derive(master_password, user.encryption_salt)
        self.audit.log_event(
            EventType.LOGIN_VERIFIED,
            EventSeverity.INFO,
            "Master password verified",
            user_id=user_id,
        )
        return UnlockedVault(user_id=user.id, key=key, key_epoch=user.key_epoch)

    def change_master_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> RekeyResult:
        """
        Change the master password and re-key every owned secret.

        Returns:
            RekeyResult from the orchestrator; check ``failed``

        Raises:
            WeakPasswordError: New password rejected
            AuthError: Current password wrong
            ConflictError: Concurrent change; re-read and retry
            RekeyAbortedError: Storage failed; old password still valid
        """
        if current_password == new_password:
            raise WeakPasswordError("New master password must differ from the current one")
        self._enforce_policy(new_password)

        user = self.store.load_user(user_id)
        if not self.verifier.verify(current_password, user.password_hash, user.auth_salt):
            self.audit.log_event(
                EventType.MASTER_PASSWORD_CHANGE_FAILED,
                EventSeverity.INVESTIGATE,
                "Master password change refused: current password did not verify",
                user_id=user_id,
            )
            raise AuthError("Current master password is incorrect")

        old_key = self.derivation.derive(current_password, user.encryption_salt)
        creds = self.derivation.new_credentials(new_password)

        return self.orchestrator.rekey_all(
            user_id,
            old_key,
            creds.encryption_key,
            current_password=current_password,
            new_credentials=creds,
        )

    def _start_new_epoch(self, user_id: str, new_password: str, method: str) -> RekeyResult:
        user = self.store.load_user(user_id)
        creds = self.derivation.new_credentials(new_password)
        next_user = replace(
            user,
            password_hash=creds.password_hash,
            auth_salt=creds.auth_salt,
            encryption_salt=creds.encryption_salt,
            key_epoch=user.key_epoch + 1,
        )
        self.store.reset_credentials(next_user)

        orphaned = [
            record.id
            for record in self._all_secrets(user_id)
            if record.key_epoch != next_user.key_epoch
        ]

        self.audit.log_event(
            EventType.MASTER_PASSWORD_RESET,
            EventSeverity.ALERT,
            f"Master password reset through {method.replace('_', ' ')}",
            user_id=user_id,
            details={
                "method": method,
                "unreadable_secrets": len(orphaned),
                "key_epoch": next_user.key_epoch,
            },
        )
        return RekeyResult(succeeded=0, failed=orphaned, key_epoch=next_user.key_epoch)

    def _reject_recovery_key(self, user_id: Optional[str], reason: str) -> None:
        self.audit.log_event(
            EventType.RECOVERY_KEY_REJECTED,
            EventSeverity.INVESTIGATE,
            "Recovery key rejected",
            user_id=user_id,
            details={"reason": reason},
        )
        raise InvalidCodeError("Invalid recovery key")

    def check_recovery_token(self, token: str) -> Dict[str, Any]:
        """
        Look at a recovery token without consuming it.

        Returns:
            The account email and whether a recovery key will be required

        Raises:
            InvalidCodeError: Token unknown, used or expired
        """
        user_id = self.recovery.check_recovery_token(token)
        user = self.store.load_user(user_id)
        return {
            "valid": True,
            "email": user.email,
            "requires_recovery_key": self.store.load_recovery_key(user_id) is not None,
        }

    def reset_master_password(
        self, token: str, new_password: str, recovery_key: Optional[str] = None
    ) -> RekeyResult:
        """
        Recovery path: redeem a recovery token and start a new epoch.

        If the user has a recovery key on file it must be given as well.
        The old key is unknown, so nothing can be re-encrypted. Secrets of
        earlier epochs are kept and reported in ``failed``.

        Raises:
            WeakPasswordError: New password rejected (token not consumed)
            InvalidCodeError: Token unknown, used or expired, or the
                recovery key is missing or wrong (token not consumed)
            ConflictError: Epoch moved concurrently
        """
        self._enforce_policy(new_password)
        user_id = self.recovery.check_recovery_token(token)

        stored = self.store.load_recovery_key(user_id)
        if stored is not None and not recovery_key_matches(stored, recovery_key):
            self._reject_recovery_key(user_id, "wrong_key" if recovery_key else "missing_key")

        redeemed = self.recovery.redeem_recovery_token(token)
        return self._start_new_epoch(redeemed, new_password, "recovery_token")

    def reset_with_recovery_key(self, email: str, recovery_key: str, new_password: str) -> RekeyResult:
        """
        Recovery path without email: the recovery key alone starts a new epoch.

        Raises:
            WeakPasswordError: New password rejected
            InvalidCodeError: Unknown email, no key on file or wrong key
            ConflictError: Epoch moved concurrently
        """
        self._enforce_policy(new_password)

        user = self.store.find_user_by_email(email.strip().lower())
        if user is None:
            self._reject_recovery_key(None, "unknown_account")
        stored = self.store.load_recovery_key(user.id)
        if stored is None:
            self._reject_recovery_key(user.id, "no_key")
        if not recovery_key_matches(stored, recovery_key):
            self._reject_recovery_key(user.id, "wrong_key")

        return self._start_new_epoch(user.id, new_password, "recovery_key")

    # ── Recovery key ─────────────────────────────────────────────

    def _require_password(self, user: User, master_password: str, action: str) -> None:
        if self.verifier.verify(master_password, user.password_hash, user.auth_salt):
            return
        self.audit.log_event(
            EventType.RECOVERY_KEY_CHANGE_FAILED,
            EventSeverity.INVESTIGATE,
            "Recovery key change refused: master password did not verify",
            user_id=user.id,
            details={"action": action},
        )
        raise AuthError("Invalid master password")

    def setup_recovery_key(self, user_id: str, master_password: str) -> str:
        """
        Create or replace the user's recovery key.

        Returns:
            The raw key; only its hash is kept

        Raises:
            AuthError: Wrong master password
        """
        user = self.store.load_user(user_id)
        self._require_password(user, master_password, "create")

        key = generate_recovery_key()
        now = utcnow()
        existing = self.store.load_recovery_key(user_id)
        self.store.save_recovery_key(RecoveryKey(
            user_id=user_id,
            key_hash=hash_recovery_key(key),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        ))

        self.audit.log_event(
            EventType.RECOVERY_KEY_CREATED,
            EventSeverity.ALERT if existing else EventSeverity.INFO,
            "Recovery key replaced" if existing else "Recovery key created",
            user_id=user_id,
        )
        return key

    def recovery_key_status(self, user_id: str) -> Dict[str, Any]:
        stored = self.store.load_recovery_key(user_id)
        if stored is None:
            return {"has_recovery_key": False, "created_at": None, "updated_at": None}
        return stored.to_dict()

    def delete_recovery_key(self, user_id: str, master_password: str) -> bool:
        """
        Remove the recovery key; email tokens alone work again afterwards.

        Raises:
            AuthError: Wrong master password
        """
        user = self.store.load_user(user_id)
        self._require_password(user, master_password, "delete")

        deleted = self.store.delete_recovery_key(user_id)
        if deleted:
            self.audit.log_event(
                EventType.RECOVERY_KEY_DELETED,
                EventSeverity.ALERT,
                "Recovery key deleted",
                user_id=user_id,
            )
        return deleted

    def delete_user(self, user_id: str, master_password: str) -> bool:
        """Delete the account and, by cascade, everything it owns."""
        user = self.store.load_user(user_id)
        if not self.verifier.verify(master_password, user.password_hash, user.auth_salt):
            raise AuthError("Invalid master password")

        deleted = self.store.delete_user(user_id)
        if deleted:
            self.audit.log_event(
                EventType.USER_DELETED,
                EventSeverity.ALERT,
                "User and owned data deleted",
                user_id=user_id,
            )
        return deleted

    # ── Secrets ──────────────────────────────────────────────────

    def _all_secrets(self, user_id: str) -> Iterable[SecretRecord]:
        page_size = self.config.rekey_page_size
        page = 0
        while True:
            records = self.store.list_secrets_by_owner(user_id, page, page_size)
            yield from records
            if len(records) < page_size:
                return
            page += 1

    def _new_record(self, vault: UnlockedVault, entry: Dict[str, Any]) -> SecretRecord:
        envelope = SecretCodec.encrypt(entry["password"], vault.key)
        return SecretRecord(
            id=str(uuid.uuid4()),
            owner_id=vault.user_id,
            title=entry["title"],
            password_envelope=envelope.encode(),
            key_epoch=vault.key_epoch,
            username=entry.get("username"),
            url=entry.get("url"),
            notes=entry.get("notes"),
        )

    def add_secret(
        self,
        vault: UnlockedVault,
        title: str,
        password: str,
        username: Optional[str] = None,
        url: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SecretRecord:
        """
        Encrypt and store one entry.

        Raises:
            ConflictError: The vault key is from an earlier epoch
        """
        record = self._new_record(vault, {
            "title": title,
            "password": password,
            "username": username,
            "url": url,
            "notes": notes,
        })
        self.store.create_secret(record)

        self.audit.log_event(
            EventType.SECRET_ADDED,
            EventSeverity.INFO,
            f"Secret added: {title}",
            user_id=vault.user_id,
            details={"secret_id": record.id},
        )
        return record

    def add_secrets(self, vault: UnlockedVault, entries: Iterable[Dict[str, Any]]) -> List[SecretRecord]:
        """Import many entries in one transaction (all or none)."""
        records = [self._new_record(vault, entry) for entry in entries]
        if not records:
            return []
        self.store.save_secrets_batch(records)

        self.audit.log_event(
            EventType.SECRET_ADDED,
            EventSeverity.INFO,
            f"Imported {len(records)} secrets",
            user_id=vault.user_id,
            details={"count": len(records)},
        )
        return records

    def _load_current(self, vault: UnlockedVault, secret_id: str) -> SecretRecord:
        record = self.store.load_secret(vault.user_id, secret_id)
        if record.key_epoch != vault.key_epoch:
            raise EpochMismatchError(
                f"Secret is from key epoch {record.key_epoch}, vault key is epoch {vault.key_epoch}",
                record_id=record.id,
            )
        return record

    def read_secret(self, vault: UnlockedVault, secret_id: str) -> str:
        """
        Decrypt one entry's password.

        Raises:
            NotFoundError: No such secret for this owner
            IntegrityError: Tampered envelope, wrong key or other epoch
        """
        try:
            record = self._load_current(vault, secret_id)
            plaintext = SecretCodec.decrypt(record.password_envelope, vault.key)
        except IntegrityError as e:
            self.audit.log_event(
                EventType.SECRET_INTEGRITY_FAILED,
                EventSeverity.ALERT,
                "Secret failed authentication on read",
                user_id=vault.user_id,
                details={"secret_id": secret_id, "reason": type(e).__name__},
            )
            raise

        self.audit.log_event(
            EventType.SECRET_ACCESSED,
            EventSeverity.INFO,
            "Secret decrypted",
            user_id=vault.user_id,
            details={"secret_id": secret_id},
        )
        return plaintext

    def update_secret(
        self,
        vault: UnlockedVault,
        secret_id: str,
        *,
        title: Optional[str] = None,
        password: Optional[str] = None,
        username: Optional[str] = None,
        url: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SecretRecord:
        """
        Change fields of one entry; ``None`` leaves a field as it is.

        Raises:
            ConflictError: The record or the owner's epoch changed meanwhile
        """
        record = self._load_current(vault, secret_id)

        if title is not None:
            record.title = title
        if username is not None:
            record.username = username
        if url is not None:
            record.url = url
        if notes is not None:
            record.notes = notes
        if password is not None:
            record.password_envelope = SecretCodec.encrypt(password, vault.key).encode()

        record = self.store.update_secret(record)
        self.audit.log_event(
            EventType.SECRET_UPDATED,
            EventSeverity.INFO,
            "Secret updated",
            user_id=vault.user_id,
            details={"secret_id": secret_id, "password_changed": password is not None},
        )
        return record

    def list_secrets(self, user_id: str, page: int = 0, page_size: Optional[int] = None) -> List[Dict[str, Any]]:
        """Metadata only; passwords stay encrypted."""
        records = self.store.list_secrets_by_owner(
            user_id, page, page_size or self.config.rekey_page_size
        )
        return [record.to_dict() for record in records]

    def delete_secret(self, user_id: str, secret_id: str) -> bool:
        deleted = self.store.delete_secret(user_id, secret_id)
        if not deleted:
            raise NotFoundError(f"Unknown secret {secret_id}")

        self.audit.log_event(
            EventType.SECRET_DELETED,
            EventSeverity.INFO,
            "Secret deleted",
            user_id=user_id,
            details={"secret_id": secret_id, "deleted_at": utcnow().isoformat()},
        )
        return deleted
