# Vault - Re-Key Orchestrator
#
# Master-password change, server side and all-or-nothing:
#
#   1. verify the current password (and that old_key belongs to it)
#   2. page through the owner's secrets
#   3. decrypt each with old_key; IntegrityError -> report id, continue
#   4. re-encrypt with new_key and stage the envelope (ciphertext only)
#   5. commit new credentials + every staged envelope in one transaction,
#      retrying storage errors with exponential backoff
#   6. return {succeeded, failed}
#
# If step 5 never succeeds the transaction was rolled back every time:
# the old salts and ciphertexts are still authoritative and the old
# password keeps working. Only the owner's copies are re-encrypted;
# shared recipients hold their own.

import hmac
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterator, List, Optional, Set

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import KeywardConfig
from ..exceptions import (
    AuthError,
    ConflictError,
    DerivationError,
    IntegrityError,
    RekeyAbortedError,
    StorageError,
)
from .encryption import Credentials, KeyDerivation, SecretCodec
from .models import RekeyResult, SecretRecord, StagedSecret, User
from .store import CredentialStore
from .verifier import CredentialVerifier

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """Non-blocking per-user guard for re-keys.

    A second re-key for a user that is already re-keying in this process
    fails fast with ConflictError; across processes the key-epoch check
    in commit_rekey does the same job. Nobody ever waits on a held id, so
    an entry lives only while its re-key runs.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._held: Set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._held)

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        with self._lock:
            if user_id in self._held:
                raise ConflictError(f"A re-key is already running for user {user_id}")
            self._held.add(user_id)
        try:
            yield
        finally:
            with self._lock:
                self._held.discard(user_id)

    def is_held(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._held


class ReKeyOrchestrator:
    """Moves all of a user's secrets from one derived key to the next."""

    def __init__(
        self,
        store: CredentialStore,
        config: KeywardConfig,
        audit: Optional[AuditLogger] = None,
        locks: Optional[UserLockRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.derivation = KeyDerivation(config)
        self.verifier = CredentialVerifier(self.derivation)
        self.page_size = config.rekey_page_size
        self.max_retries = config.rekey_max_retries
        self.backoff_base = config.rekey_backoff_base
        self.audit = audit or get_audit_logger(config)
        self.locks = locks or UserLockRegistry()
        self._sleep = sleep

    def rekey_all(
        self,
        user_id: str,
        old_key: bytes,
        new_key: bytes,
        *,
        current_password: str,
        new_credentials: Credentials,
    ) -> RekeyResult:
        """
        Re-encrypt every secret owned by ``user_id`` under ``new_key``.

        Args:
            user_id: Owner whose vault is migrated
            old_key: Vault key of the current epoch
            new_key: Vault key of the next epoch
            current_password: Checked against the stored verifier first
            new_credentials: Hash and salts committed with the new epoch;
                its encryption_key must be ``new_key``

        Returns:
            RekeyResult; ``failed`` lists records that could not be
            decrypted with ``old_key`` (left untouched)

        Raises:
            AuthError: Wrong current password, or old_key is not its key
            DerivationError: new_key does not match new_credentials
            ConflictError: Another re-key for this user won
            RekeyAbortedError: Storage kept failing; nothing was changed
        """
        user = self.store.load_user(user_id)

        if not self.verifier.verify(current_password, user.password_hash, user.auth_salt):
            self.audit.log_event(
                EventType.MASTER_PASSWORD_CHANGE_FAILED,
                EventSeverity.INVESTIGATE,
                "Re-key refused: current password did not verify",
                user_id=user_id,
            )
            raise AuthError("Current master password is incorrect")

        self._check_keys(user, old_key, new_key, current_password, new_credentials)

        try:
            with self.locks.hold(user_id):
                staged, failed = self._reencrypt(user, old_key, new_key)
                next_user = replace(
                    user,
                    password_hash=new_credentials.password_hash,
                    auth_salt=new_credentials.auth_salt,
                    encryption_salt=new_credentials.encryption_salt,
                    key_epoch=user.key_epoch + 1,
                )
                self._commit_with_retry(next_user, user.key_epoch, staged, failed)
        except ConflictError as e:
            self.audit.log_event(
                EventType.REKEY_CONFLICT,
                EventSeverity.INVESTIGATE,
                f"Re-key lost a concurrency race: {e}",
                user_id=user_id,
            )
            raise

        result = RekeyResult(
            succeeded=len(staged),
            failed=failed,
            key_epoch=next_user.key_epoch,
        )

        self.audit.log_event(
            EventType.MASTER_PASSWORD_CHANGED,
            EventSeverity.INFO,
            "Master password changed and vault re-keyed",
            user_id=user_id,
            details=result.to_dict(),
        )
        if failed:
            self.audit.log_event(
                EventType.REKEY_PARTIAL,
                EventSeverity.ALERT,
                f"{len(failed)} secret(s) could not be re-keyed",
                user_id=user_id,
                details={"failed": failed},
            )

        return result

    def _check_keys(
        self,
        user: User,
        old_key: bytes,
        new_key: bytes,
        current_password: str,
        new_credentials: Credentials,
    ) -> None:
        # A wrong old_key would report every record as failed and then
        # strand them all under a discarded epoch.
        expected_old = self.derivation.derive(current_password, user.encryption_salt)
        if not hmac.compare_digest(expected_old, old_key):
            raise AuthError("old_key does not belong to the current key epoch")

        if not hmac.compare_digest(new_key, new_credentials.encryption_key):
            raise DerivationError("new_key does not match the new credentials")

        if hmac.compare_digest(new_credentials.encryption_salt, user.encryption_salt):
            raise DerivationError("A new epoch needs a fresh encryption salt")

    def _pages(self, owner_id: str) -> Iterator[List[SecretRecord]]:
        page = 0
        while True:
            records = self.store.list_secrets_by_owner(owner_id, page, self.page_size)
            if not records:
                return
            yield records
            if len(records) < self.page_size:
                return
            page += 1

    def _reencrypt(self, user: User, old_key: bytes, new_key: bytes):
        staged: List[StagedSecret] = []
        failed: List[str] = []

        for records in self._pages(user.id):
            for record in records:
                try:
                    if record.key_epoch != user.key_epoch:
                        raise IntegrityError(
                            f"Record is tagged with epoch {record.key_epoch}",
                            record_id=record.id,
                        )
                    plaintext = SecretCodec.decrypt(record.password_envelope, old_key)
                except IntegrityError as e:
                    logger.warning(f"Re-key skipped secret {record.id}: {e}")
                    self.audit.log_event(
                        EventType.SECRET_INTEGRITY_FAILED,
                        EventSeverity.ALERT,
                        "Secret failed authentication during re-key",
                        user_id=user.id,
                        details={"secret_id": record.id, "reason": type(e).__name__},
                    )
                    failed.append(record.id)
                    continue

                envelope = SecretCodec.encrypt(plaintext, new_key)
                del plaintext
                staged.append(StagedSecret(
                    id=record.id,
                    password_envelope=envelope.encode(),
                    revision=record.revision,
                ))

        return staged, failed

    def _commit_with_retry(
        self,
        next_user: User,
        expected_epoch: int,
        staged: List[StagedSecret],
        failed: List[str],
    ) -> None:
        attempt = 0
        while True:
            try:
                self.store.commit_rekey(next_user, expected_epoch, staged, failed)
                return
            except ConflictError:
                raise
            except StorageError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        f"Re-key commit failed after {attempt + 1} attempt(s); old key remains valid"
                    )
                    self.audit.log_event(
                        EventType.REKEY_ABORTED,
                        EventSeverity.CRITICAL,
                        "Re-key aborted and rolled back; previous master password still valid",
                        user_id=next_user.id,
                        details={"attempts": attempt + 1},
                    )
                    raise RekeyAbortedError(
                        f"Re-key aborted after {attempt + 1} attempt(s): {e}"
                    ) from e

                delay = self.backoff_base * (2 ** attempt)
                logger.warning(
                    f"Re-key commit attempt {attempt + 1} failed ({e}); retrying in {delay:.2f}s"
                )
                self._sleep(delay)
                attempt += 1
