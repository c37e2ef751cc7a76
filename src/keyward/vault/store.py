# Vault - Credential Store
#
# Persistence collaborator for the credential core. CredentialStore is
# the contract; SqliteCredentialStore is the shipped implementation.
#
# Atomicity guarantees the services rely on:
#   - mark_backup_code_used / mark_recovery_token_used / advance_totp_step
#     are single conditional UPDATEs; the row count picks one winner.
#   - commit_rekey writes credentials and every re-encrypted record in one
#     transaction guarded by the expected key epoch.
#   - save_user never touches credential columns; only commit_rekey and
#     reset_credentials move a user to a new epoch.
#   - enable_two_factor / disable_two_factor write the 2FA columns and the
#     backup-code batch together, so no half-enabled user is ever stored.

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..core.db import session
from ..exceptions import ConflictError, NotFoundError
from .models import (
    BackupCode,
    RecoveryKey,
    RecoveryToken,
    SecretRecord,
    StagedSecret,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash BLOB NOT NULL,
    auth_salt BLOB NOT NULL,
    encryption_salt BLOB NOT NULL,
    key_epoch INTEGER NOT NULL DEFAULT 1,
    role TEXT NOT NULL DEFAULT 'user',
    two_factor_state TEXT NOT NULL DEFAULT 'disabled',
    totp_secret TEXT,
    totp_pending_secret TEXT,
    totp_pending_since TEXT,
    totp_last_step INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS secrets (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    username TEXT,
    url TEXT,
    notes TEXT,
    password_envelope TEXT NOT NULL,
    key_epoch INTEGER NOT NULL,
    revision INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_secrets_owner ON secrets(owner_id, created_at, id);

CREATE TABLE IF NOT EXISTS backup_codes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    code_hash TEXT NOT NULL,
    used INTEGER NOT NULL DEFAULT 0,
    used_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, code_hash)
);

CREATE TABLE IF NOT EXISTS recovery_tokens (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TEXT NOT NULL,
    used INTEGER NOT NULL DEFAULT 0,
    used_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_recovery_tokens_user ON recovery_tokens(user_id);

CREATE TABLE IF NOT EXISTS recovery_keys (
    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    key_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=bytes(row["password_hash"]),
        auth_salt=bytes(row["auth_salt"]),
        encryption_salt=bytes(row["encryption_salt"]),
        key_epoch=row["key_epoch"],
        role=row["role"],
        two_factor_state=row["two_factor_state"],
        totp_secret=row["totp_secret"],
        totp_pending_secret=row["totp_pending_secret"],
        totp_pending_since=_parse_ts(row["totp_pending_since"]),
        totp_last_step=row["totp_last_step"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_secret(row: sqlite3.Row) -> SecretRecord:
    return SecretRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        username=row["username"],
        url=row["url"],
        notes=row["notes"],
        password_envelope=row["password_envelope"],
        key_epoch=row["key_epoch"],
        revision=row["revision"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_token(row: sqlite3.Row) -> RecoveryToken:
    return RecoveryToken(
        user_id=row["user_id"],
        token_hash=row["token_hash"],
        expires_at=_parse_ts(row["expires_at"]),
        used=bool(row["used"]),
        used_at=_parse_ts(row["used_at"]),
        created_at=_parse_ts(row["created_at"]),
    )


class CredentialStore(ABC):
    """What the credential core needs from persistence."""

    # Users

    @abstractmethod
    def create_user(self, user: User) -> None:
        """Insert a new user. ConflictError if the email is taken."""

    @abstractmethod
    def load_user(self, user_id: str) -> User:
        """NotFoundError if unknown."""

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    def save_user(self, user: User) -> None:
        """Persist profile and 2FA columns. Credential columns are untouched."""

    @abstractmethod
    def delete_user(self, user_id: str) -> bool:
        """Delete a user; owned secrets, codes and tokens cascade."""

    @abstractmethod
    def advance_totp_step(self, user_id: str, step: int) -> bool:
        """Record an accepted TOTP step if it is newer than the last one."""

    @abstractmethod
    def enable_two_factor(self, user: User, code_hashes: Iterable[str]) -> None:
        """Save ``user`` and swap in a new backup-code batch in one transaction."""

    @abstractmethod
    def disable_two_factor(self, user: User) -> int:
        """Save ``user`` and delete every backup code in one transaction.

        Returns the number of codes removed.
        """

    # Secrets

    @abstractmethod
    def create_secret(self, record: SecretRecord) -> None:
        """Insert under the owner's current epoch, else ConflictError."""

    @abstractmethod
    def update_secret(self, record: SecretRecord) -> SecretRecord:
        """Optimistic update on ``record.revision``; ConflictError if stale."""

    @abstractmethod
    def load_secret(self, owner_id: str, secret_id: str) -> SecretRecord:
        pass

    @abstractmethod
    def delete_secret(self, owner_id: str, secret_id: str) -> bool:
        pass

    @abstractmethod
    def list_secrets_by_owner(self, owner_id: str, page: int, page_size: int) -> List[SecretRecord]:
        """One page (0-based) in stable creation order."""

    @abstractmethod
    def save_secrets_batch(self, records: Iterable[SecretRecord]) -> int:
        """Insert-or-replace many records in one transaction, all or none.

        Every record must carry its owner's current key epoch.
        """

    @abstractmethod
    def commit_rekey(
        self,
        user: User,
        expected_epoch: int,
        staged: List[StagedSecret],
        failed_ids: Iterable[str] = (),
    ) -> None:
        """Atomically move ``user`` and every staged record to ``user.key_epoch``."""

    @abstractmethod
    def reset_credentials(self, user: User) -> None:
        """Replace credential columns without touching records (recovery path)."""

    # Backup codes

    @abstractmethod
    def load_backup_codes(self, user_id: str) -> List[BackupCode]:
        pass

    @abstractmethod
    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        """Swap the whole batch; earlier codes stop working."""

    @abstractmethod
    def mark_backup_code_used(self, user_id: str, code_hash: str) -> bool:
        """Flip an unused code to used. False if absent or already used."""

    @abstractmethod
    def count_unused_backup_codes(self, user_id: str) -> int:
        pass

    # Recovery tokens

    @abstractmethod
    def save_recovery_token(self, token: RecoveryToken) -> None:
        pass

    @abstractmethod
    def load_recovery_token_by_hash(self, token_hash: str) -> Optional[RecoveryToken]:
        pass

    @abstractmethod
    def mark_recovery_token_used(self, token_hash: str, now: datetime) -> bool:
        """Flip an unused, unexpired token to used. False otherwise."""

    # Recovery keys

    @abstractmethod
    def save_recovery_key(self, key: RecoveryKey) -> None:
        """Create or replace the user's single recovery key."""

    @abstractmethod
    def load_recovery_key(self, user_id: str) -> Optional[RecoveryKey]:
        pass

    @abstractmethod
    def delete_recovery_key(self, user_id: str) -> bool:
        pass


class SqliteCredentialStore(CredentialStore):
    """SQLite persistence with one short-lived connection per operation.

    Args:
        db_path: Path to SQLite database file. Defaults to data/keyward.db.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else Path("data/keyward.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self):
        """Create tables if they don't exist."""
        with session(self.db_path) as conn:
            conn.executescript(SCHEMA)

    # ── Users ─────────────────────────────────────────────────────

    def create_user(self, user: User) -> None:
        with session(self.db_path) as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO users (
                        id, email, password_hash, auth_salt, encryption_salt,
                        key_epoch, role, two_factor_state, totp_secret,
                        totp_pending_secret, totp_pending_since, totp_last_step,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user.id, user.email, user.password_hash, user.auth_salt,
                        user.encryption_salt, user.key_epoch, user.role,
                        user.two_factor_state, user.totp_secret,
                        user.totp_pending_secret, _ts(user.totp_pending_since),
                        user.totp_last_step, _ts(user.created_at), _ts(user.updated_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"A user with email {user.email} already exists") from e

    def load_user(self, user_id: str) -> User:
        with session(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Unknown user {user_id}")
        return _row_to_user(row)

    def find_user_by_email(self, email: str) -> Optional[User]:
        with session(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _row_to_user(row) if row else None

    def _update_user_row(self, conn: sqlite3.Connection, user: User) -> None:
        user.updated_at = utcnow()
        cursor = conn.execute(
            """
            UPDATE users SET
                email = ?, role = ?, two_factor_state = ?, totp_secret = ?,
                totp_pending_secret = ?, totp_pending_since = ?,
                totp_last_step = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                user.email, user.role, user.two_factor_state, user.totp_secret,
                user.totp_pending_secret, _ts(user.totp_pending_since),
                user.totp_last_step, _ts(user.updated_at), user.id,
            ),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Unknown user {user.id}")

    def save_user(self, user: User) -> None:
        with session(self.db_path) as conn:
            self._update_user_row(conn, user)

    def delete_user(self, user_id: str) -> bool:
        with session(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    def advance_totp_step(self, user_id: str, step: int) -> bool:
        with session(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE users SET totp_last_step = ?
                WHERE id = ? AND (totp_last_step IS NULL OR totp_last_step < ?)
                """,
                (step, user_id, step),
            )
            return cursor.rowcount == 1

    def enable_two_factor(self, user: User, code_hashes: Iterable[str]) -> None:
        with session(self.db_path) as conn:
            self._update_user_row(conn, user)
            self._insert_backup_codes(conn, user.id, code_hashes)

    def disable_two_factor(self, user: User) -> int:
        with session(self.db_path) as conn:
            self._update_user_row(conn, user)
            cursor = conn.execute("DELETE FROM backup_codes WHERE user_id = ?", (user.id,))
            return cursor.rowcount

    # ── Secrets ───────────────────────────────────────────────────

    def create_secret(self, record: SecretRecord) -> None:
        with session(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO secrets (
                    id, owner_id, title, username, url, notes,
                    password_envelope, key_epoch, revision, created_at, updated_at
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM users WHERE id = ? AND key_epoch = ?)
                """,
                (
                    record.id, record.owner_id, record.title, record.username,
                    record.url, record.notes, record.password_envelope,
                    record.key_epoch, record.revision, _ts(record.created_at),
                    _ts(record.updated_at), record.owner_id, record.key_epoch,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError("Owner is not at this key epoch; re-read credentials")

    def update_secret(self, record: SecretRecord) -> SecretRecord:
        record.updated_at = utcnow()
        with session(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE secrets SET
                    title = ?, username = ?, url = ?, notes = ?,
                    password_envelope = ?, revision = revision + 1, updated_at = ?
                WHERE id = ? AND owner_id = ? AND revision = ? AND key_epoch = ?
                  AND EXISTS (SELECT 1 FROM users WHERE id = ? AND key_epoch = ?)
                """,
                (
                    record.title, record.username, record.url, record.notes,
                    record.password_envelope, _ts(record.updated_at),
                    record.id, record.owner_id, record.revision, record.key_epoch,
                    record.owner_id, record.key_epoch,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError(f"Secret {record.id} changed concurrently")
        record.revision += 1
        return record

    def load_secret(self, owner_id: str, secret_id: str) -> SecretRecord:
        with session(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM secrets WHERE id = ? AND owner_id = ?",
                (secret_id, owner_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Unknown secret {secret_id}")
        return _row_to_secret(row)

    def delete_secret(self, owner_id: str, secret_id: str) -> bool:
        with session(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM secrets WHERE id = ? AND owner_id = ?",
                (secret_id, owner_id),
            )
            return cursor.rowcount > 0

    def list_secrets_by_owner(self, owner_id: str, page: int, page_size: int) -> List[SecretRecord]:
        with session(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM secrets WHERE owner_id = ?
                ORDER BY created_at, id
                LIMIT ? OFFSET ?
                """,
                (owner_id, page_size, page * page_size),
            ).fetchall()
        return [_row_to_secret(r) for r in rows]

    def save_secrets_batch(self, records: Iterable[SecretRecord]) -> int:
        count = 0
        epochs = {}
        with session(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            for record in records:
                if record.owner_id not in epochs:
                    row = conn.execute(
                        "SELECT key_epoch FROM users WHERE id = ?", (record.owner_id,)
                    ).fetchone()
                    if row is None:
                        raise NotFoundError(f"Unknown user {record.owner_id}")
                    epochs[record.owner_id] = row["key_epoch"]
                if record.key_epoch != epochs[record.owner_id]:
                    raise ConflictError("Owner is not at this key epoch; re-read credentials")
                conn.execute(
                    """
                    INSERT OR REPLACE INTO secrets (
                        id, owner_id, title, username, url, notes,
                        password_envelope, key_epoch, revision, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id, record.owner_id, record.title, record.username,
                        record.url, record.notes, record.password_envelope,
                        record.key_epoch, record.revision, _ts(record.created_at),
                        _ts(record.updated_at),
                    ),
                )
                count += 1
        return count

    def _write_staged(self, conn: sqlite3.Connection, owner_id: str, expected_epoch: int,
                      new_epoch: int, item: StagedSecret, now: str) -> None:
        cursor = conn.execute(
            """
            UPDATE secrets SET
                password_envelope = ?, key_epoch = ?, revision = revision + 1,
                updated_at = ?
            WHERE id = ? AND owner_id = ? AND key_epoch = ? AND revision = ?
            """,
            (item.password_envelope, new_epoch, now, item.id, owner_id,
             expected_epoch, item.revision),
        )
        if cursor.rowcount == 0:
            raise ConflictError(f"Secret {item.id} changed during re-key")

    def commit_rekey(
        self,
        user: User,
        expected_epoch: int,
        staged: List[StagedSecret],
        failed_ids: Iterable[str] = (),
    ) -> None:
        now = _ts(utcnow())
        user.updated_at = datetime.fromisoformat(now)
        with session(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE users SET
                    password_hash = ?, auth_salt = ?, encryption_salt = ?,
                    key_epoch = ?, updated_at = ?
                WHERE id = ? AND key_epoch = ?
                """,
                (user.password_hash, user.auth_salt, user.encryption_salt,
                 user.key_epoch, now, user.id, expected_epoch),
            )
            if cursor.rowcount == 0:
                raise ConflictError("Key epoch moved; another re-key committed first")

            for item in staged:
                self._write_staged(conn, user.id, expected_epoch, user.key_epoch, item, now)

            # Anything still on the old epoch that we neither re-encrypted
            # nor reported as failed was added after enumeration.
            accounted = {item.id for item in staged} | set(failed_ids)
            leftovers = conn.execute(
                "SELECT id FROM secrets WHERE owner_id = ? AND key_epoch = ?",
                (user.id, expected_epoch),
            ).fetchall()
            if any(row["id"] not in accounted for row in leftovers):
                raise ConflictError("Secrets were added during re-key")

    def reset_credentials(self, user: User) -> None:
        now = _ts(utcnow())
        with session(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE users SET
                    password_hash = ?, auth_salt = ?, encryption_salt = ?,
                    key_epoch = ?, updated_at = ?
                WHERE id = ? AND key_epoch < ?
                """,
                (user.password_hash, user.auth_salt, user.encryption_salt,
                 user.key_epoch, now, user.id, user.key_epoch),
            )
            if cursor.rowcount == 0:
                raise ConflictError("Key epoch moved during credential reset")

    # ── Backup codes ──────────────────────────────────────────────

    def load_backup_codes(self, user_id: str) -> List[BackupCode]:
        with session(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM backup_codes WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [
            BackupCode(
                user_id=r["user_id"],
                code_hash=r["code_hash"],
                used=bool(r["used"]),
                used_at=_parse_ts(r["used_at"]),
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    def _insert_backup_codes(self, conn: sqlite3.Connection, user_id: str,
                             code_hashes: Iterable[str]) -> None:
        now = _ts(utcnow())
        conn.execute("DELETE FROM backup_codes WHERE user_id = ?", (user_id,))
        conn.executemany(
            "INSERT INTO backup_codes (user_id, code_hash, created_at) VALUES (?, ?, ?)",
            [(user_id, h, now) for h in code_hashes],
        )

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> None:
        with session(self.db_path) as conn:
            self._insert_backup_codes(conn, user_id, code_hashes)

    def mark_backup_code_used(self, user_id: str, code_hash: str) -> bool:
        with session(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE backup_codes SET used = 1, used_at = ?
                WHERE user_id = ? AND code_hash = ? AND used = 0
                """,
                (_ts(utcnow()), user_id, code_hash),
            )
            return cursor.rowcount == 1

    def count_unused_backup_codes(self, user_id: str) -> int:
        with session(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM backup_codes WHERE user_id = ? AND used = 0",
                (user_id,),
            ).fetchone()
        return row[0]

    # ── Recovery tokens ───────────────────────────────────────────

    def save_recovery_token(self, token: RecoveryToken) -> None:
        with session(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO recovery_tokens (user_id, token_hash, expires_at, used, used_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (token.user_id, token.token_hash, _ts(token.expires_at),
                 int(token.used), _ts(token.used_at), _ts(token.created_at)),
            )

    def load_recovery_token_by_hash(self, token_hash: str) -> Optional[RecoveryToken]:
        with session(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM recovery_tokens WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()
        return _row_to_token(row) if row else None

    def mark_recovery_token_used(self, token_hash: str, now: datetime) -> bool:
        with session(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE recovery_tokens SET used = 1, used_at = ?
                WHERE token_hash = ? AND used = 0 AND expires_at > ?
                """,
                (_ts(now), token_hash, _ts(now)),
            )
            return cursor.rowcount == 1

    # ── Recovery keys ─────────────────────────────────────────────

    def save_recovery_key(self, key: RecoveryKey) -> None:
        with session(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO recovery_keys (user_id, key_hash, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    key_hash = excluded.key_hash, updated_at = excluded.updated_at
                """,
                (key.user_id, key.key_hash, _ts(key.created_at), _ts(key.updated_at)),
            )

    def load_recovery_key(self, user_id: str) -> Optional[RecoveryKey]:
        with session(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM recovery_keys WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return RecoveryKey(
            user_id=row["user_id"],
            key_hash=row["key_hash"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def delete_recovery_key(self, user_id: str) -> bool:
        with session(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM recovery_keys WHERE user_id = ?", (user_id,))
            return cursor.rowcount > 0
