"""
Email-based recovery tokens.

A token is 256 random bits, handed to the Notifier once and stored only
as its SHA-256. Redemption flips ``used`` with a single conditional
UPDATE that also checks expiry, so a token works at most once even
under concurrent redemption. Expired rows are left for an external
purge job.
"""

import hashlib
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import KeywardConfig
from ..core.notifications import Notifier, NullNotifier
from ..exceptions import InvalidCodeError
from ..vault.models import RecoveryToken
from ..vault.store import CredentialStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def hash_recovery_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RecoveryTokenService:
    """Issues, checks and redeems single-use, time-bound recovery tokens."""

    def __init__(
        self,
        store: CredentialStore,
        config: KeywardConfig,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl = config.recovery_token_ttl
        self.notifier = notifier or NullNotifier()
        self.audit = audit or get_audit_logger(config)
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def issue_recovery_token(self, user_id: str) -> str:
        """
        Create a token, persist its hash and deliver it.

        Returns:
            The raw token (the only copy the core ever holds)

        Raises:
            NotFoundError: Unknown user
            NotificationError: Delivery failed (the token is still valid)
        """
        user = self.store.load_user(user_id)
        token = secrets.token_urlsafe(TOKEN_BYTES)
        now = self._now()
        record = RecoveryToken(
            user_id=user.id,
            token_hash=hash_recovery_token(token),
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.store.save_recovery_token(record)

        self.audit.log_event(
            EventType.RECOVERY_TOKEN_ISSUED,
            EventSeverity.INVESTIGATE,
            "Recovery token issued",
            user_id=user.id,
            details={"expires_at": record.expires_at.isoformat()},
        )

        self.notifier.send_recovery_token(user, token, record.expires_at)
        return token

    def _live_record(self, token: str) -> Tuple[str, RecoveryToken, datetime]:
        token_hash = hash_recovery_token(token or "")
        record = self.store.load_recovery_token_by_hash(token_hash)
        now = self._now()

        if record is None:
            self._reject(None, "unknown")
        if record.used:
            self._reject(record.user_id, "already_used")
        if record.is_expired(now):
            self._reject(record.user_id, "expired")
        return token_hash, record, now

    def check_recovery_token(self, token: str) -> str:
        """
        Validate a token without consuming it.

        Lets the caller find out who the token belongs to (and what else
        a reset will ask for) before the user picks a new password.

        Raises:
            InvalidCodeError: Unknown, already used or expired token
        """
        _, record, _ = self._live_record(token)
        return record.user_id

    def redeem_recovery_token(self, token: str) -> str:
        """
        Consume a token.

        Returns:
            The owning user id

        Raises:
            InvalidCodeError: Unknown, already used or expired token
        """
        token_hash, record, now = self._live_record(token)

        if not self.store.mark_recovery_token_used(token_hash, now):
            # Lost a race with a concurrent redemption.
            self._reject(record.user_id, "already_used")

        self.audit.log_event(
            EventType.RECOVERY_TOKEN_REDEEMED,
            EventSeverity.ALERT,
            "Recovery token redeemed",
            user_id=record.user_id,
        )
        return record.user_id

    def _reject(self, user_id: Optional[str], reason: str) -> None:
        self.audit.log_event(
            EventType.RECOVERY_TOKEN_REJECTED,
            EventSeverity.INVESTIGATE,
            "Recovery token rejected",
            user_id=user_id,
            details={"reason": reason},
        )
        raise InvalidCodeError("Invalid or expired recovery token")
